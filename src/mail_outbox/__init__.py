"""Durable background e-mail delivery queue.

This package provides an at-least-once outbound mail pipeline with:

- Submission that records every message in a SQLite ledger before queueing it
- Crash recovery that re-queues every message left in progress
- A single background delivery loop with retry, backoff and give-up policy
- Graceful shutdown bounded by a deadline
- Prometheus metrics, a FastAPI control surface and a click CLI

Example:
    Basic usage inside an asyncio application::

        from mail_outbox.core import MailOutbox
        from mail_outbox.models import SmtpSettings

        outbox = MailOutbox(
            db_path="/data/outbox.db",
            settings=SmtpSettings(host="smtp.example.com", sender="noreply@example.com"),
        )
        await outbox.start()
        message_id = await outbox.submit("user@example.com", "Hello", "<p>Hi</p>")
        await outbox.stop(timeout=10)
"""
