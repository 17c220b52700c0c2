# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core delivery pipeline of the mail outbox.

This module provides :class:`MailOutbox`, which owns the in-memory delivery
queue and the single background task that drains it:

- ``submit()`` records a message in the ledger, then queues it
- ``recover()`` re-queues every ledger record left in progress
- ``start()`` runs recovery and spawns the delivery loop
- ``stop()`` asks the loop to stop and waits for it, bounded by a timeout

Delivery is at-least-once. A message whose transmission succeeded but whose
ledger update did not happen (crash, ledger failure) is sent again after the
next restart.

Cancellation is cooperative. Waiting on the queue, connecting,
authenticating and the pause after a failure are abandoned as soon as stop
is requested; a send that already started is allowed to finish and is then
recorded normally.

Example:
    Running the outbox::

        from mail_outbox.core import MailOutbox

        outbox = MailOutbox(db_path="/data/outbox.db", settings=smtp_settings)
        await outbox.start()
        message_id = await outbox.submit("user@example.com", "Welcome", "<p>Hi</p>")

        # On shutdown
        await outbox.stop(timeout=10)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

import aiosqlite

from .config_loader import SettingsMonitor
from .logger import get_logger
from .models import DeliveryRecord, MailStatus, OutboundMessage, SecurityMode, SmtpSettings
from .persistence import Persistence, PersistenceError
from .prometheus import OutboxMetrics
from .transport import SmtpTransport


class DeliveryState(str, Enum):
    """Observable state of the delivery loop."""

    NOT_STARTED = "not_started"
    IDLE = "idle"
    SENDING = "sending"
    CANCELLED = "cancelled"


class RecoveryError(RuntimeError):
    """Raised when pending messages cannot be read back from the ledger."""


class DeliveryCancelled(Exception):
    """Stop was requested while a delivery attempt was in progress."""


class Transport(Protocol):
    async def connect(self, host: str, port: int, security: SecurityMode) -> None: ...

    async def authenticate(self, username: str, password: str | None) -> None: ...

    async def send(self, message: OutboundMessage, sender: str) -> None: ...

    async def disconnect(self) -> None: ...

    def close(self) -> None: ...


def default_transport_factory(settings: SmtpSettings) -> Transport:
    return SmtpTransport(timeout=settings.timeout)


class MailOutbox:
    """Durable outbound mail queue with a single background delivery loop.

    Attributes:
        logger: Logger instance for diagnostic output.
        persistence: The delivery ledger.
        metrics: Prometheus metrics collector.
        state: Current :class:`DeliveryState` of the delivery loop.
    """

    def __init__(
        self,
        *,
        db_path: str = "/data/mail_outbox.db",
        settings: SmtpSettings | SettingsMonitor | None = None,
        transport_factory: Callable[[SmtpSettings], Transport] | None = None,
        logger=None,
        metrics: OutboxMetrics | None = None,
        shutdown_timeout: float = 30.0,
    ):
        """Initialize the outbox.

        Args:
            db_path: SQLite database file of the ledger.
            settings: SMTP and retry settings, either fixed or a
                :class:`SettingsMonitor` re-read before every attempt. When
                None, a monitor on the default configuration file is used.
            transport_factory: Builds a fresh transport client for each
                attempt. Defaults to :class:`SmtpTransport`.
            logger: Custom logger instance. If None, uses default logger.
            metrics: Prometheus metrics collector. If None, creates new instance.
            shutdown_timeout: Default wait bound for :meth:`stop`, in seconds.
        """
        self.logger = logger or get_logger()
        self.persistence = Persistence(db_path)
        self.metrics = metrics or OutboxMetrics()
        if isinstance(settings, SmtpSettings):
            settings = SettingsMonitor.fixed(settings)
        self._settings = settings or SettingsMonitor()
        self._transport_factory = transport_factory or default_transport_factory
        self._shutdown_timeout = max(0.0, float(shutdown_timeout))

        self._queue: asyncio.Queue[OutboundMessage] = asyncio.Queue()
        self._recovery_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.state = DeliveryState.NOT_STARTED

    # ---------------------------------------------------------------- inspection
    @property
    def settings(self) -> SmtpSettings:
        """Settings currently in effect."""
        return self._settings.current

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    def status(self) -> dict[str, Any]:
        return {"state": self.state.value, "running": self.running, "queue_size": self.queue_size}

    async def get_message(self, msg_id: str) -> DeliveryRecord | None:
        return await self.persistence.get_message(msg_id)

    async def list_messages(self, status: MailStatus | None = None, limit: int | None = None) -> list[DeliveryRecord]:
        return await self.persistence.list_messages(status=status, limit=limit)

    async def stats(self) -> dict[str, int]:
        return await self.persistence.count_by_status()

    # ---------------------------------------------------------------- submission
    async def submit(self, recipient: str, subject: str, body: str) -> str:
        """Record a message as in progress and queue it for delivery.

        The ledger row is written before the message becomes visible to the
        delivery loop; if the write fails nothing is queued.

        Returns:
            The id of the new message.

        Raises:
            pydantic.ValidationError: If ``recipient`` is not a single valid
                mailbox. Nothing is stored.
            PersistenceError: If the ledger insert did not store exactly one row.
        """
        message = OutboundMessage(recipient=recipient, subject=subject, body=body)
        async with self._recovery_lock:
            try:
                affected = await self.persistence.insert_message(message)
            except aiosqlite.Error as exc:
                raise PersistenceError(f"Could not persist e-mail message to {recipient}: {exc}") from exc
            if affected != 1:
                raise PersistenceError(f"Could not persist e-mail message to {recipient}")
            self._enqueue(message)
        self.logger.debug("Message %s to %s queued for delivery", message.id, recipient)
        return message.id

    def _enqueue(self, message: OutboundMessage) -> None:
        self._queue.put_nowait(message)
        self.metrics.set_queue_size(self._queue.qsize())

    def _drain_queue(self) -> int:
        drained = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            drained += 1
        self.metrics.set_queue_size(0)
        return drained

    # ------------------------------------------------------------------ recovery
    async def recover(self) -> int:
        """Queue every ledger record that is neither sent nor deleted.

        Whatever is still in the in-memory queue is discarded first: the
        ledger holds the same messages and is authoritative. Submissions made
        while recovery runs wait for it and land behind the recovered work.

        Returns:
            Number of messages re-queued.

        Raises:
            RecoveryError: If the delivery loop is running or the ledger
                cannot be read.
        """
        if self.running:
            raise RecoveryError("Cannot recover while the delivery loop is running")
        async with self._recovery_lock:
            self._drain_queue()
            try:
                pending = await self.persistence.fetch_pending()
            except Exception as exc:
                raise RecoveryError(f"Could not read pending messages from the ledger: {exc}") from exc
            for message in pending:
                self._enqueue(message)
        if pending:
            self.metrics.inc_recovered(len(pending))
        return len(pending)

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> bool:
        """Recover pending messages and spawn the delivery loop.

        A failure while preparing the ledger, loading settings or recovering
        is logged and leaves the outbox without a delivery loop; submissions
        are still recorded and will be picked up by the next successful start.

        A loop left behind by a :meth:`stop` that timed out is still winding
        down; starting again is refused until it has exited.

        Returns:
            True if the delivery loop is running.
        """
        if self.running:
            if self._stop.is_set():
                self.logger.warning("Previous e-mail delivery loop is still stopping, not starting a new one")
                return False
            self.logger.warning("E-mail delivery is already running")
            return True
        self.logger.info("Starting background e-mail delivery")
        try:
            await self.persistence.init_db()
            settings = self._settings.current
            self.logger.debug("Delivering through %s:%s (%s)", settings.host, settings.port, settings.security.value)
            count = await self.recover()
        except Exception as exc:
            self.logger.exception("Couldn't start e-mail delivery: %s", exc)
            return False

        self.logger.info("E-mail delivery started: %d message(s) were resumed for delivery", count)
        self._stop = asyncio.Event()
        self.state = DeliveryState.IDLE
        self._task = asyncio.create_task(
            self._delivery_loop(self._stop, settings.delay_on_error), name="mail-delivery-loop"
        )
        return True

    async def stop(self, timeout: float | None = None) -> bool:
        """Ask the delivery loop to stop and wait for it at most ``timeout`` seconds.

        When the wait times out the loop is left running in the background
        until it reaches its next cancellation point; it is never killed.

        Args:
            timeout: Seconds to wait. Defaults to the configured shutdown timeout.

        Returns:
            True if the loop has stopped, False if the wait was abandoned.
        """
        task = self._task
        if task is None:
            return True
        if not self._stop.is_set():
            self.logger.info("Stopping e-mail background delivery")
            self._stop.set()
        wait_for = self._shutdown_timeout if timeout is None else max(0.0, float(timeout))
        done, _ = await asyncio.wait({task}, timeout=wait_for)
        if not done:
            self.logger.warning(
                "E-mail delivery did not stop within %.1fs, no longer waiting for it", wait_for
            )
            return False
        if not task.cancelled() and task.exception() is not None:
            self.logger.error("E-mail delivery loop terminated with an error: %s", task.exception())
        return True

    # ------------------------------------------------------------ delivery loop
    async def _delivery_loop(self, stop: asyncio.Event, delay: float) -> None:
        """Drain the queue until ``stop`` is set.

        ``delay`` is the last known pause after a failure, used when the
        settings themselves cannot be loaded.
        """
        self.logger.info("E-mail background delivery started")
        try:
            while not stop.is_set():
                self.state = DeliveryState.IDLE
                message = await self._receive(stop)
                if message is None:
                    break
                self.state = DeliveryState.SENDING
                try:
                    settings = self._settings.current
                except Exception as exc:
                    # Without settings nothing was attempted: keep the message queued.
                    self.logger.error("Couldn't load delivery settings, message %s stays queued: %s", message.id, exc)
                    self._enqueue(message)
                    if not await self._pause(stop, delay):
                        break
                    continue
                delay = settings.delay_on_error
                if settings.log_delivery_activity:
                    self.logger.info("Attempting delivery of message %s to %s", message.id, message.recipient)
                try:
                    await self._transmit(message, settings, stop)
                except DeliveryCancelled:
                    self.logger.info(
                        "Delivery of message %s interrupted by shutdown, left in progress for recovery",
                        message.id,
                    )
                    break
                except Exception as exc:
                    self.logger.error("Couldn't send an e-mail to %s: %s", message.recipient, exc)
                    self.metrics.inc_failed_attempt()
                    await self._register_failure(message, settings, exc)
                    failed = True
                else:
                    failed = not await self._record_sent(message)
                if failed and not await self._pause(stop, delay):
                    break
        finally:
            self.state = DeliveryState.CANCELLED
            self.logger.info("E-mail background delivery stopped")

    async def _receive(self, stop: asyncio.Event) -> OutboundMessage | None:
        """Wait for the next message, or return None once stop is requested."""
        if stop.is_set():
            return None
        getter = asyncio.ensure_future(self._queue.get())
        stopper = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not getter.done():
                getter.cancel()
        if not getter.done():
            await asyncio.wait({getter})
        if getter.cancelled():
            return None
        message = getter.result()
        self.metrics.set_queue_size(self._queue.qsize())
        if stop.is_set():
            # Picked up while stopping: keep it queued for the next start.
            self._queue.put_nowait(message)
            return None
        return message

    async def _until_stopped(self, step: Awaitable[Any], stop: asyncio.Event) -> Any:
        """Await ``step`` unless ``stop`` fires first, then abandon it."""
        if stop.is_set():
            if asyncio.iscoroutine(step):
                step.close()
            raise DeliveryCancelled()
        task = asyncio.ensure_future(step)
        stopper = asyncio.ensure_future(stop.wait())
        try:
            done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        await asyncio.wait({task})
        if not task.cancelled():
            task.exception()
        raise DeliveryCancelled()

    async def _transmit(self, message: OutboundMessage, settings: SmtpSettings, stop: asyncio.Event) -> None:
        """Run one attempt on a fresh connection.

        Raises:
            DeliveryCancelled: Stop was requested before the send started.
            Exception: Any transport failure.
        """
        transport = self._transport_factory(settings)
        try:
            await self._until_stopped(transport.connect(settings.host, settings.port, settings.security), stop)
            if settings.username:
                await self._until_stopped(transport.authenticate(settings.username, settings.password), stop)
            if stop.is_set():
                raise DeliveryCancelled()
            await transport.send(message, settings.sender)
        except BaseException:
            transport.close()
            raise
        try:
            await transport.disconnect()
        except Exception as exc:
            self.logger.warning("Couldn't close SMTP session after sending message %s: %s", message.id, exc)

    async def _record_sent(self, message: OutboundMessage) -> bool:
        try:
            updated = await self.persistence.mark_sent(message.id)
        except Exception as exc:
            self.metrics.inc_ledger_error()
            self.logger.error(
                "E-mail to %s was sent but message %s couldn't be marked as sent, left for recovery: %s",
                message.recipient,
                message.id,
                exc,
            )
            return False
        if not updated:
            self.logger.warning("Message %s was sent but its record is no longer in progress", message.id)
        self.metrics.inc_sent()
        self.logger.info("E-mail sent successfully to %s", message.recipient)
        return True

    async def _register_failure(self, message: OutboundMessage, settings: SmtpSettings, exc: Exception) -> None:
        """Count the failed attempt and re-queue the message unless exhausted.

        When the ledger cannot be updated the message is dropped from memory
        and stays in progress in the ledger, so the next recovery resumes it.
        """
        try:
            still_active = await self.persistence.register_failed_attempt(
                message.id, settings.max_attempts, str(exc)
            )
        except Exception as ledger_exc:
            self.metrics.inc_ledger_error()
            self.logger.error(
                "Couldn't requeue message %s to %s, left for recovery: %s",
                message.id,
                message.recipient,
                ledger_exc,
            )
            return
        if still_active:
            self._enqueue(message)
            return
        self.metrics.inc_discarded()
        self.logger.warning(
            "Giving up on message %s to %s after %d attempts", message.id, message.recipient, settings.max_attempts
        )

    async def _pause(self, stop: asyncio.Event, delay: float) -> bool:
        """Back off after a failure.

        Returns:
            False if stop was requested during the pause.
        """
        if delay <= 0:
            await asyncio.sleep(0)
            return not stop.is_set()
        try:
            await asyncio.wait_for(stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False
