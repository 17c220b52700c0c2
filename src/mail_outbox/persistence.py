# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed delivery ledger for the mail outbox.

The ledger keeps one row per submitted message and is the durable shadow of
the in-memory queue: after a crash the queue is rebuilt from every row that
is still ``in_progress``.

Status transitions are one-way (``in_progress`` to ``sent`` or ``deleted``);
every update is guarded on the current status so a terminal row is never
modified again.

Example:
    Basic usage of the ledger::

        ledger = Persistence("/data/outbox.db")
        await ledger.init_db()

        rows = await ledger.insert_message(message)
        await ledger.mark_sent(message.id)

        still_active = await ledger.register_failed_attempt(
            message.id, max_attempts=5, error="421 try again later"
        )
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .models import DeliveryRecord, MailStatus, OutboundMessage


class PersistenceError(RuntimeError):
    """Raised when a ledger write does not affect the expected rows."""


class Persistence:
    """Async SQLite ledger of message delivery state.

    Each operation opens and closes its own connection, making the class
    safe to share between the submission path and the delivery loop. For the
    same reason ``:memory:`` databases are refused: each connection would see
    its own empty database.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str = "/data/mail_outbox.db"):
        if not db_path or db_path == ":memory:" or db_path.startswith("file::memory:"):
            raise ValueError("The delivery ledger needs a database file, in-memory SQLite is not durable")
        self.db_path = db_path

    async def init_db(self) -> None:
        """Create the ledger schema. Idempotent."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    recipient TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    last_error TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_status ON messages(status)"
            )
            await db.commit()

    @staticmethod
    def _decode_row(row: Tuple[Any, ...], columns: Sequence[str]) -> DeliveryRecord:
        return DeliveryRecord(**dict(zip(columns, row)))

    # Writes -------------------------------------------------------------------
    async def insert_message(self, message: OutboundMessage) -> int:
        """Record a new message as in progress with no attempts.

        An existing row with the same id is left untouched.

        Returns:
            Number of rows inserted (1 on success, 0 on id collision).
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO messages (id, recipient, subject, body, attempt_count, status)
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (
                    message.id,
                    message.recipient,
                    message.subject,
                    message.body,
                    MailStatus.IN_PROGRESS.value,
                ),
            )
            await db.commit()
            return cursor.rowcount

    async def mark_sent(self, msg_id: str) -> bool:
        """Flip an in-progress record to sent.

        Returns:
            True if the record was in progress and is now sent.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE messages
                SET status=?, updated_at=CURRENT_TIMESTAMP
                WHERE id=? AND status=?
                """,
                (MailStatus.SENT.value, msg_id, MailStatus.IN_PROGRESS.value),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def register_failed_attempt(
        self, msg_id: str, max_attempts: int, error: str | None = None
    ) -> bool:
        """Count a failed attempt and give the message up when exhausted.

        The increment, the conditional switch to ``deleted`` and the read-back
        happen in a single ``UPDATE ... RETURNING`` statement.

        Args:
            msg_id: Ledger key of the message.
            max_attempts: Attempt count at which the record becomes deleted.
            error: Description of the failure, stored as ``last_error``.

        Returns:
            True if the record is still in progress and should be retried.

        Raises:
            PersistenceError: If no in-progress record matches ``msg_id``.
        """
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                UPDATE messages
                SET attempt_count = attempt_count + 1,
                    status = CASE WHEN attempt_count + 1 >= ? THEN ? ELSE status END,
                    last_error = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id=? AND status=?
                RETURNING status
                """,
                (
                    int(max_attempts),
                    MailStatus.DELETED.value,
                    error,
                    msg_id,
                    MailStatus.IN_PROGRESS.value,
                ),
            ) as cur:
                rows = await cur.fetchall()
            await db.commit()
        if not rows:
            raise PersistenceError(f"No in-progress delivery record for message {msg_id}")
        return rows[0][0] == MailStatus.IN_PROGRESS.value

    # Reads --------------------------------------------------------------------
    async def fetch_pending(self) -> List[OutboundMessage]:
        """Return every message whose record is neither sent nor deleted."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, recipient, subject, body
                FROM messages
                WHERE status NOT IN (?, ?)
                ORDER BY created_at ASC, id ASC
                """,
                (MailStatus.SENT.value, MailStatus.DELETED.value),
            ) as cur:
                rows = await cur.fetchall()
        return [
            OutboundMessage(id=row[0], recipient=row[1], subject=row[2], body=row[3])
            for row in rows
        ]

    async def get_message(self, msg_id: str) -> Optional[DeliveryRecord]:
        """Fetch a single delivery record, or None if unknown."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM messages WHERE id=?", (msg_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_row(row, cols)

    async def list_messages(
        self, status: MailStatus | None = None, limit: int | None = None
    ) -> List[DeliveryRecord]:
        """Return delivery records, newest first, optionally filtered by status."""
        query = "SELECT * FROM messages"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(MailStatus(status).value)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_row(row, cols) for row in rows]

    async def count_by_status(self) -> Dict[str, int]:
        """Return the number of records per status, zero-filled."""
        counts = {status.value: 0 for status in MailStatus}
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT status, COUNT(*) FROM messages GROUP BY status"
            ) as cur:
                for status, count in await cur.fetchall():
                    counts[status] = count
        return counts
