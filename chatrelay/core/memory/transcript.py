"""Transcript store: SQLite-backed log of the conversation turns.

Rows live in ``chat_history`` and are ordered by ``created_at``. Timestamps
are stored as fixed-width UTC text (``2024-01-31 12:00:00.000000+00:00``) so
that string order equals time order.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import aiosqlite
import structlog

from chatrelay.core.errors import StartupError, StoreError
from chatrelay.core.memory.migrations import Migration, MigrationRunner
from chatrelay.core.types import Message

logger = structlog.get_logger()

_ONE_TICK = timedelta(microseconds=1)


def format_timestamp(value: datetime) -> str:
    """Render a datetime in the sortable storage format."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(sep=" ", timespec="microseconds")


def parse_timestamp(raw: str) -> datetime:
    """Parse a stored timestamp. Raises ValueError on malformed input."""
    value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        raise ValueError(f"timestamp without timezone: {raw!r}")
    return value


class TranscriptStore:
    """Persistent, ordered conversation transcript."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    async def open(self, migrations: list[Migration] | None = None) -> int:
        """Create the data directory, check the database and migrate it.

        Returns the number of migrations applied.

        Raises:
            StartupError: the database cannot be opened or migrated.
        """
        try:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute("SELECT 1")
        except (OSError, aiosqlite.Error) as e:
            raise StartupError(f"cannot open database {self._db_path}: {e}") from e

        logger.info("store_opened", db_path=self._db_path)
        return await MigrationRunner(self._db_path, migrations).up()

    async def count(self) -> int:
        try:
            async with aiosqlite.connect(self._db_path) as db:
                async with db.execute("SELECT COUNT(*) FROM chat_history") as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreError(f"failed to get message count from database: {e}") from e
        return row[0] if row else 0

    async def prune(self, ceiling: int) -> int:
        """Delete the oldest rows so that at most ``ceiling`` remain.

        Returns the number of deleted rows.

        Raises:
            StoreError: counting, locating or deleting failed.
        """
        count = await self.count()
        if count <= ceiling:
            return 0

        try:
            async with aiosqlite.connect(self._db_path) as db:
                async with db.execute(
                    """SELECT id, created_at FROM chat_history
                       ORDER BY created_at DESC, id DESC
                       LIMIT 1 OFFSET ?""",
                    (ceiling,),
                ) as cursor:
                    boundary = await cursor.fetchone()
                if boundary is None:
                    return 0

                boundary_id, boundary_ts = boundary
                result = await db.execute(
                    """DELETE FROM chat_history
                       WHERE created_at < ? OR (created_at = ? AND id <= ?)""",
                    (boundary_ts, boundary_ts, boundary_id),
                )
                await db.commit()
                deleted = result.rowcount
        except aiosqlite.Error as e:
            raise StoreError(f"failed to delete old messages from database: {e}") from e

        logger.info("transcript_pruned", deleted=deleted, ceiling=ceiling)
        return deleted

    async def read_all(self) -> list[Message]:
        """Return every retained message, oldest first.

        Raises:
            StoreError: the query failed or a row has a malformed timestamp.
        """
        try:
            async with aiosqlite.connect(self._db_path) as db:
                async with db.execute(
                    """SELECT id, user_id, username, message, created_at
                       FROM chat_history
                       ORDER BY created_at ASC, id ASC"""
                ) as cursor:
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StoreError(f"failed to query for all messages from the database: {e}") from e

        history: list[Message] = []
        for row_id, user_id, username, text, created_at in rows:
            try:
                timestamp = parse_timestamp(created_at)
            except (TypeError, ValueError) as e:
                raise StoreError(
                    f"failed to parse datetime {created_at!r} of message {row_id}: {e}"
                ) from e
            history.append(Message(
                id=row_id,
                user_id=user_id,
                username=username or "",
                text=text,
                created_at=timestamp,
            ))
        return history

    async def append(self, message: Message) -> Message:
        """Persist one message and return it with its assigned id.

        The timestamp is moved forward when needed so that it is strictly
        later than every stored row.

        Raises:
            StoreError: the write failed.
        """
        created_at = message.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        try:
            async with aiosqlite.connect(self._db_path) as db:
                async with db.execute("SELECT MAX(created_at) FROM chat_history") as cursor:
                    row = await cursor.fetchone()
                if row and row[0]:
                    latest = parse_timestamp(row[0])
                    if created_at <= latest:
                        created_at = latest + _ONE_TICK

                cursor = await db.execute(
                    """INSERT INTO chat_history (user_id, username, message, created_at)
                       VALUES (?, ?, ?, ?)""",
                    (message.user_id, message.username, message.text,
                     format_timestamp(created_at)),
                )
                await db.commit()
                row_id = cursor.lastrowid
        except (aiosqlite.Error, ValueError) as e:
            raise StoreError(f"failed to save message to the database: {e}") from e

        return replace(message, id=row_id, created_at=created_at.astimezone(timezone.utc))
