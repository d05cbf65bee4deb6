"""Versioned schema migrations for the transcript database.

Each migration runs once; applied versions are recorded in the
``schema_migrations`` table so re-running the set is a no-op.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite
import structlog

from chatrelay.core.errors import StartupError

logger = structlog.get_logger()

CREATE_VERSIONS_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    applied_at TEXT NOT NULL
)
"""

_FILE_PATTERN = re.compile(r"^(\d+)_(\w+)\.up\.sql$")


@dataclass(frozen=True)
class Migration:
    """One schema step."""

    version: int
    name: str
    sql: str


BUILTIN_MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        name="create_chat_history",
        sql="""
        CREATE TABLE IF NOT EXISTS chat_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            username TEXT NOT NULL DEFAULT '',
            message TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        """,
    ),
    Migration(
        version=2,
        name="index_chat_history_created_at",
        sql="CREATE INDEX IF NOT EXISTS idx_chat_history_created_at ON chat_history(created_at);",
    ),
)


def load_migrations(directory: Path) -> list[Migration]:
    """Read ``<version>_<name>.up.sql`` files from a directory, ordered by version.

    Raises:
        StartupError: the directory is missing, unreadable or has duplicate versions.
    """
    if not directory.is_dir():
        raise StartupError(f"migrations directory not found: {directory}")

    found: dict[int, Migration] = {}
    try:
        for path in sorted(directory.iterdir()):
            match = _FILE_PATTERN.match(path.name)
            if not match:
                continue
            version = int(match.group(1))
            if version in found:
                raise StartupError(f"duplicate migration version {version} in {directory}")
            found[version] = Migration(
                version=version,
                name=match.group(2),
                sql=path.read_text(encoding="utf-8"),
            )
    except OSError as e:
        raise StartupError(f"cannot read migrations from {directory}: {e}") from e

    return [found[v] for v in sorted(found)]


class MigrationRunner:
    """Applies pending migrations to a SQLite database."""

    def __init__(self, db_path: str, migrations: list[Migration] | None = None) -> None:
        self._db_path = db_path
        self._migrations = sorted(
            migrations if migrations is not None else BUILTIN_MIGRATIONS,
            key=lambda m: m.version,
        )

    async def applied_versions(self) -> set[int]:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(CREATE_VERSIONS_SQL)
            await db.commit()
            async with db.execute("SELECT version FROM schema_migrations") as cursor:
                rows = await cursor.fetchall()
        return {row[0] for row in rows}

    async def up(self) -> int:
        """Apply every pending migration. Returns how many were applied.

        Raises:
            StartupError: a migration failed; earlier ones stay applied.
        """
        try:
            applied = await self.applied_versions()
        except aiosqlite.Error as e:
            raise StartupError(f"cannot read schema version: {e}") from e

        count = 0
        for migration in self._migrations:
            if migration.version in applied:
                continue
            try:
                await self._apply(migration)
            except aiosqlite.Error as e:
                raise StartupError(
                    f"migration {migration.version} ({migration.name}) failed: {e}"
                ) from e
            logger.info(
                "migration_applied",
                version=migration.version,
                name=migration.name,
            )
            count += 1

        if count == 0:
            logger.info("migrations_up_to_date", versions=len(applied))
        return count

    async def _apply(self, migration: Migration) -> None:
        # executescript() commits first, so wrap script and bookkeeping together
        script = (
            "BEGIN;\n"
            f"{migration.sql.strip().rstrip(';')};\n"
            "INSERT INTO schema_migrations (version, name, applied_at) "
            f"VALUES ({migration.version}, '{migration.name}', "
            f"'{datetime.now(timezone.utc).isoformat()}');\n"
            "COMMIT;"
        )
        async with aiosqlite.connect(self._db_path) as db:
            try:
                await db.executescript(script)
            except aiosqlite.Error:
                await db.rollback()
                raise
