"""SQLite-backed store for command execution records."""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

import aiosqlite

from tmux_exec.exceptions import StoreError
from tmux_exec.storage.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    CommandExecution,
    utcnow,
)

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id",
    "pane_id",
    "command",
    "status",
    "start_time",
    "end_time",
    "shell_type",
    "cwd",
    "system_info",
    "result",
    "exit_code",
    "aborted",
    "retry_count",
)

_ACTIVE = tuple(sorted(s.value for s in ACTIVE_STATUSES))
_TERMINAL = tuple(sorted(s.value for s in TERMINAL_STATUSES))


def _placeholders(values: tuple[str, ...]) -> str:
    return ", ".join("?" for _ in values)


class CommandStore:
    """Keyed store of CommandExecution snapshots.

    ``put`` is an upsert by id, last writer wins. Another process may open
    the same database file and flip a record to ``cancelled``; the owning
    executor sees that on its next poll.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Open the database and create tables."""
        if self._db is not None:
            return
        if self.db_path == ":memory:":
            target = self.db_path
        else:
            resolved = Path(self.db_path).expanduser().resolve()
            resolved.parent.mkdir(parents=True, exist_ok=True)
            target = str(resolved)

        self._db = await aiosqlite.connect(target)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode = WAL")

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS commands (
                id TEXT PRIMARY KEY,
                pane_id TEXT NOT NULL,
                command TEXT NOT NULL,
                status TEXT NOT NULL
                    CHECK(status IN ('pending', 'running', 'completed', 'error', 'cancelled', 'timeout')),
                start_time TEXT NOT NULL,
                end_time TEXT,
                shell_type TEXT,
                cwd TEXT,
                system_info TEXT,
                result TEXT,
                exit_code INTEGER,
                aborted INTEGER NOT NULL DEFAULT 0,
                retry_count INTEGER NOT NULL DEFAULT 0
            )
        """)
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_commands_status ON commands(status)")
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_commands_start_time ON commands(start_time)")
        await self._db.commit()
        logger.info("Command store initialized: %s", target)

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.info("Command store closed")

    async def __aenter__(self) -> CommandStore:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("Command store not initialized. Call init() first.")
        return self._db

    async def put(self, record: CommandExecution) -> None:
        """Insert or replace the snapshot for ``record.id``."""
        db = self._conn()
        row = record.to_row()
        updates = ", ".join(f"{col} = excluded.{col}" for col in _COLUMNS if col != "id")
        await db.execute(
            f"INSERT INTO commands ({', '.join(_COLUMNS)}) VALUES ({_placeholders(_COLUMNS)}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            tuple(row[col] for col in _COLUMNS),
        )
        await db.commit()

    async def get(self, command_id: str) -> CommandExecution | None:
        db = self._conn()
        cursor = await db.execute("SELECT * FROM commands WHERE id = ?", (command_id,))
        row = await cursor.fetchone()
        return CommandExecution.from_row(row) if row else None

    async def list_active(self) -> list[CommandExecution]:
        """Pending and running records, newest first."""
        db = self._conn()
        cursor = await db.execute(
            f"SELECT * FROM commands WHERE status IN ({_placeholders(_ACTIVE)}) ORDER BY start_time DESC",
            _ACTIVE,
        )
        rows = await cursor.fetchall()
        return [CommandExecution.from_row(row) for row in rows]

    async def list_history(self, limit: int = 100) -> list[CommandExecution]:
        """Most recent terminal records, newest first."""
        db = self._conn()
        cursor = await db.execute(
            f"SELECT * FROM commands WHERE status IN ({_placeholders(_TERMINAL)}) "
            "ORDER BY start_time DESC LIMIT ?",
            (*_TERMINAL, limit),
        )
        rows = await cursor.fetchall()
        return [CommandExecution.from_row(row) for row in rows]

    async def prune_history(self, max_age_hours: float = 24) -> int:
        """Delete terminal records that started before the cutoff."""
        db = self._conn()
        cutoff = (utcnow() - timedelta(hours=max_age_hours)).isoformat(timespec="microseconds")
        cursor = await db.execute(
            f"DELETE FROM commands WHERE status IN ({_placeholders(_TERMINAL)}) AND start_time < ?",
            (*_TERMINAL, cutoff),
        )
        await db.commit()
        removed = cursor.rowcount
        if removed:
            logger.info("Pruned %d history records older than %sh", removed, max_age_hours)
        return removed
