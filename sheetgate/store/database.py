"""Store layer — shared SQLite connection, schema and additive migrations.

One ``Database`` owns one aiosqlite connection.  The conversation, ledger
and turn-state repositories share it, so a conversation row and the undo
rows referencing it always live in the same database (including the
in-memory fallback used when the on-disk file cannot be opened).

Schema evolution is additive only: new columns are nullable, added with
``ALTER TABLE ... ADD COLUMN`` when missing, and readers apply defaults.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from sheetgate.exceptions import StoreUnavailableError
from sheetgate.logging import get_logger

log = get_logger(__name__)

MEMORY = ":memory:"

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id          TEXT PRIMARY KEY,
    title       TEXT NOT NULL DEFAULT '',
    context     TEXT NOT NULL DEFAULT '',
    created_at  REAL NOT NULL,
    updated_at  REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    role            TEXT NOT NULL,
    content         TEXT NOT NULL,
    timestamp       REAL NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (conversation_id);

CREATE TABLE IF NOT EXISTS undo_actions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    batch_id        INTEGER NOT NULL,
    workbook        TEXT NOT NULL DEFAULT '',
    sheet           TEXT NOT NULL DEFAULT '',
    cell            TEXT NOT NULL DEFAULT '',
    old_value       TEXT,
    approved        INTEGER NOT NULL DEFAULT 0,
    created_at      REAL NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_undo_conversation ON undo_actions (conversation_id, approved);
CREATE INDEX IF NOT EXISTS idx_undo_batch ON undo_actions (batch_id);

CREATE TABLE IF NOT EXISTS checkpoints (
    id              TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    name            TEXT NOT NULL,
    messages        TEXT NOT NULL,
    context         TEXT NOT NULL DEFAULT '',
    created_at      REAL NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS pending_turns (
    conversation_id TEXT PRIMARY KEY,
    turn_id         TEXT NOT NULL,
    state           TEXT NOT NULL,
    updated_at      REAL NOT NULL
);
"""

# (table, column, declaration), applied in order when the column is missing.
_ADDITIVE_COLUMNS: list[tuple[str, str, str]] = [
    ("conversations", "document_path", "TEXT"),
    ("undo_actions", "operation_type", "TEXT"),
    ("undo_actions", "undo_data", "TEXT"),
]

# Tool results were once stored with role 'user' or 'system'.
# Each statement runs once; PRAGMA user_version counts the ones applied.
_DATA_MIGRATIONS: list[str] = [
    "UPDATE messages SET role = 'tool' "
    "WHERE role IN ('user', 'system') AND content LIKE 'TOOL RESULTS:%'",
]


class Database:
    """Async SQLite connection shared by the store repositories.

    Usage::

        db = Database(Path("~/.sheetgate/sheetgate.db"))
        await db.init()
        async with db.transaction() as conn:
            await conn.execute("DELETE FROM messages WHERE conversation_id=?", (cid,))
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = str(db_path) if str(db_path) == MEMORY else str(Path(db_path).expanduser())
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self.degraded = False

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def conn(self) -> aiosqlite.Connection:
        assert self._conn is not None, "Database.init() has not been called"
        return self._conn

    async def init(self) -> None:
        """Open the database, create tables and apply additive migrations."""
        try:
            if self._db_path != MEMORY:
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(self._db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA foreign_keys=ON")
            await self._conn.executescript(_SCHEMA_SQL)
            await self._migrate()
            await self._conn.commit()
            log.info("store_ready", db=self._db_path)
        except (OSError, aiosqlite.Error) as exc:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None
            raise StoreUnavailableError(
                f"Failed to initialise store: {exc}", context={"db": self._db_path}
            ) from exc

    async def _migrate(self) -> None:
        assert self._conn is not None
        for table, column, declaration in _ADDITIVE_COLUMNS:
            async with self._conn.execute(f"PRAGMA table_info({table})") as cursor:
                existing = {row["name"] for row in await cursor.fetchall()}
            if column not in existing:
                await self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {declaration}")
                log.info("store_column_added", table=table, column=column)
        async with self._conn.execute("PRAGMA user_version") as cursor:
            row = await cursor.fetchone()
        version = row[0] if row else 0
        for statement in _DATA_MIGRATIONS[version:]:
            await self._conn.execute(statement)
        if version < len(_DATA_MIGRATIONS):
            await self._conn.execute(f"PRAGMA user_version = {len(_DATA_MIGRATIONS)}")
            log.info("store_data_migrated", from_version=version, to_version=len(_DATA_MIGRATIONS))

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialise a unit of work and commit it atomically (rollback on error)."""
        async with self._lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()


async def open_database(db_path: Path | str, *, fallback_to_memory: bool = True) -> Database:
    """Open *db_path*; degrade to an in-memory database if it is unavailable."""
    db = Database(db_path)
    try:
        await db.init()
        return db
    except StoreUnavailableError as exc:
        if not fallback_to_memory:
            raise
        log.warning("store_degraded_to_memory", db=str(db_path), error=exc.message)
    memory = Database(MEMORY)
    await memory.init()
    memory.degraded = True
    return memory
