"""SQLite database connection manager with schema migration."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from flowchat.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chat_sessions (
    uuid              TEXT PRIMARY KEY,
    instance_id       TEXT NOT NULL,
    visitor_id        TEXT NOT NULL,
    user_id           TEXT,
    status            TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active','closed','archived')),
    started_at        TEXT NOT NULL,
    last_activity_at  TEXT NOT NULL,
    closed_at         TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_instance
    ON chat_sessions(instance_id, status, last_activity_at);

CREATE INDEX IF NOT EXISTS idx_sessions_visitor
    ON chat_sessions(visitor_id, instance_id);

CREATE TABLE IF NOT EXISTS chat_messages (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    session_uuid      TEXT NOT NULL REFERENCES chat_sessions(uuid) ON DELETE CASCADE,
    role              TEXT NOT NULL CHECK(role IN ('user','assistant','system')),
    content_json      TEXT NOT NULL,
    tool_calls_json   TEXT,
    tool_results_json TEXT,
    metadata_json     TEXT,
    created_at        TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_session
    ON chat_messages(session_uuid, created_at);

CREATE TABLE IF NOT EXISTS fallback_messages (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id  TEXT NOT NULL,
    name         TEXT NOT NULL DEFAULT '',
    email        TEXT NOT NULL,
    message      TEXT NOT NULL,
    status       TEXT NOT NULL DEFAULT 'pending',
    created_at   TEXT NOT NULL
);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
