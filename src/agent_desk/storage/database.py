"""SQLite database connection manager with schema migration."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Sequence

import aiosqlite

from agent_desk.log import get_logger

logger = get_logger(__name__)

_NOW = "(strftime('%Y-%m-%dT%H:%M:%f','now'))"

MAIN_SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS tenants (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            TEXT    NOT NULL,
    email           TEXT    NOT NULL UNIQUE,
    role            TEXT    NOT NULL DEFAULT 'user' CHECK(role IN ('user','admin')),
    plan            TEXT    NOT NULL DEFAULT 'free',
    is_active       INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT    NOT NULL DEFAULT {_NOW},
    updated_at      TEXT    NOT NULL DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS tenant_databases (
    tenant_id       INTEGER PRIMARY KEY REFERENCES tenants(id) ON DELETE CASCADE,
    database_name   TEXT    NOT NULL UNIQUE,
    status          TEXT    NOT NULL DEFAULT 'active'
                    CHECK(status IN ('active','suspended','deleted')),
    created_at      TEXT    NOT NULL DEFAULT {_NOW},
    updated_at      TEXT    NOT NULL DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS channel_index (
    external_id     TEXT    NOT NULL,
    channel_type    TEXT    NOT NULL,
    tenant_id       INTEGER NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    session_id      INTEGER NOT NULL,
    created_at      TEXT    NOT NULL DEFAULT {_NOW},
    PRIMARY KEY (external_id, channel_type)
);

CREATE INDEX IF NOT EXISTS idx_channel_index_tenant ON channel_index(tenant_id);

CREATE TABLE IF NOT EXISTS audit_logs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    actor_id        INTEGER,
    action          TEXT    NOT NULL,
    resource_type   TEXT,
    resource_id     TEXT,
    old_values      TEXT,
    new_values      TEXT,
    ip_address      TEXT,
    user_agent      TEXT,
    metadata_json   TEXT    NOT NULL DEFAULT '{{}}',
    created_at      TEXT    NOT NULL DEFAULT {_NOW}
);

CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_logs(actor_id, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_logs(action);

CREATE TRIGGER IF NOT EXISTS trg_audit_immutable BEFORE UPDATE ON audit_logs BEGIN
    SELECT RAISE(ABORT, 'audit_logs rows are append-only');
END;

CREATE TABLE IF NOT EXISTS alerts (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id       INTEGER,
    type            TEXT    NOT NULL,
    severity        TEXT    NOT NULL DEFAULT 'warning',
    title           TEXT    NOT NULL,
    message         TEXT,
    metadata_json   TEXT    NOT NULL DEFAULT '{{}}',
    is_resolved     INTEGER NOT NULL DEFAULT 0,
    resolved_at     TEXT,
    created_at      TEXT    NOT NULL DEFAULT {_NOW}
);

CREATE INDEX IF NOT EXISTS idx_alerts_tenant ON alerts(tenant_id, is_resolved);

CREATE TRIGGER IF NOT EXISTS trg_alerts_resolve_only BEFORE UPDATE ON alerts
WHEN NEW.tenant_id IS NOT OLD.tenant_id
  OR NEW.type IS NOT OLD.type
  OR NEW.severity IS NOT OLD.severity
  OR NEW.title IS NOT OLD.title
  OR NEW.message IS NOT OLD.message
  OR NEW.metadata_json IS NOT OLD.metadata_json
  OR NEW.created_at IS NOT OLD.created_at
BEGIN
    SELECT RAISE(ABORT, 'alerts may only change their resolved flag');
END;

CREATE TABLE IF NOT EXISTS system_settings (
    key             TEXT PRIMARY KEY,
    value           TEXT NOT NULL,
    updated_at      TEXT NOT NULL DEFAULT {_NOW}
);
"""

TENANT_SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS agents (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            TEXT    NOT NULL,
    description     TEXT    NOT NULL DEFAULT '',
    provider        TEXT    NOT NULL DEFAULT 'anthropic',
    model           TEXT    NOT NULL,
    system_prompt   TEXT    NOT NULL DEFAULT '',
    temperature     REAL    NOT NULL DEFAULT 0.7,
    max_tokens      INTEGER NOT NULL DEFAULT 1000,
    is_active       INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT    NOT NULL DEFAULT {_NOW},
    updated_at      TEXT    NOT NULL DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS channel_sessions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id     TEXT    NOT NULL,
    channel_type    TEXT    NOT NULL,
    contact_name    TEXT,
    agent_id        INTEGER REFERENCES agents(id) ON DELETE SET NULL,
    status          TEXT    NOT NULL DEFAULT 'active' CHECK(status IN ('active','closed')),
    last_activity   TEXT    NOT NULL DEFAULT {_NOW},
    metadata_json   TEXT    NOT NULL DEFAULT '{{}}',
    created_at      TEXT    NOT NULL DEFAULT {_NOW},
    updated_at      TEXT    NOT NULL DEFAULT {_NOW}
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_sessions_active
    ON channel_sessions(external_id, channel_type) WHERE status = 'active';
CREATE INDEX IF NOT EXISTS idx_sessions_activity ON channel_sessions(status, last_activity);

CREATE TABLE IF NOT EXISTS conversations (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id      INTEGER REFERENCES channel_sessions(id) ON DELETE SET NULL,
    agent_id        INTEGER REFERENCES agents(id) ON DELETE SET NULL,
    channel_type    TEXT    NOT NULL,
    external_id     TEXT,
    customer_name   TEXT,
    customer_email  TEXT,
    customer_phone  TEXT,
    status          TEXT    NOT NULL DEFAULT 'active' CHECK(status IN ('active','archived')),
    metadata_json   TEXT    NOT NULL DEFAULT '{{}}',
    started_at      TEXT    NOT NULL DEFAULT {_NOW},
    ended_at        TEXT,
    created_at      TEXT    NOT NULL DEFAULT {_NOW},
    updated_at      TEXT    NOT NULL DEFAULT {_NOW}
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_conversations_active
    ON conversations(session_id) WHERE status = 'active' AND session_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_conversations_status ON conversations(status, updated_at);

CREATE TABLE IF NOT EXISTS messages (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id     INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    content             TEXT    NOT NULL,
    sender              TEXT    NOT NULL CHECK(sender IN ('customer','user','agent','system','operator')),
    message_type        TEXT    NOT NULL DEFAULT 'text',
    native_message_id   TEXT,
    status              TEXT    NOT NULL DEFAULT 'received',
    response_time       REAL,
    metadata_json       TEXT    NOT NULL DEFAULT '{{}}',
    created_at          TEXT    NOT NULL,
    UNIQUE (conversation_id, native_message_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, created_at, id);
"""


class Database:
    """Async SQLite database manager for one database file."""

    def __init__(self, db_path: str | Path, schema: str = MAIN_SCHEMA_SQL):
        self._db_path = str(db_path)
        self._schema = schema
        self._conn: aiosqlite.Connection | None = None

    @property
    def path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """Open connection and run migrations. Safe to call more than once."""
        if self._conn is not None:
            return
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self._db_path)
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA foreign_keys=ON")
            await conn.executescript(self._schema)
            await conn.commit()
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        logger.info("database_initialized", path=self._db_path)

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        cursor = await self.conn.execute(sql, tuple(params))
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        cursor = await self.conn.execute(sql, tuple(params))
        row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Cursor:
        """Run a write statement and commit."""
        cursor = await self.conn.execute(sql, tuple(params))
        await self.conn.commit()
        return cursor

    async def execute_many(self, statements: Iterable[tuple[str, Sequence[Any]]]) -> None:
        """Run several write statements in one transaction."""
        try:
            for sql, params in statements:
                await self.conn.execute(sql, tuple(params))
            await self.conn.commit()
        except Exception:
            await self.conn.rollback()
            raise

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed", path=self._db_path)
