"""Shared (external id, channel) -> tenant index kept in the main database."""

from __future__ import annotations

from typing import NamedTuple, Optional

from agent_desk.log import get_logger
from agent_desk.storage.database import Database

logger = get_logger(__name__)

PENDING_SESSION = 0


class IndexEntry(NamedTuple):
    tenant_id: int
    session_id: int


class ChannelIndex:
    """O(1) lookup of the tenant that owns an external contact.

    The primary key on ``(external_id, channel_type)`` guarantees a contact is
    bound to at most one tenant at a time.
    """

    def __init__(self, db: Database):
        self._db = db

    async def lookup(self, external_id: str, channel_type: str) -> Optional[IndexEntry]:
        row = await self._db.fetch_one(
            "SELECT tenant_id, session_id FROM channel_index "
            "WHERE external_id = ? AND channel_type = ?",
            (external_id, channel_type),
        )
        if row is None:
            return None
        return IndexEntry(row["tenant_id"], row["session_id"])

    async def claim(
        self, external_id: str, channel_type: str, tenant_id: int,
        session_id: int = PENDING_SESSION,
    ) -> bool:
        """Bind a contact to a tenant. Returns False if another binding exists."""
        cursor = await self._db.execute(
            "INSERT INTO channel_index (external_id, channel_type, tenant_id, session_id) "
            "VALUES (?, ?, ?, ?) ON CONFLICT(external_id, channel_type) DO NOTHING",
            (external_id, channel_type, tenant_id, session_id),
        )
        return cursor.rowcount == 1

    async def set_session(
        self, external_id: str, channel_type: str, tenant_id: int, session_id: int
    ) -> None:
        await self._db.execute(
            "UPDATE channel_index SET session_id = ? "
            "WHERE external_id = ? AND channel_type = ? AND tenant_id = ?",
            (session_id, external_id, channel_type, tenant_id),
        )

    async def release(self, external_id: str, channel_type: str, tenant_id: int) -> None:
        await self._db.execute(
            "DELETE FROM channel_index "
            "WHERE external_id = ? AND channel_type = ? AND tenant_id = ?",
            (external_id, channel_type, tenant_id),
        )
        logger.debug("channel_index_released", external_id=external_id, channel=channel_type)
