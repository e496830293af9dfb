"""Per-tenant channel sessions, conversations and messages."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from agent_desk.core.types import ConversationStatus, SessionStatus
from agent_desk.errors import ConversationNotFound, DuplicateMessage
from agent_desk.log import get_logger
from agent_desk.storage.models import ChannelSession, Conversation, Message
from agent_desk.storage.router import TenantDatabaseRouter

logger = get_logger(__name__)

_NOW = "strftime('%Y-%m-%dT%H:%M:%f','now')"


class ConversationRepository:
    """CRUD over the tenant-scoped conversation tables."""

    def __init__(self, router: TenantDatabaseRouter):
        self._router = router

    # -- channel sessions ------------------------------------------------------

    async def find_active_session(
        self, tenant_id: int, external_id: str, channel_type: str
    ) -> Optional[ChannelSession]:
        rows = await self._router.query(
            tenant_id,
            "SELECT * FROM channel_sessions "
            "WHERE external_id = ? AND channel_type = ? AND status = 'active'",
            (external_id, channel_type),
        )
        return ChannelSession.from_row(rows[0]) if rows else None

    async def create_session(
        self,
        tenant_id: int,
        external_id: str,
        channel_type: str,
        contact_name: Optional[str] = None,
        agent_id: Optional[int] = None,
    ) -> ChannelSession:
        session_id, _ = await self._router.execute(
            tenant_id,
            "INSERT INTO channel_sessions (external_id, channel_type, contact_name, agent_id) "
            "VALUES (?, ?, ?, ?)",
            (external_id, channel_type, contact_name, agent_id),
        )
        logger.info(
            "channel_session_created",
            tenant_id=tenant_id, session_id=session_id, channel=channel_type,
        )
        return await self.get_session(tenant_id, session_id)

    async def get_session(self, tenant_id: int, session_id: int) -> Optional[ChannelSession]:
        rows = await self._router.query(
            tenant_id, "SELECT * FROM channel_sessions WHERE id = ?", (session_id,)
        )
        return ChannelSession.from_row(rows[0]) if rows else None

    async def list_sessions(
        self, tenant_id: int, status: Optional[str] = SessionStatus.ACTIVE, limit: int = 50
    ) -> list[dict[str, Any]]:
        """Sessions joined with their agent name, most recently active first."""
        sql = (
            "SELECT s.*, a.name AS agent_name FROM channel_sessions s "
            "LEFT JOIN agents a ON a.id = s.agent_id"
        )
        params: list[Any] = []
        if status:
            sql += " WHERE s.status = ?"
            params.append(str(status))
        sql += " ORDER BY s.last_activity DESC LIMIT ?"
        params.append(limit)
        rows = await self._router.query(tenant_id, sql, params)
        for row in rows:
            row["metadata"] = json.loads(row.pop("metadata_json") or "{}")
        return rows

    async def touch_session(self, tenant_id: int, session_id: int) -> None:
        await self._router.execute(
            tenant_id,
            f"UPDATE channel_sessions SET last_activity = {_NOW}, updated_at = {_NOW} WHERE id = ?",
            (session_id,),
        )

    async def assign_agent(
        self, tenant_id: int, session_id: int, agent_id: Optional[int]
    ) -> Optional[int]:
        """Point a session at another agent. Returns the previous agent id."""
        session = await self.get_session(tenant_id, session_id)
        if session is None:
            raise ConversationNotFound(f"session {session_id} not found", tenant_id=tenant_id)
        await self._router.execute(
            tenant_id,
            f"UPDATE channel_sessions SET agent_id = ?, updated_at = {_NOW} WHERE id = ?",
            (agent_id, session_id),
        )
        return session.agent_id

    async def set_session_status(
        self, tenant_id: int, session_id: int, status: str, metadata: Optional[dict] = None
    ) -> Optional[ChannelSession]:
        session = await self.get_session(tenant_id, session_id)
        if session is None:
            return None
        merged = {**session.metadata, **(metadata or {})}
        await self._router.execute(
            tenant_id,
            f"UPDATE channel_sessions SET status = ?, metadata_json = ?, "
            f"last_activity = {_NOW}, updated_at = {_NOW} WHERE id = ?",
            (str(status), json.dumps(merged), session_id),
        )
        if status == SessionStatus.CLOSED:
            await self._router.execute(
                tenant_id,
                f"UPDATE conversations SET status = 'archived', ended_at = {_NOW}, "
                f"updated_at = {_NOW} WHERE session_id = ? AND status = 'active'",
                (session_id,),
            )
        return await self.get_session(tenant_id, session_id)

    async def find_stale_sessions(self, tenant_id: int, minutes: int) -> list[ChannelSession]:
        rows = await self._router.query(
            tenant_id,
            "SELECT * FROM channel_sessions WHERE status = 'active' "
            "AND last_activity < strftime('%Y-%m-%dT%H:%M:%f','now', ?) "
            "ORDER BY last_activity ASC",
            (f"-{int(minutes)} minutes",),
        )
        return [ChannelSession.from_row(r) for r in rows]

    # -- conversations -----------------------------------------------------------

    async def find_active_conversation(
        self, tenant_id: int, session_id: int
    ) -> Optional[Conversation]:
        rows = await self._router.query(
            tenant_id,
            "SELECT * FROM conversations WHERE session_id = ? AND status = 'active'",
            (session_id,),
        )
        return Conversation.from_row(rows[0]) if rows else None

    async def create_conversation(
        self,
        tenant_id: int,
        session: ChannelSession,
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> Conversation:
        conversation_id, _ = await self._router.execute(
            tenant_id,
            """INSERT INTO conversations
               (session_id, agent_id, channel_type, external_id,
                customer_name, customer_email, customer_phone, status)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session.id,
                session.agent_id,
                session.channel_type,
                session.external_id,
                customer_name,
                customer_email,
                customer_phone,
                str(ConversationStatus.ACTIVE),
            ),
        )
        logger.info("conversation_created", tenant_id=tenant_id, conversation_id=conversation_id)
        return await self.get_conversation(tenant_id, conversation_id)

    async def get_conversation(self, tenant_id: int, conversation_id: int) -> Conversation:
        rows = await self._router.query(
            tenant_id, "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        )
        if not rows:
            raise ConversationNotFound(
                f"conversation {conversation_id} not found", tenant_id=tenant_id
            )
        return Conversation.from_row(rows[0])

    async def conversation_exists(self, tenant_id: int, conversation_id: int) -> bool:
        rows = await self._router.query(
            tenant_id, "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)
        )
        return bool(rows)

    async def list_active_conversations(self, tenant_id: int, limit: int = 20) -> list[dict[str, Any]]:
        rows = await self._router.query(
            tenant_id,
            """SELECT c.*, a.name AS agent_name, a.is_active AS agent_status,
                      COUNT(m.id) AS message_count,
                      MAX(m.created_at) AS last_message_time
               FROM conversations c
               LEFT JOIN agents a ON c.agent_id = a.id
               LEFT JOIN messages m ON m.conversation_id = c.id
               WHERE c.status = 'active'
               GROUP BY c.id
               ORDER BY c.updated_at DESC
               LIMIT ?""",
            (limit,),
        )
        for row in rows:
            row["metadata"] = json.loads(row.pop("metadata_json") or "{}")
        return rows

    async def touch_conversation(self, tenant_id: int, conversation_id: int) -> None:
        await self._router.execute(
            tenant_id,
            f"UPDATE conversations SET updated_at = {_NOW} WHERE id = ?",
            (conversation_id,),
        )

    # -- messages ------------------------------------------------------------------

    async def add_message(self, tenant_id: int, message: Message) -> Message:
        """Append a message to its conversation.

        The stored timestamp never goes below the conversation's latest one.
        Raises :class:`DuplicateMessage` if the native message id is already stored.
        """
        message_id, inserted = await self._router.execute(
            tenant_id,
            f"""INSERT INTO messages
               (conversation_id, content, sender, message_type, native_message_id,
                status, response_time, metadata_json, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?,
                       (SELECT max({_NOW}, COALESCE(MAX(created_at), ''))
                        FROM messages WHERE conversation_id = ?))
               ON CONFLICT(conversation_id, native_message_id) DO NOTHING""",
            (
                message.conversation_id,
                message.content,
                str(message.sender),
                message.message_type,
                message.native_message_id,
                message.status,
                message.response_time,
                json.dumps(message.metadata),
                message.conversation_id,
            ),
        )
        if inserted == 0:
            raise DuplicateMessage(message.conversation_id, message.native_message_id or "")
        rows = await self._router.query(
            tenant_id, "SELECT * FROM messages WHERE id = ?", (message_id,)
        )
        return Message.from_row(rows[0])

    async def find_by_native_id(
        self, tenant_id: int, conversation_id: int, native_message_id: str
    ) -> Optional[Message]:
        rows = await self._router.query(
            tenant_id,
            "SELECT * FROM messages WHERE conversation_id = ? AND native_message_id = ?",
            (conversation_id, native_message_id),
        )
        return Message.from_row(rows[0]) if rows else None

    async def get_messages(
        self, tenant_id: int, conversation_id: int, limit: int = 50, offset: int = 0
    ) -> list[Message]:
        """Return a page of messages in chronological order.

        ``offset`` counts back from the newest message.
        """
        rows = await self._router.query(
            tenant_id,
            """SELECT * FROM messages WHERE conversation_id = ?
               ORDER BY created_at DESC, id DESC
               LIMIT ? OFFSET ?""",
            (conversation_id, int(limit), int(offset)),
        )
        return [Message.from_row(r) for r in reversed(rows)]

    async def update_message_status(
        self, tenant_id: int, message_id: int, status: str, metadata: Optional[dict] = None
    ) -> None:
        await self._router.execute(
            tenant_id,
            "UPDATE messages SET status = ?, metadata_json = ? WHERE id = ?",
            (status, json.dumps(metadata or {}), message_id),
        )

    # -- metrics -----------------------------------------------------------------------

    async def real_time_metrics(self, tenant_id: int) -> dict[str, Any]:
        rows = await self._router.query(
            tenant_id,
            """SELECT
                 (SELECT COUNT(*) FROM conversations WHERE status = 'active') AS active_conversations,
                 (SELECT COUNT(*) FROM messages
                    WHERE date(created_at) = date('now')) AS today_messages,
                 (SELECT COUNT(*) FROM agents WHERE is_active = 1) AS active_agents,
                 (SELECT COUNT(*) FROM channel_sessions WHERE status = 'active') AS active_sessions""",
            (),
        )
        metrics = dict(rows[0])
        metrics["timestamp"] = datetime.now(timezone.utc).isoformat()
        return metrics
