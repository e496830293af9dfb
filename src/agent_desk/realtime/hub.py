"""Real-time broadcast hub serving dashboard sockets.

Connections move through ``connected -> authenticated -> disconnected``.
Only an authenticated connection may join rooms or act on data; the tenant
it is bound to comes from a verified access token.

Rooms:
  ``tenant:<id>``               every socket of one tenant
  ``conversation:<tid>:<cid>``  sockets watching one conversation

Conversation ids are only unique inside a tenant database, so conversation
rooms carry the tenant id as well.

All socket/tenant/room maps belong to the hub instance and live in this
process only. Broadcasts are fire-and-forget: a client that is not connected
when an event is emitted never sees it.
"""

from __future__ import annotations

import asyncio
import weakref
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from agent_desk.ai.generator import ReplyGenerator
from agent_desk.audit.sink import AuditSink
from agent_desk.config import AIConfig
from agent_desk.core.auth import TokenService
from agent_desk.core.types import ConnectionState, SenderRole
from agent_desk.errors import (
    AgentDeskError,
    AuthenticationError,
    ConversationNotFound,
    GenerationError,
    TenantNotFound,
)
from agent_desk.log import get_logger
from agent_desk.realtime.connection import Connection
from agent_desk.routing.sessions import SessionService
from agent_desk.storage.agent_repo import AgentRepository
from agent_desk.storage.conversation_repo import ConversationRepository
from agent_desk.storage.models import Conversation, Message
from agent_desk.storage.router import TenantDatabaseRouter

if TYPE_CHECKING:
    from agent_desk.routing.pipeline import InboundPipeline

logger = get_logger(__name__)

Handler = Callable[[Connection, dict[str, Any]], Awaitable[None]]

# Error event sent back to the caller when a client event fails.
_ERROR_EVENTS = {
    "send_message": "message_error",
    "send_channel_reply": "message_error",
    "get_conversation_messages": "messages_error",
    "get_real_time_metrics": "metrics_error",
    "update_agent_status": "agent_status_error",
    "update_session_status": "session_error",
    "join_conversation": "join_error",
}


def tenant_room(tenant_id: int) -> str:
    return f"tenant:{tenant_id}"


def conversation_room(tenant_id: int, conversation_id: int) -> str:
    return f"conversation:{tenant_id}:{conversation_id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _int(data: dict[str, Any], *keys: str) -> Optional[int]:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            try:
                return int(value)
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be an integer") from None
    return None


class BroadcastHub:
    def __init__(
        self,
        router: TenantDatabaseRouter,
        conversations: ConversationRepository,
        agents: AgentRepository,
        sessions: SessionService,
        generator: ReplyGenerator,
        tokens: TokenService,
        audit: AuditSink,
        ai_config: Optional[AIConfig] = None,
        pipeline: Optional[InboundPipeline] = None,
    ):
        self._router = router
        self._conversations = conversations
        self._agents = agents
        self._sessions = sessions
        self._generator = generator
        self._tokens = tokens
        self._audit = audit
        self._ai_config = ai_config or AIConfig()
        self._pipeline = pipeline

        self._connections: dict[str, Connection] = {}
        self._tenant_connections: dict[int, set[str]] = {}
        self._rooms: dict[str, set[str]] = {}
        self._conversation_locks: weakref.WeakValueDictionary[tuple[int, int], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

        self._handlers: dict[str, Handler] = {
            "authenticate": self._on_authenticate,
            "send_message": self._on_send_message,
            "join_conversation": self._on_join_conversation,
            "leave_conversation": self._on_leave_conversation,
            "typing_start": self._on_typing_start,
            "typing_stop": self._on_typing_stop,
            "get_conversation_messages": self._on_get_conversation_messages,
            "get_real_time_metrics": self._on_get_real_time_metrics,
            "update_agent_status": self._on_update_agent_status,
            "update_session_status": self._on_update_session_status,
            "send_channel_reply": self._on_send_channel_reply,
        }

    def attach_pipeline(self, pipeline: InboundPipeline) -> None:
        self._pipeline = pipeline

    # -- connection lifecycle -------------------------------------------------------

    def connect(self, conn: Connection) -> None:
        self._connections[conn.id] = conn
        logger.debug("socket_connected", connection_id=conn.id)

    def disconnect(self, conn: Connection) -> None:
        """Forget a connection. Persisted state is untouched."""
        self._unbind(conn)
        self._connections.pop(conn.id, None)
        conn.state = ConnectionState.DISCONNECTED
        logger.debug("socket_disconnected", connection_id=conn.id)

    def connected_tenants(self) -> list[int]:
        return sorted(tid for tid, ids in self._tenant_connections.items() if ids)

    def connections_for(self, tenant_id: int) -> list[Connection]:
        ids = self._tenant_connections.get(tenant_id, set())
        return [self._connections[i] for i in ids if i in self._connections]

    def tenant_of(self, conn: Connection) -> Optional[int]:
        return conn.tenant_id if conn.id in self._connections else None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def handle(self, conn: Connection, event: str, data: Any) -> None:
        """Dispatch one client event. Errors go back to the caller only."""
        handler = self._handlers.get(event)
        if handler is None:
            await conn.send("error", {"error": f"unknown event {event!r}"})
            return
        if not isinstance(data, dict):
            data = {}
        if event != "authenticate" and not conn.is_authenticated:
            await conn.send(
                _ERROR_EVENTS.get(event, "error"),
                {"error": "not authenticated", "event": event},
            )
            return
        try:
            await handler(conn, data)
        except (AgentDeskError, ValueError) as e:
            logger.info("socket_event_rejected", event_name=event, connection_id=conn.id, error=str(e))
            await conn.send(_ERROR_EVENTS.get(event, "error"), {"error": str(e)})
        except Exception as e:
            logger.error("socket_event_failed", event_name=event, connection_id=conn.id, error=str(e))
            await conn.send(_ERROR_EVENTS.get(event, "error"), {"error": "internal error"})

    # -- client events ----------------------------------------------------------------

    async def _on_authenticate(self, conn: Connection, data: dict[str, Any]) -> None:
        try:
            claims = self._tokens.verify(str(data.get("token") or ""))
            user_id = data.get("userId")
            if user_id is not None and str(user_id) != str(claims.tenant_id):
                raise AuthenticationError("token does not belong to this user")
            try:
                tenant = await self._router.get_tenant(claims.tenant_id)
            except TenantNotFound as e:
                raise AuthenticationError("unknown user") from e
            if not tenant.is_active:
                raise AuthenticationError("account is suspended")
        except AuthenticationError as e:
            # The connection stays open so the client may retry.
            logger.info("socket_auth_failed", connection_id=conn.id, error=str(e))
            await conn.send("authentication_error", {"error": str(e)})
            return

        if conn.is_authenticated:
            self._unbind(conn)
        conn.tenant_id = tenant.id
        conn.role = tenant.role
        conn.state = ConnectionState.AUTHENTICATED
        self._tenant_connections.setdefault(tenant.id, set()).add(conn.id)
        self._join(conn, tenant_room(tenant.id))

        logger.info("socket_authenticated", connection_id=conn.id, tenant_id=tenant.id)
        await self._audit.record(
            "socket.authenticated",
            resource_type="tenant",
            resource_id=tenant.id,
            actor_id=tenant.id,
            context={"connection_id": conn.id},
        )
        await conn.send("authenticated", {"success": True, "userId": tenant.id, "role": tenant.role})
        if not tenant.is_admin:
            await self._send_initial_data(conn, tenant.id)

    async def _send_initial_data(self, conn: Connection, tenant_id: int) -> None:
        try:
            conversations = await self._conversations.list_active_conversations(tenant_id, limit=20)
            agents = await self._agents.list_agents(tenant_id, active_only=True)
            sessions = await self._conversations.list_sessions(tenant_id, limit=10)
        except Exception as e:
            logger.error("initial_data_failed", tenant_id=tenant_id, error=str(e))
            await conn.send("error", {"message": "failed to load initial data"})
            return
        await conn.send(
            "initial_data",
            {
                "conversations": conversations,
                "agents": [a.to_dict() for a in agents],
                "sessions": sessions,
                "timestamp": _now(),
            },
        )

    async def _on_send_message(self, conn: Connection, data: dict[str, Any]) -> None:
        tenant_id = conn.tenant_id
        conversation_id = _int(data, "conversationId", "conversation_id")
        text = str(data.get("message") or data.get("text") or "").strip()
        if conversation_id is None or not text:
            raise ValueError("conversationId and message are required")

        lock = self._conversation_lock(tenant_id, conversation_id)
        async with lock:
            conversation = await self._conversations.get_conversation(tenant_id, conversation_id)
            agent_id = _int(data, "agentId", "agent_id") or conversation.agent_id
            agent = await self._agents.get(tenant_id, agent_id) if agent_id else None
            if agent is None or not agent.is_active:
                raise ValueError("agent not found")

            user_message = await self._conversations.add_message(
                tenant_id,
                Message(
                    conversation_id=conversation.id,
                    content=text,
                    sender=SenderRole.USER,
                    status="delivered",
                    metadata={"connection_id": conn.id},
                ),
            )
            await self.emit_new_message(tenant_id, user_message, also=conn)

            history = await self._conversations.get_messages(
                tenant_id, conversation.id, limit=self._ai_config.history_limit
            )
            try:
                reply = await self._generator.generate(agent, history)
                reply_text, response_time = reply.text, reply.response_time
            except GenerationError as e:
                await self._audit.generation_failed(tenant_id, agent.id, str(e))
                if not self._ai_config.fallback_message:
                    await conn.send(
                        "message_error",
                        {"error": "agent unavailable", "conversation_id": conversation.id},
                    )
                    return
                reply_text, response_time = self._ai_config.fallback_message, None

            agent_message = await self._conversations.add_message(
                tenant_id,
                Message(
                    conversation_id=conversation.id,
                    content=reply_text,
                    sender=SenderRole.AGENT,
                    status="delivered",
                    response_time=response_time,
                    metadata={"agent_id": agent.id},
                ),
            )
            await self.emit_new_message(tenant_id, agent_message, also=conn)
            await self._conversations.touch_conversation(tenant_id, conversation.id)

    async def _on_join_conversation(self, conn: Connection, data: dict[str, Any]) -> None:
        tenant_id = conn.tenant_id
        conversation_id = _int(data, "conversationId", "conversation_id")
        if conversation_id is None:
            raise ValueError("conversationId is required")
        if conn.role == "admin" or not await self._conversations.conversation_exists(
            tenant_id, conversation_id
        ):
            raise ConversationNotFound(f"conversation {conversation_id} not found")
        self._join(conn, conversation_room(tenant_id, conversation_id))
        await conn.send("conversation_joined", {"conversation_id": conversation_id})

    async def _on_leave_conversation(self, conn: Connection, data: dict[str, Any]) -> None:
        tenant_id = conn.tenant_id
        conversation_id = _int(data, "conversationId", "conversation_id")
        if conversation_id is None:
            return
        self._leave(conn, conversation_room(tenant_id, conversation_id))

    async def _on_typing_start(self, conn: Connection, data: dict[str, Any]) -> None:
        await self._typing(conn, data, "user_typing", True)

    async def _on_typing_stop(self, conn: Connection, data: dict[str, Any]) -> None:
        await self._typing(conn, data, "user_stopped_typing", False)

    async def _typing(self, conn: Connection, data: dict[str, Any], event: str, typing: bool) -> None:
        tenant_id = conn.tenant_id
        conversation_id = _int(data, "conversationId", "conversation_id")
        if conversation_id is None:
            return
        await self._emit_room(
            conversation_room(tenant_id, conversation_id),
            event,
            {"userId": tenant_id, "conversation_id": conversation_id, "isTyping": typing},
            exclude=conn,
        )

    async def _on_get_conversation_messages(self, conn: Connection, data: dict[str, Any]) -> None:
        tenant_id = conn.tenant_id
        conversation_id = _int(data, "conversationId", "conversation_id")
        if conversation_id is None:
            raise ValueError("conversationId is required")
        limit = max(1, min(_int(data, "limit") or 50, 200))
        offset = max(0, _int(data, "offset") or 0)
        if not await self._conversations.conversation_exists(tenant_id, conversation_id):
            raise ConversationNotFound(f"conversation {conversation_id} not found")

        page = await self._conversations.get_messages(
            tenant_id, conversation_id, limit=limit + 1, offset=offset
        )
        has_more = len(page) > limit
        if has_more:
            page = page[1:]
        await conn.send(
            "conversation_messages",
            {
                "conversation_id": conversation_id,
                "messages": [m.to_event() for m in page],
                "hasMore": has_more,
            },
        )

    async def _on_get_real_time_metrics(self, conn: Connection, data: dict[str, Any]) -> None:
        tenant_id = conn.tenant_id
        metrics = await self._conversations.real_time_metrics(tenant_id)
        await conn.send("real_time_metrics", metrics)

    async def _on_update_agent_status(self, conn: Connection, data: dict[str, Any]) -> None:
        tenant_id = conn.tenant_id
        agent_id = _int(data, "agentId", "agent_id")
        if agent_id is None or "isActive" not in data:
            raise ValueError("agentId and isActive are required")
        is_active = bool(data["isActive"])
        if not await self._agents.set_active(tenant_id, agent_id, is_active):
            raise ValueError(f"agent {agent_id} not found")
        await self._audit.record(
            "agent.status_updated",
            resource_type="agent",
            resource_id=agent_id,
            actor_id=tenant_id,
            new_values={"is_active": is_active},
        )
        await self._emit_room(
            tenant_room(tenant_id),
            "agent_status_updated",
            {"agentId": agent_id, "isActive": is_active, "updatedBy": tenant_id, "timestamp": _now()},
        )

    async def _on_update_session_status(self, conn: Connection, data: dict[str, Any]) -> None:
        tenant_id = conn.tenant_id
        session_id = _int(data, "sessionId", "session_id")
        status = data.get("status")
        if session_id is None or not status:
            raise ValueError("sessionId and status are required")
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else None
        session = await self._sessions.update_status(
            tenant_id, session_id, str(status), metadata, actor_id=tenant_id
        )
        await self._emit_room(
            tenant_room(tenant_id),
            "session_updated",
            {"session": session.to_dict(), "updatedBy": tenant_id, "timestamp": _now()},
        )

    async def _on_send_channel_reply(self, conn: Connection, data: dict[str, Any]) -> None:
        tenant_id = conn.tenant_id
        if self._pipeline is None:
            raise ValueError("channel replies are not available")
        conversation_id = _int(data, "conversationId", "conversation_id")
        text = str(data.get("message") or data.get("text") or "").strip()
        if conversation_id is None or not text:
            raise ValueError("conversationId and message are required")
        message = await self._pipeline.send_operator_reply(
            tenant_id, conversation_id, text, actor_id=tenant_id
        )
        await conn.send(
            "channel_reply_sent",
            {"message": message.to_event(), "status": message.status},
        )

    # -- outbound broadcast API ----------------------------------------------------

    async def emit_new_message(
        self, tenant_id: int, message: Message, also: Optional[Connection] = None
    ) -> None:
        await self._emit_room(
            conversation_room(tenant_id, message.conversation_id),
            "new_message",
            message.to_event(),
            also=also,
        )
        await self._emit_room(
            tenant_room(tenant_id),
            "conversation_updated",
            {
                "conversation_id": message.conversation_id,
                "last_message": message.content,
                "sender": message.sender,
                "timestamp": message.created_at,
            },
        )

    async def emit_channel_message(
        self, tenant_id: int, conversation: Conversation, message: Message
    ) -> None:
        """Broadcast a freshly received channel message to the tenant's dashboards."""
        await self.emit_new_message(tenant_id, message)
        await self._emit_room(
            tenant_room(tenant_id),
            "channel_message",
            {
                "channel": conversation.channel_type,
                "external_id": conversation.external_id,
                "conversation_id": conversation.id,
                "message": message.to_event(),
            },
        )

    async def emit_new_conversation(self, tenant_id: int, conversation: Conversation) -> None:
        await self._emit_room(tenant_room(tenant_id), "new_conversation", conversation.to_dict())

    async def emit_notification(self, tenant_id: int, notification: dict[str, Any]) -> None:
        await self._emit_room(
            tenant_room(tenant_id), "notification", {**notification, "timestamp": _now()}
        )

    async def emit_agent_update(self, tenant_id: int, agent: dict[str, Any]) -> None:
        await self._emit_room(tenant_room(tenant_id), "agent_updated", agent)

    async def emit_metrics_update(self, tenant_id: int, metrics: dict[str, Any]) -> None:
        await self._emit_room(tenant_room(tenant_id), "metrics_updated", metrics)

    async def broadcast_system_notification(self, notification: dict[str, Any]) -> None:
        """Send to every authenticated socket of every tenant."""
        payload = {**notification, "timestamp": _now()}
        for conn in list(self._connections.values()):
            if conn.is_authenticated:
                await self._safe_send(conn, "system_notification", payload)

    async def push_metrics(self) -> int:
        """Send a metrics snapshot to every connected non-admin tenant. Returns tenants served."""
        served = 0
        for tenant_id in self.connected_tenants():
            if all(c.role == "admin" for c in self.connections_for(tenant_id)):
                continue
            try:
                metrics = await self._conversations.real_time_metrics(tenant_id)
            except Exception as e:
                logger.warning("metrics_push_failed", tenant_id=tenant_id, error=str(e))
                continue
            await self.emit_metrics_update(tenant_id, metrics)
            served += 1
        return served

    # -- internals ----------------------------------------------------------------------

    def _conversation_lock(self, tenant_id: int, conversation_id: int) -> asyncio.Lock:
        key = (tenant_id, conversation_id)
        lock = self._conversation_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._conversation_locks[key] = lock
        return lock

    def _join(self, conn: Connection, room: str) -> None:
        self._rooms.setdefault(room, set()).add(conn.id)
        conn.rooms.add(room)

    def _leave(self, conn: Connection, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn.id)
            if not members:
                del self._rooms[room]
        conn.rooms.discard(room)

    def _unbind(self, conn: Connection) -> None:
        for room in list(conn.rooms):
            self._leave(conn, room)
        if conn.tenant_id is not None:
            ids = self._tenant_connections.get(conn.tenant_id)
            if ids is not None:
                ids.discard(conn.id)
                if not ids:
                    del self._tenant_connections[conn.tenant_id]

    async def _emit_room(
        self,
        room: str,
        event: str,
        data: Any,
        exclude: Optional[Connection] = None,
        also: Optional[Connection] = None,
    ) -> None:
        ids = set(self._rooms.get(room, ()))
        if also is not None and also.id in self._connections:
            ids.add(also.id)
        if exclude is not None:
            ids.discard(exclude.id)
        for conn_id in sorted(ids):
            conn = self._connections.get(conn_id)
            if conn is not None:
                await self._safe_send(conn, event, data)

    async def _safe_send(self, conn: Connection, event: str, data: Any) -> None:
        try:
            await conn.send(event, data)
        except Exception as e:
            # At-most-once: a dead socket misses the event and is dropped.
            logger.debug("socket_send_failed", connection_id=conn.id, event_name=event, error=str(e))
            self.disconnect(conn)
