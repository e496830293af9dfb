"""Channel session management: agent assignment, closing and idle sweeps."""

from __future__ import annotations

from typing import Any, Optional

from agent_desk.audit.sink import AuditSink
from agent_desk.core.types import SessionStatus
from agent_desk.errors import ConversationNotFound
from agent_desk.log import get_logger
from agent_desk.storage.agent_repo import AgentRepository
from agent_desk.storage.channel_index import ChannelIndex
from agent_desk.storage.conversation_repo import ConversationRepository
from agent_desk.storage.models import ChannelSession
from agent_desk.storage.router import TenantDatabaseRouter

logger = get_logger(__name__)


class SessionService:
    def __init__(
        self,
        router: TenantDatabaseRouter,
        conversations: ConversationRepository,
        agents: AgentRepository,
        index: ChannelIndex,
        audit: AuditSink,
    ):
        self._router = router
        self._conversations = conversations
        self._agents = agents
        self._index = index
        self._audit = audit

    async def assign_agent(
        self,
        tenant_id: int,
        session_id: int,
        agent_id: Optional[int],
        actor_id: Optional[int] = None,
    ) -> ChannelSession:
        """Assign (or transfer, or clear with ``None``) the agent answering a session."""
        if agent_id is not None and await self._agents.get(tenant_id, agent_id) is None:
            raise ValueError(f"agent {agent_id} does not exist")
        previous = await self._conversations.assign_agent(tenant_id, session_id, agent_id)
        action = "session.agent_assigned" if previous is None else "session.agent_transferred"
        await self._audit.record(
            action,
            resource_type="channel_session",
            resource_id=session_id,
            actor_id=actor_id,
            old_values={"agent_id": previous},
            new_values={"agent_id": agent_id},
            context={"tenant_id": tenant_id},
        )
        logger.info(
            "session_agent_assigned",
            tenant_id=tenant_id, session_id=session_id, agent_id=agent_id, previous=previous,
        )
        session = await self._conversations.get_session(tenant_id, session_id)
        if session is None:
            raise ConversationNotFound(f"session {session_id} not found", tenant_id=tenant_id)
        return session

    async def close_session(
        self,
        tenant_id: int,
        session_id: int,
        actor_id: Optional[int] = None,
        reason: str = "closed",
    ) -> ChannelSession:
        """Close a session, archive its conversation and free the contact's index entry."""
        session = await self._conversations.set_session_status(
            tenant_id, session_id, SessionStatus.CLOSED, {"close_reason": reason}
        )
        if session is None:
            raise ConversationNotFound(f"session {session_id} not found", tenant_id=tenant_id)
        await self._index.release(session.external_id, session.channel_type, tenant_id)
        await self._audit.record(
            "session.closed",
            resource_type="channel_session",
            resource_id=session_id,
            actor_id=actor_id,
            new_values={"status": SessionStatus.CLOSED, "reason": reason},
            context={"tenant_id": tenant_id},
        )
        return session

    async def update_status(
        self,
        tenant_id: int,
        session_id: int,
        status: str,
        metadata: Optional[dict[str, Any]] = None,
        actor_id: Optional[int] = None,
    ) -> ChannelSession:
        if status == SessionStatus.CLOSED:
            return await self.close_session(
                tenant_id, session_id, actor_id, reason=(metadata or {}).get("reason", "closed")
            )
        if status != SessionStatus.ACTIVE:
            raise ValueError(f"unknown session status {status!r}")

        session = await self._conversations.get_session(tenant_id, session_id)
        if session is None:
            raise ConversationNotFound(f"session {session_id} not found", tenant_id=tenant_id)
        if session.status != SessionStatus.ACTIVE:
            current = await self._conversations.find_active_session(
                tenant_id, session.external_id, session.channel_type
            )
            if current is not None:
                raise ValueError("contact already has an active session")
            if not await self._index.claim(
                session.external_id, session.channel_type, tenant_id, session.id
            ):
                raise ValueError("contact is bound to another tenant")
        updated = await self._conversations.set_session_status(
            tenant_id, session_id, SessionStatus.ACTIVE, metadata
        )
        if updated is None:
            raise ConversationNotFound(f"session {session_id} not found", tenant_id=tenant_id)
        await self._audit.record(
            "session.status_updated",
            resource_type="channel_session",
            resource_id=session_id,
            actor_id=actor_id,
            old_values={"status": session.status},
            new_values={"status": SessionStatus.ACTIVE},
            context={"tenant_id": tenant_id},
        )
        return updated

    async def sweep_stale(self, idle_minutes: int) -> int:
        """Close every active session idle for longer than *idle_minutes*, across tenants."""
        closed = 0
        for tenant in await self._router.list_tenants(active_only=True):
            for session in await self._conversations.find_stale_sessions(tenant.id, idle_minutes):
                await self.close_session(tenant.id, session.id, reason="inactive")
                closed += 1
        if closed:
            logger.info("stale_sessions_closed", count=closed, idle_minutes=idle_minutes)
        return closed
