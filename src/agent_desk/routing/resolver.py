"""Maps a normalized inbound message to its tenant, channel session and conversation."""

from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass
from typing import Mapping, Optional

from agent_desk.channels.models import NormalizedMessage
from agent_desk.config import RoutingConfig
from agent_desk.core.types import SenderRole
from agent_desk.errors import DuplicateMessage, ProvisioningError, TenantNotFound
from agent_desk.log import get_logger
from agent_desk.storage.channel_index import ChannelIndex
from agent_desk.storage.conversation_repo import ConversationRepository
from agent_desk.storage.models import ChannelSession, Conversation, Message
from agent_desk.storage.router import TenantDatabaseRouter

logger = get_logger(__name__)


@dataclass
class Resolution:
    tenant_id: int
    session: ChannelSession
    conversation: Conversation
    message: Message
    duplicate: bool = False
    new_session: bool = False
    new_conversation: bool = False

    @property
    def session_id(self) -> int:
        return self.session.id

    @property
    def conversation_id(self) -> int:
        return self.conversation.id


class ConversationResolver:
    """Finds or creates tenant, session and conversation, then stores the message.

    Tenant lookup goes through the shared ``channel_index`` first. When the
    index misses, tenant databases are scanned in ascending tenant id order
    (first match wins) and the hit is written back to the index. A contact
    never seen before is bound to the channel's owning tenant, falling back
    to ``routing.default_tenant_id``.

    Work for one ``(external id, channel)`` pair is serialized by a per-key
    lock so concurrent webhook deliveries cannot create two sessions.
    """

    def __init__(
        self,
        router: TenantDatabaseRouter,
        index: ChannelIndex,
        conversations: ConversationRepository,
        routing: Optional[RoutingConfig] = None,
        channel_owners: Optional[Mapping[str, int]] = None,
    ):
        self._router = router
        self._index = index
        self._conversations = conversations
        self._routing = routing or RoutingConfig()
        self._channel_owners = dict(channel_owners or {})
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def resolve(self, message: NormalizedMessage) -> Resolution:
        """Resolve and persist one inbound message.

        Raises :class:`TenantNotFound` when no tenant can own the contact.
        A redelivered native message id yields ``duplicate=True`` and the
        already stored message.
        """
        external_id = message.external_sender_id
        channel = str(message.channel_type)
        lock = self._lock_for((external_id, channel))
        async with lock:
            tenant_id, session, new_session = await self._find_or_create_session(message)
            conversation, new_conversation = await self._find_or_create_conversation(
                tenant_id, session, message
            )
            stored, duplicate = await self._store(tenant_id, conversation, message)
            if not duplicate:
                await self._conversations.touch_session(tenant_id, session.id)
                await self._conversations.touch_conversation(tenant_id, conversation.id)

        return Resolution(
            tenant_id=tenant_id,
            session=session,
            conversation=conversation,
            message=stored,
            duplicate=duplicate,
            new_session=new_session,
            new_conversation=new_conversation,
        )

    async def find_owner(self, external_id: str, channel: str) -> Optional[tuple[int, ChannelSession]]:
        """Locate the active session for a contact across tenants, without creating anything."""
        entry = await self._index.lookup(external_id, channel)
        if entry is not None:
            try:
                session = await self._conversations.find_active_session(
                    entry.tenant_id, external_id, channel
                )
            except (TenantNotFound, ProvisioningError):
                session = None
            if session is not None:
                return entry.tenant_id, session
            # Stale binding: the session was closed or its tenant removed.
            await self._index.release(external_id, channel, entry.tenant_id)

        if not self._routing.fallback_scan:
            return None
        return await self._scan(external_id, channel)

    # -- internals ----------------------------------------------------------------

    async def _scan(self, external_id: str, channel: str) -> Optional[tuple[int, ChannelSession]]:
        for tenant in await self._router.list_tenants(active_only=True):
            try:
                session = await self._conversations.find_active_session(
                    tenant.id, external_id, channel
                )
            except (TenantNotFound, ProvisioningError) as e:
                logger.warning("tenant_scan_skipped", tenant_id=tenant.id, error=str(e))
                continue
            if session is not None:
                await self._index.claim(external_id, channel, tenant.id, session.id)
                logger.info(
                    "channel_index_backfilled",
                    tenant_id=tenant.id, session_id=session.id, channel=channel,
                )
                return tenant.id, session
        return None

    def _target_tenant(self, channel: str) -> Optional[int]:
        owner = self._channel_owners.get(channel)
        if owner is not None:
            return owner
        return self._routing.default_tenant_id

    async def _find_or_create_session(
        self, message: NormalizedMessage
    ) -> tuple[int, ChannelSession, bool]:
        external_id = message.external_sender_id
        channel = str(message.channel_type)

        found = await self.find_owner(external_id, channel)
        if found is not None:
            return found[0], found[1], False

        tenant_id = self._target_tenant(channel)
        if tenant_id is None:
            raise TenantNotFound(
                f"no tenant configured for {channel} contacts", channel=channel
            )
        tenant = await self._router.get_tenant(tenant_id)
        if not tenant.is_active or tenant.is_admin:
            raise TenantNotFound(
                f"tenant {tenant_id} cannot receive {channel} messages", tenant_id=tenant_id
            )

        if not await self._index.claim(external_id, channel, tenant_id):
            # Another process bound the contact between our lookup and claim.
            entry = await self._index.lookup(external_id, channel)
            if entry is not None and entry.tenant_id != tenant_id:
                tenant_id = entry.tenant_id

        session = await self._conversations.find_active_session(tenant_id, external_id, channel)
        if session is not None:
            await self._index.set_session(external_id, channel, tenant_id, session.id)
            return tenant_id, session, False

        session = await self._conversations.create_session(
            tenant_id, external_id, channel, contact_name=message.contact_name
        )
        await self._index.set_session(external_id, channel, tenant_id, session.id)
        return tenant_id, session, True

    async def _find_or_create_conversation(
        self, tenant_id: int, session: ChannelSession, message: NormalizedMessage
    ) -> tuple[Conversation, bool]:
        conversation = await self._conversations.find_active_conversation(tenant_id, session.id)
        if conversation is not None:
            return conversation, False

        email = message.external_sender_id if message.channel_type == "email" else None
        phone = message.external_sender_id if message.channel_type == "whatsapp" else None
        conversation = await self._conversations.create_conversation(
            tenant_id,
            session,
            customer_name=message.contact_name or session.contact_name,
            customer_email=email,
            customer_phone=phone,
        )
        return conversation, True

    async def _store(
        self, tenant_id: int, conversation: Conversation, message: NormalizedMessage
    ) -> tuple[Message, bool]:
        try:
            stored = await self._conversations.add_message(
                tenant_id,
                Message(
                    conversation_id=conversation.id,
                    content=message.text,
                    sender=SenderRole.CUSTOMER,
                    message_type=message.message_type,
                    native_message_id=message.native_message_id,
                    metadata={
                        **message.metadata,
                        "channel_timestamp": message.timestamp.isoformat(),
                    },
                ),
            )
            return stored, False
        except DuplicateMessage:
            existing = await self._conversations.find_by_native_id(
                tenant_id, conversation.id, message.native_message_id or ""
            )
            if existing is None:
                raise
            logger.info(
                "duplicate_message_skipped",
                tenant_id=tenant_id,
                conversation_id=conversation.id,
                native_message_id=message.native_message_id,
            )
            return existing, True
