"""Inbound message pipeline: resolve, persist, reply, deliver, broadcast.

Every step for one message is isolated from every other message. Failures
become an :class:`IngestOutcome` with ``error`` set plus a log line and,
where an operator should notice, an alert.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Iterable, Optional

from agent_desk.ai.generator import ReplyGenerator
from agent_desk.audit.sink import AuditSink
from agent_desk.channels.models import NormalizedMessage
from agent_desk.channels.registry import ChannelRegistry
from agent_desk.config import AIConfig
from agent_desk.core.types import ChannelType, SenderRole, Severity
from agent_desk.errors import DeliveryError, GenerationError, TenantNotFound
from agent_desk.log import get_logger, redact
from agent_desk.routing.resolver import ConversationResolver, Resolution
from agent_desk.storage.agent_repo import AgentRepository
from agent_desk.storage.conversation_repo import ConversationRepository
from agent_desk.storage.models import Conversation, Message

if TYPE_CHECKING:
    from agent_desk.realtime.hub import BroadcastHub

logger = get_logger(__name__)


@dataclass
class IngestOutcome:
    """Result of processing one inbound message."""

    channel: str
    external_id: str
    tenant_id: Optional[int] = None
    conversation_id: Optional[int] = None
    session_id: Optional[int] = None
    persisted: bool = False
    duplicate: bool = False
    reply_sent: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class InboundPipeline:
    def __init__(
        self,
        resolver: ConversationResolver,
        conversations: ConversationRepository,
        agents: AgentRepository,
        generator: ReplyGenerator,
        channels: ChannelRegistry,
        audit: AuditSink,
        hub: Optional[BroadcastHub] = None,
        ai_config: Optional[AIConfig] = None,
    ):
        self._resolver = resolver
        self._conversations = conversations
        self._agents = agents
        self._generator = generator
        self._channels = channels
        self._audit = audit
        self._hub = hub
        self._ai_config = ai_config or AIConfig()

    def attach_hub(self, hub: BroadcastHub) -> None:
        self._hub = hub

    async def process_batch(self, messages: Iterable[NormalizedMessage]) -> list[IngestOutcome]:
        """Process messages concurrently; one failure never affects the others."""
        return list(await asyncio.gather(*(self.process(m) for m in messages)))

    async def process(self, message: NormalizedMessage) -> IngestOutcome:
        outcome = IngestOutcome(
            channel=str(message.channel_type), external_id=message.external_sender_id
        )
        try:
            resolution = await self._resolver.resolve(message)
        except TenantNotFound as e:
            outcome.error = str(e)
            logger.warning(
                "unroutable_message",
                channel=outcome.channel,
                external_id=outcome.external_id,
                error=str(e),
            )
            await self._audit.raise_alert(
                type="unroutable_message",
                severity=Severity.WARNING,
                title=f"Inbound {outcome.channel} message has no tenant",
                message=str(e),
                metadata={"channel": outcome.channel, "external_id": outcome.external_id},
            )
            return outcome
        except Exception as e:
            outcome.error = str(e)
            logger.error(
                "ingest_failed",
                channel=outcome.channel,
                error=str(e),
                payload=redact(_message_payload(message)),
            )
            await self._audit.raise_alert(
                type="ingest_failure",
                severity=Severity.ERROR,
                title=f"Failed to store inbound {outcome.channel} message",
                message=str(e),
                metadata={"channel": outcome.channel},
            )
            return outcome

        outcome.tenant_id = resolution.tenant_id
        outcome.conversation_id = resolution.conversation_id
        outcome.session_id = resolution.session_id
        outcome.duplicate = resolution.duplicate
        outcome.persisted = not resolution.duplicate
        if resolution.duplicate:
            return outcome

        logger.info(
            "inbound_message_stored",
            tenant_id=resolution.tenant_id,
            conversation_id=resolution.conversation_id,
            channel=outcome.channel,
        )
        await self._broadcast_inbound(resolution)

        try:
            outcome.reply_sent = await self._reply(resolution, message)
        except Exception as e:
            outcome.error = str(e)
            logger.error(
                "reply_failed",
                tenant_id=resolution.tenant_id,
                conversation_id=resolution.conversation_id,
                error=str(e),
                payload=redact(_message_payload(message)),
            )
            await self._audit.raise_alert(
                type="reply_failure",
                severity=Severity.ERROR,
                title=f"Failed to reply to inbound {outcome.channel} message",
                message=str(e),
                metadata={"channel": outcome.channel, "conversation_id": resolution.conversation_id},
                tenant_id=resolution.tenant_id,
            )
        return outcome

    async def send_operator_reply(
        self,
        tenant_id: int,
        conversation_id: int,
        text: str,
        actor_id: Optional[int] = None,
    ) -> Message:
        """Send an operator-written message through the conversation's channel.

        The message is stored first; its status becomes ``sent`` or ``failed``.
        """
        conversation = await self._conversations.get_conversation(tenant_id, conversation_id)
        stored = await self._conversations.add_message(
            tenant_id,
            Message(
                conversation_id=conversation.id,
                content=text,
                sender=SenderRole.OPERATOR,
                status="pending",
                metadata={"actor_id": actor_id} if actor_id is not None else {},
            ),
        )
        if self._hub is not None:
            await self._hub.emit_new_message(tenant_id, stored)
        await self._deliver(tenant_id, conversation, stored, {})
        await self._conversations.touch_conversation(tenant_id, conversation.id)
        return stored

    # -- internals ------------------------------------------------------------------

    async def _broadcast_inbound(self, resolution: Resolution) -> None:
        if self._hub is None:
            return
        if resolution.new_conversation:
            await self._hub.emit_new_conversation(resolution.tenant_id, resolution.conversation)
        await self._hub.emit_channel_message(
            resolution.tenant_id, resolution.conversation, resolution.message
        )

    async def _reply(self, resolution: Resolution, inbound: NormalizedMessage) -> bool:
        tenant_id = resolution.tenant_id
        session = resolution.session
        if session.agent_id is None:
            return False
        agent = await self._agents.get(tenant_id, session.agent_id)
        if agent is None or not agent.is_active:
            return False

        history = await self._conversations.get_messages(
            tenant_id, resolution.conversation_id, limit=self._ai_config.history_limit
        )
        metadata: dict[str, Any] = {"agent_id": agent.id}
        try:
            reply = await self._generator.generate(agent, history)
            text, response_time = reply.text, reply.response_time
            metadata["output_tokens"] = reply.output_tokens
        except GenerationError as e:
            await self._audit.generation_failed(tenant_id, agent.id, str(e))
            if not self._ai_config.fallback_message:
                return False
            text, response_time = self._ai_config.fallback_message, None
            metadata["fallback"] = True

        stored = await self._conversations.add_message(
            tenant_id,
            Message(
                conversation_id=resolution.conversation_id,
                content=text,
                sender=SenderRole.AGENT,
                status="pending",
                response_time=response_time,
                metadata=metadata,
            ),
        )
        if self._hub is not None:
            await self._hub.emit_new_message(tenant_id, stored)

        options: dict[str, Any] = {}
        if inbound.channel_type == ChannelType.EMAIL:
            options = {
                "subject": inbound.metadata.get("subject", ""),
                "in_reply_to": inbound.native_message_id,
            }
        return await self._deliver(tenant_id, resolution.conversation, stored, options)

    async def _deliver(
        self,
        tenant_id: int,
        conversation: Conversation,
        message: Message,
        options: dict[str, Any],
    ) -> bool:
        """Send a stored outbound message. Never raises on delivery failure."""
        channel = conversation.channel_type
        adapter = self._channels.get(channel)
        if adapter is None or not conversation.external_id:
            logger.warning("delivery_skipped", tenant_id=tenant_id, channel=channel)
            message.status = "failed"
            message.metadata = {**message.metadata, "error": "channel not configured"}
            await self._conversations.update_message_status(
                tenant_id, message.id, message.status, message.metadata
            )
            return False

        try:
            result = await adapter.send(conversation.external_id, message.content, options)
        except DeliveryError as e:
            logger.error(
                "delivery_failed",
                tenant_id=tenant_id,
                channel=channel,
                conversation_id=conversation.id,
                error=str(e),
                status_code=e.status_code,
            )
            message.status = "failed"
            message.metadata = {**message.metadata, "error": str(e)}
            await self._conversations.update_message_status(
                tenant_id, message.id, message.status, message.metadata
            )
            await self._audit.delivery_failed(tenant_id, channel, e.detail or str(e))
            return False

        message.status = "sent"
        message.metadata = {**message.metadata, "provider_message_id": result.provider_message_id}
        await self._conversations.update_message_status(
            tenant_id, message.id, message.status, message.metadata
        )
        return True


def _message_payload(message: NormalizedMessage) -> dict[str, Any]:
    payload = asdict(message)
    payload["timestamp"] = message.timestamp.isoformat()
    return payload
