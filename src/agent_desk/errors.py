"""Error taxonomy shared by the routing, channel, realtime and web layers."""

from __future__ import annotations

from typing import Any, Optional


class AgentDeskError(Exception):
    """Base class for all domain errors."""

    http_status = 500

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.__class__.__name__)
        self.context = context


class TenantNotFound(AgentDeskError):
    http_status = 404


class ProvisioningError(AgentDeskError):
    """Creating a tenant's isolated database failed; the tenant row was rolled back."""

    http_status = 500


class VerificationFailed(AgentDeskError):
    """Inbound webhook token or signature did not match configuration."""

    http_status = 403


class DeliveryError(AgentDeskError):
    """An outbound channel send failed."""

    http_status = 502

    def __init__(
        self,
        message: str,
        channel: str,
        detail: Any = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, channel=channel)
        self.channel = channel
        self.detail = detail
        self.status_code = status_code


class DuplicateMessage(AgentDeskError):
    """A message with the same native id is already stored for the conversation."""

    http_status = 200

    def __init__(self, conversation_id: int, native_message_id: str):
        super().__init__(
            f"message {native_message_id} already stored",
            conversation_id=conversation_id,
        )
        self.conversation_id = conversation_id
        self.native_message_id = native_message_id


class GenerationError(AgentDeskError):
    """The AI collaborator failed or timed out."""

    http_status = 503


class AuthenticationError(AgentDeskError):
    http_status = 401


class ChannelNotConfigured(AgentDeskError):
    http_status = 404


class ConversationNotFound(AgentDeskError):
    http_status = 404
