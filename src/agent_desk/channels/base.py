"""Abstract channel adapter interface."""

from __future__ import annotations

import hashlib
import hmac
from abc import abstractmethod
from typing import Any, Mapping, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agent_desk.channels.models import DeliveryResult, NormalizedMessage
from agent_desk.config import DeliveryConfig
from agent_desk.core.types import ChannelType
from agent_desk.errors import DeliveryError, VerificationFailed
from agent_desk.log import get_logger
from agent_desk.services.base import Service

logger = get_logger(__name__)


class TransientDeliveryError(DeliveryError):
    """A delivery failure worth retrying (network trouble, 429, 5xx)."""


class ChannelAdapter(Service):
    """Base class for all channel adapters.

    To add a new channel, subclass this and implement all abstract methods.
    """

    # Longest text the provider accepts in one message; None sends content whole.
    max_message_length: Optional[int] = None

    def __init__(self, config: Any, delivery: Optional[DeliveryConfig] = None):
        self.config = config
        self._delivery = delivery or DeliveryConfig()

    @property
    @abstractmethod
    def channel_type(self) -> ChannelType:
        ...

    @property
    def service_name(self) -> str:
        return f"channel:{self.channel_type}"

    @property
    def tenant_id(self) -> Optional[int]:
        """Tenant that owns this channel account, if configured."""
        return getattr(self.config, "tenant_id", None)

    def verify_challenge(self, mode: str, token: str, challenge: str) -> str:
        """Answer a subscription handshake by echoing *challenge*."""
        raise VerificationFailed(f"{self.channel_type} has no subscription handshake")

    @abstractmethod
    def verify_inbound_request(self, headers: Mapping[str, str], body: bytes) -> bool:
        """Check the signature or shared secret of an inbound webhook call."""
        ...

    @abstractmethod
    def normalize_inbound(self, payload: dict[str, Any]) -> list[NormalizedMessage]:
        """Map a provider payload to normalized messages.

        Unsupported shapes return an empty list.
        """
        ...

    async def send(
        self, recipient: str, content: str, options: Optional[dict[str, Any]] = None
    ) -> DeliveryResult:
        """Deliver *content* to *recipient*, retrying transient failures with backoff.

        Long content is split into provider-sized chunks and each chunk is
        retried on its own, so a chunk that already went out is never resent.
        The result of the last chunk is returned.
        """
        options = options or {}
        if self.max_message_length:
            chunks = split_message(content, self.max_message_length)
        else:
            chunks = [content]
        for chunk in chunks:
            result = await self._send_with_retry(recipient, chunk, options)
        return result

    async def _send_with_retry(
        self, recipient: str, content: str, options: dict[str, Any]
    ) -> DeliveryResult:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientDeliveryError),
            stop=stop_after_attempt(max(1, self._delivery.retry_attempts)),
            wait=wait_exponential(
                multiplier=self._delivery.retry_min_wait,
                min=self._delivery.retry_min_wait,
                max=self._delivery.retry_max_wait,
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "delivery_retry",
                        channel=str(self.channel_type),
                        attempt=attempt.retry_state.attempt_number,
                    )
                result = await self._send(recipient, content, options)
        return result

    @abstractmethod
    async def _send(
        self, recipient: str, content: str, options: dict[str, Any]
    ) -> DeliveryResult:
        """Send one chunk. Raise :class:`TransientDeliveryError` for retryable failures."""
        ...


def verify_meta_signature(app_secret: Optional[str], body: bytes, header: Optional[str]) -> bool:
    """Validate Meta's ``X-Hub-Signature-256`` header. No secret configured means no check."""
    if not app_secret:
        return True
    if not header or not header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header[len("sha256="):].strip())


def secrets_match(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected:
        return True
    return hmac.compare_digest(expected, (provided or "").strip())


def split_message(text: str, max_length: int = 4000) -> list[str]:
    """Split a message into chunks that fit within platform limits."""
    if len(text) <= max_length:
        return [text]

    chunks = []
    while text:
        if len(text) <= max_length:
            chunks.append(text)
            break
        # Try to split at a newline
        split_pos = text.rfind("\n", 0, max_length)
        if split_pos <= 0:
            split_pos = max_length
        chunks.append(text[:split_pos])
        text = text[split_pos:].lstrip("\n")
    return chunks


def header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup for plain dicts and Starlette headers."""
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value
