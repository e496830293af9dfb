"""Facebook Messenger (Send API) channel adapter."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import httpx

from agent_desk.channels.base import (
    ChannelAdapter,
    TransientDeliveryError,
    header,
    secrets_match,
    verify_meta_signature,
)
from agent_desk.channels.models import DeliveryResult, NormalizedMessage
from agent_desk.config import DeliveryConfig, MessengerConfig
from agent_desk.core.types import ChannelType
from agent_desk.errors import DeliveryError, VerificationFailed
from agent_desk.log import get_logger

logger = get_logger(__name__)


def _parse_millis(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(timezone.utc)


class MessengerAdapter(ChannelAdapter):
    max_message_length = 2000

    def __init__(
        self,
        config: MessengerConfig,
        delivery: Optional[DeliveryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config, delivery)
        self._client = client
        self._owns_client = client is None

    @property
    def channel_type(self) -> ChannelType:
        return ChannelType.MESSENGER

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=15.0)
            self._owns_client = True
        logger.info("messenger_adapter_started", page_id=self.config.page_id)

    async def stop(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def verify_challenge(self, mode: str, token: str, challenge: str) -> str:
        if mode == "subscribe" and token and secrets_match(self.config.verify_token, token):
            return challenge
        raise VerificationFailed("messenger verify token mismatch")

    def verify_inbound_request(self, headers: Mapping[str, str], body: bytes) -> bool:
        return verify_meta_signature(
            self.config.app_secret, body, header(headers, "X-Hub-Signature-256")
        )

    def normalize_inbound(self, payload: dict[str, Any]) -> list[NormalizedMessage]:
        if not isinstance(payload, dict) or payload.get("object") != "page":
            return []

        messages: list[NormalizedMessage] = []
        for entry in payload.get("entry") or []:
            for event in (entry or {}).get("messaging") or []:
                if not isinstance(event, dict):
                    continue
                message = event.get("message")
                sender = (event.get("sender") or {}).get("id")
                # Echoes are our own outbound messages reflected back.
                if not isinstance(message, dict) or message.get("is_echo") or not sender:
                    continue
                text = message.get("text")
                message_type = "text"
                if not text:
                    attachments = message.get("attachments") or []
                    if not attachments:
                        continue
                    message_type = (attachments[0] or {}).get("type", "attachment")
                    text = f"[{message_type}]"
                messages.append(
                    NormalizedMessage(
                        channel_type=ChannelType.MESSENGER,
                        external_sender_id=str(sender),
                        text=text,
                        native_message_id=message.get("mid"),
                        timestamp=_parse_millis(event.get("timestamp")),
                        message_type=message_type,
                        metadata={"page_id": (event.get("recipient") or {}).get("id")},
                    )
                )
        return messages

    async def _send(
        self, recipient: str, content: str, options: dict[str, Any]
    ) -> DeliveryResult:
        if self._client is None:
            await self.start()

        body = {
            "recipient": {"id": recipient},
            "message": {"text": content},
            "messaging_type": options.get("messaging_type", "RESPONSE"),
        }
        try:
            response = await self._client.post(
                f"{self.config.api_base}/{self.config.page_id}/messages",
                json=body,
                headers={"Authorization": f"Bearer {self.config.page_access_token}"},
            )
        except httpx.TransportError as e:
            raise TransientDeliveryError(
                f"messenger request failed: {e}", channel=ChannelType.MESSENGER
            ) from e
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(
                f"messenger API returned {response.status_code}",
                channel=ChannelType.MESSENGER,
                detail=response.text,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise DeliveryError(
                f"messenger API rejected message ({response.status_code})",
                channel=ChannelType.MESSENGER,
                detail=response.text,
                status_code=response.status_code,
            )
        provider_id = response.json().get("message_id")
        logger.info("messenger_message_sent", recipient=recipient, provider_message_id=provider_id)
        return DeliveryResult(success=True, provider_message_id=provider_id)
