"""WhatsApp Business (Cloud API) channel adapter."""

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
from agent_desk.config import DeliveryConfig, WhatsAppConfig
from agent_desk.core.types import ChannelType
from agent_desk.errors import DeliveryError, VerificationFailed
from agent_desk.log import get_logger

logger = get_logger(__name__)


def _parse_unix(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(timezone.utc)


def _message_text(msg: dict[str, Any]) -> str:
    msg_type = msg.get("type", "text")
    if msg_type == "text":
        return (msg.get("text") or {}).get("body", "")
    if msg_type == "button":
        return (msg.get("button") or {}).get("text", "")
    if msg_type == "interactive":
        interactive = msg.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return reply.get("title", "")
    media = msg.get(msg_type)
    if isinstance(media, dict) and media.get("caption"):
        return media["caption"]
    return f"[{msg_type}]"


class WhatsAppAdapter(ChannelAdapter):
    """Talks to the Graph API ``/{phone_number_id}/messages`` endpoint."""

    max_message_length = 4096

    def __init__(
        self,
        config: WhatsAppConfig,
        delivery: Optional[DeliveryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config, delivery)
        self._client = client
        self._owns_client = client is None

    @property
    def channel_type(self) -> ChannelType:
        return ChannelType.WHATSAPP

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=15.0)
            self._owns_client = True
        logger.info("whatsapp_adapter_started", phone_number_id=self.config.phone_number_id)

    async def stop(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def verify_challenge(self, mode: str, token: str, challenge: str) -> str:
        if mode == "subscribe" and token and secrets_match(self.config.verify_token, token):
            return challenge
        raise VerificationFailed("whatsapp verify token mismatch")

    def verify_inbound_request(self, headers: Mapping[str, str], body: bytes) -> bool:
        return verify_meta_signature(
            self.config.app_secret, body, header(headers, "X-Hub-Signature-256")
        )

    def normalize_inbound(self, payload: dict[str, Any]) -> list[NormalizedMessage]:
        if not isinstance(payload, dict) or payload.get("object") != "whatsapp_business_account":
            return []

        messages: list[NormalizedMessage] = []
        for entry in payload.get("entry") or []:
            for change in (entry or {}).get("changes") or []:
                value = (change or {}).get("value") or {}
                names = {
                    c.get("wa_id"): (c.get("profile") or {}).get("name")
                    for c in value.get("contacts") or []
                    if isinstance(c, dict)
                }
                for msg in value.get("messages") or []:
                    if not isinstance(msg, dict) or not msg.get("from"):
                        continue
                    sender = str(msg["from"])
                    messages.append(
                        NormalizedMessage(
                            channel_type=ChannelType.WHATSAPP,
                            external_sender_id=sender,
                            text=_message_text(msg),
                            native_message_id=msg.get("id"),
                            timestamp=_parse_unix(msg.get("timestamp")),
                            contact_name=names.get(sender),
                            message_type=msg.get("type", "text"),
                            metadata={
                                "phone_number_id": (value.get("metadata") or {}).get(
                                    "phone_number_id"
                                ),
                            },
                        )
                    )
        return messages

    async def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            await self.start()
        return self._client

    async def _send(
        self, recipient: str, content: str, options: dict[str, Any]
    ) -> DeliveryResult:
        to = "".join(ch for ch in recipient if ch.isdigit())
        body = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": bool(options.get("preview_url", False)), "body": content},
        }
        provider_id = await self._post(
            f"{self.config.api_base}/{self.config.phone_number_id}/messages", body
        )
        logger.info("whatsapp_message_sent", to=to, provider_message_id=provider_id)
        return DeliveryResult(success=True, provider_message_id=provider_id)

    async def _post(self, url: str, body: dict[str, Any]) -> Optional[str]:
        client = await self._http()
        try:
            response = await client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {self.config.access_token}"},
            )
        except httpx.TransportError as e:
            raise TransientDeliveryError(
                f"whatsapp request failed: {e}", channel=ChannelType.WHATSAPP
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(
                f"whatsapp API returned {response.status_code}",
                channel=ChannelType.WHATSAPP,
                detail=_error_detail(response),
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise DeliveryError(
                f"whatsapp API rejected message ({response.status_code})",
                channel=ChannelType.WHATSAPP,
                detail=_error_detail(response),
                status_code=response.status_code,
            )
        data = response.json()
        ids = data.get("messages") or [{}]
        return ids[0].get("id")


def _error_detail(response: httpx.Response) -> Any:
    try:
        return response.json().get("error", response.text)
    except ValueError:
        return response.text
