"""Telegram channel adapter using python-telegram-bot v21+ in webhook mode."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from telegram import Bot, Update
from telegram.error import NetworkError, RetryAfter, TelegramError

from agent_desk.channels.base import (
    ChannelAdapter,
    TransientDeliveryError,
    header,
    secrets_match,
)
from agent_desk.channels.models import DeliveryResult, NormalizedMessage
from agent_desk.config import DeliveryConfig, TelegramConfig
from agent_desk.core.types import ChannelType
from agent_desk.errors import DeliveryError
from agent_desk.log import get_logger

logger = get_logger(__name__)


class TelegramAdapter(ChannelAdapter):
    """Telegram bot adapter. Updates arrive through the webhook route, not polling."""

    max_message_length = 4000

    def __init__(
        self,
        config: TelegramConfig,
        delivery: Optional[DeliveryConfig] = None,
        bot: Optional[Bot] = None,
    ):
        super().__init__(config, delivery)
        if not config.bot_token and bot is None:
            raise ValueError("Telegram bot token not configured")
        self._bot = bot or Bot(token=config.bot_token)
        self._started = False

    @property
    def channel_type(self) -> ChannelType:
        return ChannelType.TELEGRAM

    async def start(self) -> None:
        await self._bot.initialize()
        self._started = True
        logger.info("telegram_adapter_started", username=self._bot.username)

    async def stop(self) -> None:
        if self._started:
            await self._bot.shutdown()
            self._started = False
            logger.info("telegram_adapter_stopped")

    def verify_inbound_request(self, headers: Mapping[str, str], body: bytes) -> bool:
        return secrets_match(
            self.config.webhook_secret, header(headers, "X-Telegram-Bot-Api-Secret-Token")
        )

    def normalize_inbound(self, payload: dict[str, Any]) -> list[NormalizedMessage]:
        if not isinstance(payload, dict) or "update_id" not in payload:
            return []
        try:
            update = Update.de_json(payload, self._bot)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("telegram_update_unparseable", error=str(e))
            return []
        if update is None:
            return []

        msg = update.message or update.edited_message
        if msg is None:
            return []
        text = msg.text or msg.caption or ""
        message_type = "text"
        if msg.photo:
            message_type = "photo"
            text = text or "[photo]"
        elif msg.document:
            message_type = "document"
            text = text or "[document]"
        if not text:
            return []

        user = msg.from_user
        return [
            NormalizedMessage(
                channel_type=ChannelType.TELEGRAM,
                external_sender_id=str(msg.chat_id),
                text=text,
                # message_id is unique within a chat, and a chat maps to one conversation
                native_message_id=str(msg.message_id),
                timestamp=msg.date or datetime.now(timezone.utc),
                contact_name=user.full_name if user else None,
                message_type=message_type,
                metadata={
                    "update_id": update.update_id,
                    "user_id": user.id if user else None,
                    "edited": update.edited_message is not None,
                },
            )
        ]

    async def _send(
        self, recipient: str, content: str, options: dict[str, Any]
    ) -> DeliveryResult:
        parse_mode = None
        if options.get("parse_mode") == "markdown":
            parse_mode = "MarkdownV2"
        elif options.get("parse_mode") == "html":
            parse_mode = "HTML"

        try:
            chat_id = int(recipient)
        except ValueError as e:
            raise DeliveryError(
                f"invalid telegram chat id {recipient!r}", channel=ChannelType.TELEGRAM
            ) from e
        try:
            sent = await self._bot.send_message(chat_id=chat_id, text=content, parse_mode=parse_mode)
        except (NetworkError, RetryAfter) as e:
            raise TransientDeliveryError(
                f"telegram send failed: {e}", channel=ChannelType.TELEGRAM, detail=str(e)
            ) from e
        except TelegramError as e:
            raise DeliveryError(
                f"telegram rejected message: {e}",
                channel=ChannelType.TELEGRAM,
                detail=str(e),
            ) from e
        return DeliveryResult(success=True, provider_message_id=str(sent.message_id))
