"""Email channel: JSON inbound webhook (Postmark shape), SMTP outbound."""

from __future__ import annotations

import asyncio
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import make_msgid, parseaddr, parsedate_to_datetime
from typing import Any, Mapping, Optional

from agent_desk.channels.base import (
    ChannelAdapter,
    TransientDeliveryError,
    header,
    secrets_match,
)
from agent_desk.channels.models import DeliveryResult, NormalizedMessage
from agent_desk.config import DeliveryConfig, EmailConfig
from agent_desk.core.types import ChannelType
from agent_desk.errors import DeliveryError
from agent_desk.log import get_logger

logger = get_logger(__name__)


def _parse_date(value: Any) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def reply_subject(subject: str) -> str:
    subject = (subject or "").strip()
    if not subject:
        return "Re: your message"
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}"


class EmailAdapter(ChannelAdapter):
    def __init__(self, config: EmailConfig, delivery: Optional[DeliveryConfig] = None):
        super().__init__(config, delivery)

    @property
    def channel_type(self) -> ChannelType:
        return ChannelType.EMAIL

    def verify_inbound_request(self, headers: Mapping[str, str], body: bytes) -> bool:
        return secrets_match(self.config.inbound_secret, header(headers, "X-Webhook-Secret"))

    def normalize_inbound(self, payload: dict[str, Any]) -> list[NormalizedMessage]:
        if not isinstance(payload, dict):
            return []
        full = payload.get("FromFull") or {}
        name, address = parseaddr(full.get("Email") or payload.get("From") or "")
        if not address or "@" not in address:
            return []
        text = (payload.get("StrippedTextReply") or payload.get("TextBody") or "").strip()
        subject = payload.get("Subject") or ""
        if not text and not subject:
            return []
        return [
            NormalizedMessage(
                channel_type=ChannelType.EMAIL,
                external_sender_id=address.lower(),
                text=text or subject,
                native_message_id=payload.get("MessageID"),
                timestamp=_parse_date(payload.get("Date")),
                contact_name=full.get("Name") or payload.get("FromName") or name or None,
                metadata={"subject": subject},
            )
        ]

    async def _send(
        self, recipient: str, content: str, options: dict[str, Any]
    ) -> DeliveryResult:
        msg = EmailMessage()
        msg["From"] = self.config.from_address
        msg["To"] = recipient
        msg["Subject"] = reply_subject(options.get("subject", ""))
        msg["Message-ID"] = make_msgid()
        if options.get("in_reply_to"):
            msg["In-Reply-To"] = options["in_reply_to"]
            msg["References"] = options["in_reply_to"]
        msg.set_content(content)

        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError, OSError) as e:
            raise TransientDeliveryError(
                f"smtp connection failed: {e}", channel=ChannelType.EMAIL, detail=str(e)
            ) from e
        except smtplib.SMTPException as e:
            raise DeliveryError(
                f"smtp rejected message: {e}", channel=ChannelType.EMAIL, detail=str(e)
            ) from e
        logger.info("email_sent", to=recipient)
        return DeliveryResult(success=True, provider_message_id=msg["Message-ID"])

    def _deliver(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30) as smtp:
            if self.config.use_tls:
                smtp.starttls()
            if self.config.username:
                smtp.login(self.config.username, self.config.password)
            smtp.send_message(msg)
