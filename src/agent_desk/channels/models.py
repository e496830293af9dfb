"""Unified message models for all inbound channels."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from agent_desk.core.types import ChannelType


@dataclass(frozen=True, slots=True)
class NormalizedMessage:
    """Channel-independent shape of one inbound customer message."""

    channel_type: ChannelType
    external_sender_id: str
    text: str
    timestamp: datetime
    native_message_id: Optional[str] = None
    contact_name: Optional[str] = None
    message_type: str = "text"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    success: bool
    provider_message_id: Optional[str] = None
