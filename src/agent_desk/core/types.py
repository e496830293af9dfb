"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class ChannelType(StrEnum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    MESSENGER = "messenger"
    EMAIL = "email"


class SenderRole(StrEnum):
    CUSTOMER = "customer"
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"
    OPERATOR = "operator"


class SessionStatus(StrEnum):
    ACTIVE = "active"
    CLOSED = "closed"


class ConversationStatus(StrEnum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class TenantRole(StrEnum):
    USER = "user"
    ADMIN = "admin"


class Severity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ConnectionState(StrEnum):
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"
