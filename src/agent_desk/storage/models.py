"""Data models for storage layer."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Optional


def _json_field(value: Optional[str]) -> dict:
    if not value:
        return {}
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return {}


@dataclass
class Tenant:
    id: int
    name: str
    email: str
    role: str = "user"
    plan: str = "free"
    is_active: bool = True
    database_name: Optional[str] = None
    database_status: Optional[str] = None
    created_at: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Tenant:
        return cls(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            role=row["role"],
            plan=row["plan"],
            is_active=bool(row["is_active"]),
            database_name=row.get("database_name"),
            database_status=row.get("database_status"),
            created_at=row["created_at"],
        )


@dataclass
class Agent:
    id: int
    name: str
    model: str
    provider: str = "anthropic"
    description: str = ""
    system_prompt: str = ""
    temperature: float = 0.7
    max_tokens: int = 1000
    is_active: bool = True
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Agent:
        return cls(
            id=row["id"],
            name=row["name"],
            model=row["model"],
            provider=row["provider"],
            description=row["description"],
            system_prompt=row["system_prompt"],
            temperature=row["temperature"],
            max_tokens=row["max_tokens"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ChannelSession:
    id: int
    external_id: str
    channel_type: str
    status: str = "active"
    agent_id: Optional[int] = None
    contact_name: Optional[str] = None
    last_activity: str = ""
    metadata: dict = field(default_factory=dict)
    created_at: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ChannelSession:
        return cls(
            id=row["id"],
            external_id=row["external_id"],
            channel_type=row["channel_type"],
            status=row["status"],
            agent_id=row["agent_id"],
            contact_name=row["contact_name"],
            last_activity=row["last_activity"],
            metadata=_json_field(row["metadata_json"]),
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Conversation:
    id: int
    channel_type: str
    status: str = "active"
    session_id: Optional[int] = None
    agent_id: Optional[int] = None
    external_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Conversation:
        return cls(
            id=row["id"],
            channel_type=row["channel_type"],
            status=row["status"],
            session_id=row["session_id"],
            agent_id=row["agent_id"],
            external_id=row["external_id"],
            customer_name=row["customer_name"],
            customer_email=row["customer_email"],
            customer_phone=row["customer_phone"],
            metadata=_json_field(row["metadata_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Message:
    conversation_id: int
    content: str
    sender: str  # "customer" | "user" | "agent" | "system" | "operator"
    message_type: str = "text"
    native_message_id: Optional[str] = None
    status: str = "received"
    response_time: Optional[float] = None
    metadata: dict = field(default_factory=dict)
    created_at: str = ""
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Message:
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            content=row["content"],
            sender=row["sender"],
            message_type=row["message_type"],
            native_message_id=row["native_message_id"],
            status=row["status"],
            response_time=row["response_time"],
            metadata=_json_field(row["metadata_json"]),
            created_at=row["created_at"],
        )

    def to_event(self) -> dict[str, Any]:
        """Payload shape of the ``new_message`` socket event."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "content": self.content,
            "sender": self.sender,
            "message_type": self.message_type,
            "response_time": self.response_time,
            "timestamp": self.created_at,
        }


@dataclass
class Alert:
    id: int
    type: str
    severity: str
    title: str
    message: str = ""
    tenant_id: Optional[int] = None
    metadata: dict = field(default_factory=dict)
    is_resolved: bool = False
    created_at: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Alert:
        return cls(
            id=row["id"],
            type=row["type"],
            severity=row["severity"],
            title=row["title"],
            message=row["message"] or "",
            tenant_id=row["tenant_id"],
            metadata=_json_field(row["metadata_json"]),
            is_resolved=bool(row["is_resolved"]),
            created_at=row["created_at"],
        )


@dataclass
class AuditEntry:
    id: int
    action: str
    resource_type: Optional[str]
    resource_id: Optional[str]
    actor_id: Optional[int]
    old_values: Optional[dict]
    new_values: Optional[dict]
    metadata: dict = field(default_factory=dict)
    created_at: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AuditEntry:
        return cls(
            id=row["id"],
            action=row["action"],
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            actor_id=row["actor_id"],
            old_values=_json_field(row["old_values"]) if row["old_values"] else None,
            new_values=_json_field(row["new_values"]) if row["new_values"] else None,
            metadata=_json_field(row["metadata_json"]),
            created_at=row["created_at"],
        )
