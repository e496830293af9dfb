"""Shared fixtures: a temp-dir application with fake AI and channel backends."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import pytest

from agent_desk.ai.client import AIClient, AIResponse
from agent_desk.app import AgentDeskApp
from agent_desk.channels.base import ChannelAdapter
from agent_desk.channels.models import DeliveryResult, NormalizedMessage
from agent_desk.config import AppConfig, AuthConfig, DeliveryConfig, StorageConfig
from agent_desk.core.types import ChannelType
from agent_desk.errors import DeliveryError
from agent_desk.realtime.connection import Connection


class FakeAIClient(AIClient):
    def __init__(self, text: str = "Hi! How can I help?", error: Optional[Exception] = None,
                 delay: float = 0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def chat(self, system, messages, model="", max_tokens=1000, temperature=0.7):
        self.calls.append({"system": system, "messages": messages, "model": model})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return AIResponse(text=self.text, input_tokens=10, output_tokens=5)


class FakeAdapter(ChannelAdapter):
    """Records sends; recipients listed in ``failing`` get a DeliveryError."""

    def __init__(self, channel: ChannelType = ChannelType.WHATSAPP,
                 tenant_id: Optional[int] = None):
        super().__init__(config=None, delivery=DeliveryConfig(retry_attempts=1))
        self._channel = channel
        self._tenant_id = tenant_id
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.failing: set[str] = set()

    @property
    def channel_type(self) -> ChannelType:
        return self._channel

    @property
    def tenant_id(self) -> Optional[int]:
        return self._tenant_id

    def verify_inbound_request(self, headers: Mapping[str, str], body: bytes) -> bool:
        return True

    def normalize_inbound(self, payload: dict[str, Any]) -> list[NormalizedMessage]:
        return []

    async def _send(self, recipient: str, content: str, options: dict[str, Any]) -> DeliveryResult:
        if recipient in self.failing:
            raise DeliveryError("provider rejected", channel=str(self._channel), status_code=400)
        self.sent.append((recipient, content, options))
        return DeliveryResult(success=True, provider_message_id=f"out-{len(self.sent)}")


class FakeConnection(Connection):
    def __init__(self, connection_id: Optional[str] = None):
        super().__init__(connection_id)
        self.frames: list[dict[str, Any]] = []

    async def _send_frame(self, frame: dict[str, Any]) -> None:
        self.frames.append(frame)

    def events(self, name: Optional[str] = None) -> list[dict[str, Any]]:
        return [f for f in self.frames if name is None or f["event"] == name]

    def last(self) -> dict[str, Any]:
        return self.frames[-1]


def inbound(
    sender: str = "+15550001",
    text: str = "Hello",
    native_id: Optional[str] = "wamid.1",
    channel: ChannelType = ChannelType.WHATSAPP,
) -> NormalizedMessage:
    return NormalizedMessage(
        channel_type=channel,
        external_sender_id=sender,
        text=text,
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        native_message_id=native_id,
        contact_name="Jane",
    )


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(
        data_dir=str(tmp_path),
        storage=StorageConfig(
            main_db_path=str(tmp_path / "main.db"),
            tenant_db_dir=str(tmp_path / "tenants"),
        ),
        auth=AuthConfig(secret_key="test-secret"),
        delivery=DeliveryConfig(retry_attempts=1, retry_min_wait=0, retry_max_wait=0),
    )


@pytest.fixture
def ai_client() -> FakeAIClient:
    return FakeAIClient()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
async def desk(config, ai_client, adapter):
    app = AgentDeskApp(config, ai_client=ai_client, adapters=[adapter])
    await app.initialize_storage()
    yield app
    await app.router.close()
    await app.main_db.close()


@pytest.fixture
async def tenant(desk):
    return await desk.tenants.create("Acme", "ops@acme.test")


@pytest.fixture
async def agent(desk, tenant):
    return await desk.agents.create(
        tenant.id, "Support", model="claude-test", system_prompt="Be helpful."
    )
