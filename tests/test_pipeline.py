"""Tests for the inbound pipeline: persistence, replies, delivery and alerts."""

import asyncio

import pytest

from agent_desk.core.types import SenderRole
from agent_desk.errors import GenerationError
from agent_desk.storage.models import Message

from conftest import FakeConnection, inbound


async def _assign(desk, tenant_id, sender, agent_id):
    found = await desk.resolver.find_owner(sender, "whatsapp")
    assert found is not None
    await desk.sessions.assign_agent(tenant_id, found[1].id, agent_id)


async def test_message_without_agent_is_stored_only(desk, tenant, adapter):
    """A fresh session has no agent, so nothing is generated or sent."""
    desk.config.routing.default_tenant_id = tenant.id
    outcome = await desk.pipeline.process(inbound())

    assert outcome.ok and outcome.persisted
    assert not outcome.reply_sent
    assert adapter.sent == []


async def test_assigned_agent_replies_through_channel(desk, tenant, agent, adapter, ai_client):
    desk.config.routing.default_tenant_id = tenant.id
    await desk.pipeline.process(inbound(native_id="a"))
    await _assign(desk, tenant.id, "+15550001", agent.id)

    outcome = await desk.pipeline.process(inbound(native_id="b", text="Where is my order?"))
    assert outcome.reply_sent
    assert adapter.sent == [("+15550001", "Hi! How can I help?", {})]
    assert ai_client.calls[-1]["system"] == "Be helpful."

    messages = await desk.conversations.get_messages(tenant.id, outcome.conversation_id)
    assert [m.sender for m in messages] == ["customer", "customer", "agent"]
    assert messages[-1].status == "sent"
    assert messages[-1].metadata["provider_message_id"] == "out-1"


async def test_duplicate_delivery_is_ignored(desk, tenant, adapter):
    desk.config.routing.default_tenant_id = tenant.id
    first = await desk.pipeline.process(inbound(native_id="dup"))
    second = await desk.pipeline.process(inbound(native_id="dup"))

    assert first.persisted
    assert second.duplicate and not second.persisted
    assert second.conversation_id == first.conversation_id


async def test_unroutable_message_raises_alert(desk):
    outcome = await desk.pipeline.process(inbound())
    assert not outcome.ok
    alerts = await desk.audit.list_alerts()
    assert [a.type for a in alerts] == ["unroutable_message"]


async def test_delivery_failure_is_isolated_per_tenant(desk, adapter):
    """A failing send for tenant A neither blocks nor affects tenant B."""
    a = await desk.tenants.create("A", "a@test")
    b = await desk.tenants.create("B", "b@test")
    agent_a = await desk.agents.create(a.id, "A bot", model="m")
    agent_b = await desk.agents.create(b.id, "B bot", model="m")

    desk.config.routing.default_tenant_id = a.id
    await desk.pipeline.process(inbound(sender="+100", native_id="a0"))
    desk.config.routing.default_tenant_id = b.id
    await desk.pipeline.process(inbound(sender="+200", native_id="b0"))
    await _assign(desk, a.id, "+100", agent_a.id)
    await _assign(desk, b.id, "+200", agent_b.id)

    adapter.failing.add("+100")
    out_a, out_b = await desk.pipeline.process_batch([
        inbound(sender="+100", native_id="a1"),
        inbound(sender="+200", native_id="b1"),
    ])

    assert out_a.tenant_id == a.id and not out_a.reply_sent
    assert out_b.tenant_id == b.id and out_b.reply_sent
    assert [r for r, _, _ in adapter.sent] == ["+200"]

    failed = await desk.conversations.get_messages(a.id, out_a.conversation_id)
    assert failed[-1].sender == "agent"
    assert failed[-1].status == "failed"


async def test_three_delivery_failures_raise_one_alert(desk, tenant, agent, adapter):
    desk.config.routing.default_tenant_id = tenant.id
    await desk.pipeline.process(inbound(native_id="m0"))
    await _assign(desk, tenant.id, "+15550001", agent.id)
    adapter.failing.add("+15550001")

    for i in range(1, 4):
        await desk.pipeline.process(inbound(native_id=f"m{i}"))

    alerts = [a for a in await desk.audit.list_alerts() if a.type == "delivery_failure"]
    assert len(alerts) == 1
    assert alerts[0].tenant_id == tenant.id
    assert alerts[0].severity == "error"


async def test_generation_failure_uses_fallback(desk, tenant, agent, adapter, ai_client):
    desk.config.routing.default_tenant_id = tenant.id
    desk.config.ai.fallback_message = "We'll get back to you shortly."
    await desk.pipeline.process(inbound(native_id="a"))
    await _assign(desk, tenant.id, "+15550001", agent.id)
    ai_client.error = RuntimeError("overloaded")

    outcome = await desk.pipeline.process(inbound(native_id="b"))
    assert outcome.reply_sent
    assert adapter.sent[-1][1] == "We'll get back to you shortly."
    alerts = await desk.audit.list_alerts(tenant_id=tenant.id)
    assert [a.type for a in alerts] == ["generation_failure"]


async def test_generation_failure_without_fallback_stays_silent(
    desk, tenant, agent, adapter, ai_client
):
    desk.config.routing.default_tenant_id = tenant.id
    await desk.pipeline.process(inbound(native_id="a"))
    await _assign(desk, tenant.id, "+15550001", agent.id)
    ai_client.error = RuntimeError("overloaded")

    outcome = await desk.pipeline.process(inbound(native_id="b"))
    assert outcome.ok and not outcome.reply_sent
    assert adapter.sent == []
    messages = await desk.conversations.get_messages(tenant.id, outcome.conversation_id)
    assert all(m.sender == "customer" for m in messages)


async def test_reply_storage_failure_raises_alert(desk, tenant, agent, adapter, monkeypatch):
    """Errors after the inbound message is stored still reach the alert list."""
    desk.config.routing.default_tenant_id = tenant.id
    await desk.pipeline.process(inbound(native_id="a"))
    await _assign(desk, tenant.id, "+15550001", agent.id)

    add_message = desk.conversations.add_message

    async def fail_agent_replies(tenant_id, message):
        if message.sender == SenderRole.AGENT:
            raise RuntimeError("disk I/O error")
        return await add_message(tenant_id, message)

    monkeypatch.setattr(desk.conversations, "add_message", fail_agent_replies)
    outcome = await desk.pipeline.process(inbound(native_id="b"))

    assert outcome.persisted and not outcome.ok
    assert outcome.error == "disk I/O error"
    assert adapter.sent == []
    [alert] = await desk.audit.list_alerts(tenant_id=tenant.id)
    assert alert.type == "reply_failure"
    assert alert.severity == "error"
    assert alert.metadata["conversation_id"] == outcome.conversation_id


async def test_generation_timeout(desk, tenant, agent, ai_client):
    """A slow model is cut off by the generator timeout."""
    desk.generator._timeout = 0.05
    ai_client.delay = 1.0
    history = [Message(conversation_id=1, content="hi", sender=SenderRole.CUSTOMER)]
    with pytest.raises(GenerationError, match="timed out"):
        await desk.generator.generate(agent, history)


async def test_inbound_message_is_broadcast(desk, tenant):
    """Dashboards of the owning tenant see the new conversation and message."""
    desk.config.routing.default_tenant_id = tenant.id
    conn = FakeConnection()
    desk.hub.connect(conn)
    await desk.hub.handle(conn, "authenticate", {"token": desk.tokens.issue(tenant.id)})

    await desk.pipeline.process(inbound())
    await asyncio.sleep(0)
    events = [f["event"] for f in conn.frames]
    assert "new_conversation" in events
    assert "channel_message" in events


async def test_operator_reply_is_delivered(desk, tenant, adapter):
    desk.config.routing.default_tenant_id = tenant.id
    outcome = await desk.pipeline.process(inbound())

    message = await desk.pipeline.send_operator_reply(
        tenant.id, outcome.conversation_id, "A human here", actor_id=tenant.id
    )
    assert message.sender == "operator"
    assert message.status == "sent"
    assert adapter.sent == [("+15550001", "A human here", {})]
