"""Tests for AI history building and reply generation."""

import pytest

from agent_desk.ai.conversation import build_messages
from agent_desk.ai.generator import ReplyGenerator
from agent_desk.errors import GenerationError
from agent_desk.storage.models import Agent, Message

from conftest import FakeAIClient


def _msg(sender, content):
    return Message(conversation_id=1, content=content, sender=sender)


def test_build_messages_maps_and_merges_roles():
    history = [
        _msg("agent", "Welcome!"),
        _msg("customer", "Hi"),
        _msg("customer", "Anyone there?"),
        _msg("system", "session reopened"),
        _msg("operator", "Yes, hello"),
        _msg("user", "test from dashboard"),
    ]
    assert build_messages(history) == [
        {"role": "user", "content": "Hi\n\nAnyone there?"},
        {"role": "assistant", "content": "Yes, hello"},
        {"role": "user", "content": "test from dashboard"},
    ]


async def test_generate_passes_agent_settings():
    client = FakeAIClient(text="  Sure thing  ")
    agent = Agent(id=1, name="Support", model="claude-x", system_prompt="Be brief",
                  temperature=0.2, max_tokens=50)
    reply = await ReplyGenerator(client).generate(agent, [_msg("customer", "Hi")])

    assert reply.text == "Sure thing"
    assert reply.output_tokens == 5
    assert client.calls[0]["model"] == "claude-x"
    assert client.calls[0]["system"] == "Be brief"


async def test_generate_rejects_empty_reply():
    agent = Agent(id=1, name="Support", model="m")
    with pytest.raises(GenerationError):
        await ReplyGenerator(FakeAIClient(text="   ")).generate(agent, [_msg("customer", "Hi")])


async def test_generate_needs_a_user_turn():
    agent = Agent(id=1, name="Support", model="m")
    with pytest.raises(GenerationError):
        await ReplyGenerator(FakeAIClient()).generate(agent, [_msg("agent", "Hello?")])


async def test_backend_errors_become_generation_errors():
    agent = Agent(id=1, name="Support", model="m")
    client = FakeAIClient(error=ConnectionError("reset"))
    with pytest.raises(GenerationError, match="reset"):
        await ReplyGenerator(client).generate(agent, [_msg("customer", "Hi")])
