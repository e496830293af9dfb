"""Convert stored conversation history to Anthropic API message format."""

from __future__ import annotations

from typing import Any

from agent_desk.core.types import SenderRole
from agent_desk.storage.models import Message

_ROLE_MAP = {
    SenderRole.CUSTOMER: "user",
    SenderRole.USER: "user",
    SenderRole.AGENT: "assistant",
    SenderRole.OPERATOR: "assistant",
}


def build_messages(history: list[Message]) -> list[dict[str, Any]]:
    """Convert stored messages (oldest first) into API messages.

    System messages are skipped, consecutive messages of the same role are
    merged, and leading assistant turns are dropped since the API requires
    the first message to come from the user.
    """
    messages: list[dict[str, Any]] = []
    for record in history:
        role = _ROLE_MAP.get(record.sender)
        if role is None or not record.content:
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + record.content
        else:
            messages.append({"role": role, "content": record.content})

    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    return messages
