"""Bounded reply generation for a tenant's agent."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

from agent_desk.ai.client import AIClient
from agent_desk.ai.conversation import build_messages
from agent_desk.errors import GenerationError
from agent_desk.log import get_logger
from agent_desk.storage.models import Agent, Message

logger = get_logger(__name__)


@dataclass
class GeneratedReply:
    text: str
    response_time: float
    input_tokens: int = 0
    output_tokens: int = 0


class ReplyGenerator:
    """Produces an agent reply from conversation history, within a hard timeout."""

    def __init__(self, ai_client: AIClient, timeout: float = 30.0):
        self._ai_client = ai_client
        self._timeout = timeout

    async def generate(self, agent: Agent, history: list[Message]) -> GeneratedReply:
        """Raises :class:`GenerationError` on timeout, backend failure or an empty reply."""
        messages = build_messages(history)
        if not messages:
            raise GenerationError("no customer message to reply to", agent_id=agent.id)

        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._ai_client.chat(
                    system=agent.system_prompt,
                    messages=messages,
                    model=agent.model,
                    max_tokens=agent.max_tokens,
                    temperature=agent.temperature,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning("generation_timeout", agent_id=agent.id, timeout=self._timeout)
            raise GenerationError(
                f"generation timed out after {self._timeout}s", agent_id=agent.id
            ) from e
        except GenerationError:
            raise
        except Exception as e:
            logger.error("generation_failed", agent_id=agent.id, error=str(e))
            raise GenerationError(f"generation failed: {e}", agent_id=agent.id) from e

        elapsed = time.perf_counter() - started
        text = (response.text or "").strip()
        if not text:
            raise GenerationError("model returned an empty reply", agent_id=agent.id)
        logger.info(
            "reply_generated",
            agent_id=agent.id,
            response_time=round(elapsed, 3),
            output_tokens=response.output_tokens,
        )
        return GeneratedReply(
            text=text,
            response_time=elapsed,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
