"""Registry of configured channel adapter instances."""

from __future__ import annotations

from typing import TYPE_CHECKING

from agent_desk.errors import ChannelNotConfigured

if TYPE_CHECKING:
    from agent_desk.channels.base import ChannelAdapter


class ChannelRegistry:
    """Tracks one adapter per channel type."""

    def __init__(self) -> None:
        self._adapters: dict[str, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter) -> None:
        self._adapters[str(adapter.channel_type)] = adapter

    def get(self, channel_type: str) -> ChannelAdapter | None:
        return self._adapters.get(str(channel_type))

    def require(self, channel_type: str) -> ChannelAdapter:
        adapter = self.get(channel_type)
        if adapter is None:
            raise ChannelNotConfigured(f"channel {channel_type!r} is not configured")
        return adapter

    def all(self) -> list[ChannelAdapter]:
        return list(self._adapters.values())

    def types(self) -> list[str]:
        return list(self._adapters.keys())
