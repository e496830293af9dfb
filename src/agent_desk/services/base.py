"""Lifecycle interface shared by everything the app starts and stops."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Service(ABC):
    """A component with a start/stop lifecycle owned by :class:`AgentDeskApp`.

    Failures in one service's start or stop are logged by the app and never
    prevent the others from running.
    """

    @property
    @abstractmethod
    def service_name(self) -> str:
        ...

    async def start(self) -> None:
        """Acquire resources. Stateless services keep the default."""

    async def stop(self) -> None:
        """Release resources."""

    async def health_check(self) -> bool:
        return True
