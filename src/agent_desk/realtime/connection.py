"""Dashboard socket connections as seen by the broadcast hub."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

from fastapi import WebSocket

from agent_desk.core.types import ConnectionState


class Connection(ABC):
    """One dashboard client. The hub owns all state transitions."""

    def __init__(self, connection_id: Optional[str] = None):
        self.id = connection_id or uuid.uuid4().hex[:12]
        self.state = ConnectionState.CONNECTED
        self.tenant_id: Optional[int] = None
        self.role: Optional[str] = None
        self.rooms: set[str] = set()

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    async def send(self, event: str, data: Any) -> None:
        await self._send_frame({"event": event, "data": data})

    @abstractmethod
    async def _send_frame(self, frame: dict[str, Any]) -> None:
        ...


class WebSocketConnection(Connection):
    def __init__(self, websocket: WebSocket):
        super().__init__()
        self._websocket = websocket

    async def _send_frame(self, frame: dict[str, Any]) -> None:
        await self._websocket.send_json(frame)
