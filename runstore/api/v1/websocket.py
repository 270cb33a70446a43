"""
WebSocket handler pushing snapshot updates to connected consumers.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from runstore.api.deps import ServiceContainer, get_container
from runstore.core.constants import RunFamily
from runstore.core.exceptions import RunStoreError
from runstore.core.logging import get_logger
from runstore.domain.run import utc_now
from runstore.domain.snapshot import Snapshot
from runstore.repositories.run_repo import parse_family

logger = get_logger(__name__)

router = APIRouter()


class WSMessageType(str, Enum):
    """WebSocket message types."""

    # Client messages
    PING = "ping"
    REFRESH = "refresh"

    # Server messages
    SNAPSHOT = "snapshot"
    STATUS = "status"
    ERROR = "error"
    PONG = "pong"


class WSMessage(BaseModel):
    """WebSocket message format."""

    type: WSMessageType
    channel: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ConnectionManager:
    """
    Manages WebSocket connections, grouped by channel (one per run family).
    """

    def __init__(self) -> None:
        self._connections: dict[str, list[WebSocket]] = {}
        self._metadata: dict[WebSocket, dict[str, Any]] = {}

    async def connect(
        self,
        websocket: WebSocket,
        channel: str,
        metadata: Optional[dict[str, Any]] = None
    ) -> None:
        """Accept and register a new connection."""
        await websocket.accept()

        if channel not in self._connections:
            self._connections[channel] = []

        self._connections[channel].append(websocket)
        self._metadata[websocket] = {
            "channel": channel,
            "connected_at": utc_now(),
            **(metadata or {}),
        }

        logger.info(
            "WebSocket connected",
            channel=channel,
            total_connections=len(self._connections[channel]),
        )

    async def disconnect(self, websocket: WebSocket, channel: str) -> None:
        """Remove a connection."""
        if channel in self._connections:
            if websocket in self._connections[channel]:
                self._connections[channel].remove(websocket)

            if not self._connections[channel]:
                del self._connections[channel]

        if websocket in self._metadata:
            del self._metadata[websocket]

        logger.info("WebSocket disconnected", channel=channel)

    async def send_to(self, websocket: WebSocket, message: WSMessage) -> None:
        """Send a message to one connection."""
        await websocket.send_text(message.model_dump_json())

    async def send_message(self, channel: str, message: WSMessage) -> None:
        """Send a message to all connections of a channel."""
        if channel not in self._connections:
            return

        message_json = message.model_dump_json()

        for websocket in list(self._connections[channel]):
            try:
                await websocket.send_text(message_json)
            except Exception as e:
                logger.warning(
                    "Failed to send WebSocket message",
                    channel=channel,
                    error=str(e),
                )

    def snapshot_listener(self, family: RunFamily) -> Callable[[Snapshot], Any]:
        """Snapshot listener that forwards every change to the family's channel."""

        async def forward(snapshot: Snapshot) -> None:
            await self.send_message(family.value, snapshot_message(snapshot))

        return forward


def snapshot_message(snapshot: Snapshot) -> WSMessage:
    return WSMessage(
        type=WSMessageType.SNAPSHOT,
        channel=snapshot.family.value,
        data=snapshot.to_payload(),
    )


# Global connection manager instance
connection_manager = ConnectionManager()


@router.websocket("/ws/runs/{family}")
async def runs_websocket(
    websocket: WebSocket,
    family: str,
    container: ServiceContainer = Depends(get_container),
) -> None:
    """
    Stream snapshots of a family.

    The current snapshot is sent on connect; every later change is pushed.
    Clients may send ``ping`` and ``refresh`` messages.
    """
    try:
        run_family = parse_family(family)
    except RunStoreError as e:
        await websocket.accept()
        await websocket.send_text(
            WSMessage(type=WSMessageType.ERROR, channel=family, data=e.to_dict()).model_dump_json()
        )
        await websocket.close(code=1008)
        return

    channel = run_family.value
    view = container.views[run_family]
    await connection_manager.connect(websocket, channel)

    try:
        await connection_manager.send_to(websocket, snapshot_message(view.get_snapshot()))

        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
                if not isinstance(message, dict):
                    await connection_manager.send_to(
                        websocket,
                        WSMessage(
                            type=WSMessageType.ERROR,
                            channel=channel,
                            data={"error": "Invalid message: expected a JSON object"},
                        ),
                    )
                    continue
                msg_type = message.get("type", "")

                if msg_type == WSMessageType.PING:
                    await connection_manager.send_to(
                        websocket,
                        WSMessage(type=WSMessageType.PONG, channel=channel),
                    )

                elif msg_type == WSMessageType.REFRESH:
                    snapshot = await view.refresh()
                    await connection_manager.send_to(websocket, snapshot_message(snapshot))

                else:
                    await connection_manager.send_to(
                        websocket,
                        WSMessage(
                            type=WSMessageType.ERROR,
                            channel=channel,
                            data={"error": f"Unknown message type: {msg_type}"},
                        ),
                    )

            except json.JSONDecodeError:
                await connection_manager.send_to(
                    websocket,
                    WSMessage(
                        type=WSMessageType.ERROR,
                        channel=channel,
                        data={"error": "Invalid JSON"},
                    ),
                )

    except WebSocketDisconnect:
        await connection_manager.disconnect(websocket, channel)

    except Exception as e:
        logger.exception("WebSocket error", channel=channel, error=str(e))
        await connection_manager.disconnect(websocket, channel)
