"""Live WebSocket connections, addressed by connection ID."""

import logging
import uuid

from fastapi import WebSocket

from src.realtime.events import Outbound
from src.realtime.protocol import RealtimeProtocol

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self, protocol: RealtimeProtocol) -> None:
        self.protocol = protocol
        self._sockets: dict[str, WebSocket] = {}

    def register(self, websocket: WebSocket) -> str:
        connection_id = uuid.uuid4().hex
        self._sockets[connection_id] = websocket
        return connection_id

    def unregister(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)

    def __len__(self) -> int:
        return len(self._sockets)

    async def deliver(self, outbound: list[Outbound]) -> None:
        """Send each message to every connection it addresses. A failing socket does not stop the others."""
        for message in outbound:
            frame = {"event": str(message.event), "data": message.payload}
            for connection_id in self.protocol.recipients(message):
                websocket = self._sockets.get(connection_id)
                if websocket is None:
                    continue
                try:
                    await websocket.send_json(frame)
                except (RuntimeError, ConnectionError) as e:
                    logger.warning("Could not send %s to %s: %s", message.event, connection_id, e)
