"""
Notification sink for connected panel clients.

Fire-and-forget: a failed push is logged and the socket dropped, the caller
never sees an error.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Receives one notification per chat touched by a unit of work."""

    @abstractmethod
    async def chat_updated(self, phone: str) -> None:
        ...


class ConnectionManager(NotificationSink):
    """
    Tracks WebSocket connections of the chat panel and broadcasts updates.

    Every panel sees every chat, so there is a single broadcast group.
    """

    def __init__(self):
        self.active_connections: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info(f"WebSocket connected: total_connections={len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.discard(websocket)
        logger.info(f"WebSocket disconnected: remaining_connections={len(self.active_connections)}")

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send a message to every connection, dropping the ones that fail."""
        if not self.active_connections:
            logger.debug("No active connections, skipping broadcast")
            return

        failed_connections = []
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning(f"Failed to broadcast to connection: {e}")
                failed_connections.append(connection)

        for failed in failed_connections:
            self.disconnect(failed)

        logger.debug(
            f"Broadcast {message.get('type')}: "
            f"sent={len(self.active_connections)}, failed={len(failed_connections)}"
        )

    async def chat_updated(self, phone: str) -> None:
        await self.broadcast({
            "type": "chat_updated",
            "phone": phone,
            "ts": int(time.time()),
        })

    def get_connection_count(self) -> int:
        return len(self.active_connections)


async def notify_chats(sink: NotificationSink, phones: list[str]) -> None:
    """Notify each phone once; sink failures are logged, never raised."""
    for phone in phones:
        try:
            await sink.chat_updated(phone)
        except Exception as e:
            logger.warning(f"Notification sink failed: phone={phone}, error={e}")
