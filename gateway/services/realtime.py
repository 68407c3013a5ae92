"""
gateway/services/realtime.py

Registry of live WebSocket connections keyed by user id.
Used by the notification dispatcher's real-time channel.
"""

import structlog
from fastapi import WebSocket

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Maps user_id -> WebSocket; one live connection per user, the latest wins."""

    def __init__(self) -> None:
        self._connections: dict[str, WebSocket] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[user_id] = websocket
        logger.info("realtime_user_registered", user_id=user_id)
        await websocket.send_json(
            {"type": "system", "message": "Connected to real-time updates."}
        )

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        # A reconnect may already have replaced this socket
        if self._connections.get(user_id) is websocket:
            del self._connections[user_id]
            logger.info("realtime_user_unregistered", user_id=user_id)

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._connections

    async def send(self, user_id: str, data: dict) -> bool:
        """
        Send a JSON notification.

        Returns False if the user has no live connection or the send fails;
        a failing socket is dropped from the registry.
        """
        websocket = self._connections.get(user_id)
        if websocket is None:
            logger.info("realtime_user_not_connected", user_id=user_id)
            return False
        try:
            await websocket.send_json(data)
        except Exception as exc:
            # Half-closed socket the receive loop has not pruned yet
            self.disconnect(user_id, websocket)
            logger.warning("realtime_send_failed", user_id=user_id, error=str(exc))
            return False
        return True
