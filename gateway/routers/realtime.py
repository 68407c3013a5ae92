"""
gateway/routers/realtime.py

WebSocket endpoint clients connect to for live alert notifications.
"""

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.websocket("/ws/{user_id}")
async def notifications(websocket: WebSocket, user_id: str) -> None:
    manager = websocket.app.state.connections
    await manager.connect(user_id, websocket)
    try:
        while True:
            # Inbound messages are ignored; reading keeps the socket alive
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(user_id, websocket)
