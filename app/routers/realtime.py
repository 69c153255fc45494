"""
Learner Chat — Realtime WebSocket Endpoint
Clients connect with ?sessionId=<token>&token=<wsToken>. The server only
pushes; inbound frames (text or binary) are read to notice disconnects and
otherwise ignored.
"""

import logging
from typing import Optional

from fastapi import APIRouter, WebSocket

from app.origin import extract_origin
from app.realtime import ConnectionRegistry

logger = logging.getLogger(__name__)
router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def session_socket(
    websocket: WebSocket,
    sessionId: Optional[str] = None,
    token: Optional[str] = None,
):
    registry: ConnectionRegistry = websocket.app.state.registry
    origin = extract_origin(websocket.headers, websocket.client.host if websocket.client else None)

    if not await registry.admit(websocket, sessionId, token, origin):
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        registry.remove(sessionId, websocket)
