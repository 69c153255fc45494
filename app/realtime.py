"""
Learner Chat — Realtime Channel
Maps a session token to at most one live WebSocket and pushes AI-turn results
to it. Best effort: with no open socket the event is dropped, the database
stays the source of truth.

The registry is created and closed by the app lifespan. All mutation happens
on the event loop, so a plain dict is enough.
"""

import json
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

import jwt
from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from starlette.websockets import WebSocketState

from app.config import JWT_SECRET, JWT_ALGORITHM, CHANNEL_TOKEN_EXPIRY_HOURS

logger = logging.getLogger(__name__)

WELCOME_EVENT = {"type": "system", "text": "Welcome to the chat WebSocket"}


# ─── Channel Credentials ─────────────────────────────────────────────────────

def issue_channel_token(session_token: str, origin: str) -> str:
    """JWT bound to the session token and the address it was issued to."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": session_token,
        "ip": origin,
        "iat": now,
        "exp": now + timedelta(hours=CHANNEL_TOKEN_EXPIRY_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_channel_token(credentials: Optional[str]) -> Optional[dict]:
    if not credentials:
        return None
    try:
        return jwt.decode(credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError as e:
        logger.warning(f"Realtime: rejected credentials: {e}")
        return None


# ─── Registry ────────────────────────────────────────────────────────────────

class ConnectionRegistry:
    def __init__(self):
        self._connections: dict[str, WebSocket] = {}

    async def admit(
        self,
        websocket: WebSocket,
        session_token: Optional[str],
        credentials: Optional[str],
        origin: str,
    ) -> bool:
        """
        Accept and register the socket only if the credentials decode to this
        session token and were issued to this origin. Otherwise close it.
        """
        claims = verify_channel_token(credentials)
        if (
            not session_token
            or claims is None
            or claims.get("sub") != session_token
            or claims.get("ip") != origin
        ):
            logger.info(f"Realtime: refused connection for {session_token!r} from {origin}")
            await websocket.close(code=1008)
            return False

        await websocket.accept()
        # Last writer wins. The superseded socket is left alone.
        self._connections[session_token] = websocket
        logger.info(f"Realtime: connected session {session_token}")
        await websocket.send_text(json.dumps(WELCOME_EVENT))
        return True

    def remove(self, session_token: str, websocket: WebSocket) -> None:
        """Drop the mapping, unless a newer socket already replaced this one."""
        if self._connections.get(session_token) is websocket:
            del self._connections[session_token]
            logger.info(f"Realtime: disconnected session {session_token}")

    def get(self, session_token: str) -> Optional[WebSocket]:
        return self._connections.get(session_token)

    def is_connected(self, session_token: str) -> bool:
        websocket = self._connections.get(session_token)
        return websocket is not None and _is_open(websocket)

    def __len__(self) -> int:
        return len(self._connections)

    async def push(self, session_token: str, event: dict) -> bool:
        """Send one JSON event. Returns False when it was dropped."""
        websocket = self._connections.get(session_token)
        if websocket is None or not _is_open(websocket):
            logger.debug(f"Realtime: no open socket for {session_token}, dropping {event.get('rpc')}")
            return False
        try:
            await websocket.send_text(json.dumps(jsonable_encoder(event)))
        except Exception as e:
            logger.error(f"Realtime: push to {session_token} failed: {e}")
            self.remove(session_token, websocket)
            return False
        return True

    async def close_all(self) -> None:
        """Shutdown hook: close every registered socket."""
        connections = list(self._connections.items())
        self._connections.clear()
        for session_token, websocket in connections:
            if not _is_open(websocket):
                continue
            try:
                await websocket.close(code=1001)
            except Exception as e:
                logger.warning(f"Realtime: close for {session_token} failed: {e}")


def _is_open(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )
