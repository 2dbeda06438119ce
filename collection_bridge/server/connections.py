"""
collection-bridge connection manager.

Tracks every connected WebSocket client. Handles registration on
connect, cleanup on disconnect, and server-wide status.

Handlers never see a raw socket. They get a ConnectedClient and call
``await client.send(text)``. The manager has no database access and
never calls into handlers.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

import websockets
from websockets.asyncio.server import ServerConnection

from collection_bridge.schema import Accountability

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Connected client state
# ─────────────────────────────────────────────────────────────

@dataclass(eq=False)
class ConnectedClient:
    """Everything the server knows about one live connection.

    session_id     — server-assigned UUID for this connection
    ws             — the live WebSocket connection
    accountability — who is on the other end; drives schema visibility
    """
    session_id:     uuid.UUID
    ws:             ServerConnection
    accountability: Accountability

    @property
    def remote_address(self) -> str:
        try:
            host, port = self.ws.remote_address[:2]
            return f"{host}:{port}"
        except Exception:
            return "unknown"

    async def send(self, text: str) -> bool:
        """Send one text frame. Returns False if the socket is gone."""
        try:
            await self.ws.send(text)
            return True
        except websockets.exceptions.ConnectionClosed as e:
            logger.debug(f"Send failed to session {self.session_id!s:.8}...: {e}")
            return False

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.ws.close(code, reason)


# ─────────────────────────────────────────────────────────────
# Connection Manager
# ─────────────────────────────────────────────────────────────

class ConnectionManager:
    """All live WebSocket connections, keyed by session id.

    Runs on a single event loop; no locks.
    """

    def __init__(self):
        self._clients: dict[uuid.UUID, ConnectedClient] = {}

    def register(
        self,
        ws: ServerConnection,
        accountability: Accountability,
        session_id: uuid.UUID | None = None,
    ) -> ConnectedClient:
        client = ConnectedClient(
            session_id=session_id or uuid.uuid4(),
            ws=ws,
            accountability=accountability,
        )
        self._clients[client.session_id] = client
        logger.info(
            f"Client connected from {client.remote_address} "
            f"— session {client.session_id!s:.8}... role={accountability.role!r}"
        )
        return client

    def unregister(self, session_id: uuid.UUID) -> ConnectedClient | None:
        client = self._clients.pop(session_id, None)
        if client:
            logger.info(
                f"Client disconnected: session {session_id!s:.8}... "
                f"({self.count} still connected)"
            )
        return client

    def all_clients(self) -> list[ConnectedClient]:
        return list(self._clients.values())

    @property
    def count(self) -> int:
        return len(self._clients)

    async def close_all(self, reason: str = "server shutdown") -> None:
        for client in self.all_clients():
            try:
                await client.close(1001, reason)
            except websockets.exceptions.WebSocketException as e:
                logger.debug(f"Close failed for session {client.session_id!s:.8}...: {e}")
