"""
collection-bridge server application.

Entry point: python -m collection_bridge.server

Lifecycle:
  1. Start — ensure tables, seed configured collections, build the
             handlers on the bus, bind the WebSocket port
  2. Run   — one asyncio task per connection; every frame becomes a
             ``websocket.message`` action on the bus
  3. Stop  — unregister handlers, wait for in-flight replies, close the
             listener and every connection, dispose the DB pool

The server never looks at what a message means. Handlers own their
message types and reply on the client themselves.

Configuration via environment variables:

    BRIDGE_DB_URL        PostgreSQL connection URL (async asyncpg)
    BRIDGE_HOST          Bind host (default: 0.0.0.0)
    BRIDGE_PORT          Bind port (default: 9998)
    BRIDGE_LOG_LEVEL     Logging level (default: INFO)
    BRIDGE_PUBLIC_ROLE   Role given to every connection (default: none)
    BRIDGE_COLLECTIONS   Comma-separated collections to create at startup
    BRIDGE_MEMORY        "1" to use the in-memory store instead of Postgres
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from typing import Iterable

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from collection_bridge import __version__
from collection_bridge.errors import ErrorCode
from collection_bridge.schema import Accountability
from collection_bridge.server.connections import ConnectionManager
from collection_bridge.server.emitter import Emitter
from collection_bridge.server.handlers import HeartbeatHandler, ItemsHandler
from collection_bridge.server.protocol import Message, MsgType, error
from collection_bridge.store import session as store_session
from collection_bridge.store.repo import CollectionRepo

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Application
# ─────────────────────────────────────────────────────────────

class BridgeServer:
    """The collection-bridge WebSocket server.

    Holds:
        connections  — ConnectionManager (who is connected)
        emitter      — the bus frames are published on
        handlers     — ItemsHandler, HeartbeatHandler
    """

    VERSION = __version__

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 9998,
        public_role: str | None = None,
        collections: Iterable[str] = (),
        create_schema: bool = True,
    ):
        self.host          = host
        self.port          = port
        self.public_role   = public_role
        self.collections   = list(collections)
        self.create_schema = create_schema
        self.connections   = ConnectionManager()
        self.emitter       = Emitter()
        self.handlers: list = []
        self._server: Server | None = None
        self._shutdown = asyncio.Event()

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        logger.info(f"collection-bridge server v{self.VERSION} starting...")

        if self.create_schema:
            await store_session.create_tables()
            logger.info("Database tables verified.")

        if self.collections:
            await self.seed_collections(self.collections)

        self.handlers = [ItemsHandler(self.emitter), HeartbeatHandler(self.emitter)]

        self._server = await serve(
            self._connection_handler,
            self.host,
            self.port,
            ping_interval=30,
            ping_timeout=10,
            max_size=10 * 1024 * 1024,
        )
        logger.info(f"Listening on ws://{self.host}:{self.port}")

    async def seed_collections(self, names: Iterable[str]) -> None:
        """Make sure each named collection exists (primary key ``id``, public)."""
        async with store_session.get_session() as session:
            repo = CollectionRepo(session)
            for name in names:
                if await repo.get(name) is None:
                    await repo.save(name)
                    logger.info(f"Collection {name!r} created.")

    async def run_forever(self) -> None:
        await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._request_shutdown)

        logger.info("Server ready. Press Ctrl+C to stop.")
        await self._shutdown.wait()
        await self.stop()

    def _request_shutdown(self) -> None:
        logger.info("Shutdown signal received.")
        self._shutdown.set()

    async def stop(self) -> None:
        """Graceful shutdown. Replies already being built still go out;
        frames that arrive after this point are not handled."""
        logger.info("Shutting down...")

        for handler in self.handlers:
            handler.close()
        self.handlers = []

        await self.emitter.drain(timeout=5.0)

        if self._server:
            self._server.close()
            await self._server.wait_closed()

        await self.connections.close_all()
        await store_session.dispose_engine()
        logger.info("Server stopped.")

    # ── Connection handler ────────────────────────────────────

    async def _connection_handler(self, ws: ServerConnection) -> None:
        """One client, connect to disconnect. Runs as its own task."""
        client = self.connections.register(
            ws, Accountability.anonymous(self.public_role)
        )
        self.emitter.emit_action("websocket.connect", {"client": client})
        try:
            await self._message_loop(ws, client)
        except websockets.exceptions.ConnectionClosed:
            pass  # normal disconnect
        except Exception as e:
            logger.exception(f"Unexpected error in connection handler: {e}")
        finally:
            self.connections.unregister(client.session_id)
            self.emitter.emit_action("websocket.close", {"client": client})

    async def _message_loop(self, ws: ServerConnection, client) -> None:
        """Publish every well-formed frame on the bus."""
        async for raw in ws:
            try:
                msg = Message.parse(raw)
            except (ValueError, json.JSONDecodeError) as e:
                err = error(MsgType.ERROR, ErrorCode.INVALID_PAYLOAD, f"Malformed message: {e}")
                await client.send(err.serialize())
                continue

            self.emitter.emit_action("websocket.message", {"client": client, "message": msg})


# ─────────────────────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────────────────────

def main() -> None:
    """Entry point: python -m collection_bridge.server"""
    log_level = os.environ.get("BRIDGE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )

    memory = os.environ.get("BRIDGE_MEMORY", "") == "1"
    if memory:
        from collection_bridge.store.memory import patch_for_memory
        patch_for_memory()
        logger.info("Using the in-memory store.")

    collections = [
        c.strip() for c in os.environ.get("BRIDGE_COLLECTIONS", "").split(",") if c.strip()
    ]

    server = BridgeServer(
        host=os.environ.get("BRIDGE_HOST", "0.0.0.0"),
        port=int(os.environ.get("BRIDGE_PORT", "9998")),
        public_role=os.environ.get("BRIDGE_PUBLIC_ROLE") or None,
        collections=collections,
        create_schema=not memory,
    )

    asyncio.run(server.run_forever())


if __name__ == "__main__":
    main()
