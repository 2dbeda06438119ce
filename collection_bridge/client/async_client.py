"""
collection-bridge async client.

Design:

  - One WebSocket connection, reconnects automatically with backoff
  - Requests carry a ``uid``; replies echo it, which is how a reply
    finds its waiting request
  - Error replies raise ServerError with the server's code and message

Usage:

    async with AsyncClient.connect("ws://server:9998") as client:
        article = await client.create("articles", {"title": "Hello"})
        await client.update("articles", {"title": "Hi"}, id=article["id"])
        reply = await client.request(items_read("articles", query={"meta": "*"}))
        print(reply["data"], reply.get("meta"))
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import websockets
import websockets.asyncio.client as ws_asyncio
from websockets.protocol import State as WsState

from collection_bridge.errors import ErrorCode
from collection_bridge.server.protocol import (
    Message, Status,
    items_create, items_delete, items_read, items_update, ping,
)

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────────────────────

class ClientError(Exception):
    """Base error for client operations."""


class ServerError(ClientError):
    """The server replied with status "error"."""
    def __init__(self, code: str, message: str):
        self.code    = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class ConnectionError(ClientError):
    """Could not connect or connection was lost."""


class TimeoutError(ClientError):
    """Request timed out waiting for a response."""


# ─────────────────────────────────────────────────────────────
# Async Client
# ─────────────────────────────────────────────────────────────

class AsyncClient:
    """Async WebSocket client for collection-bridge."""

    DEFAULT_TIMEOUT      = 30.0
    RECONNECT_BASE_DELAY = 1.0
    RECONNECT_MAX_DELAY  = 60.0
    RECONNECT_MULTIPLIER = 2.0

    def __init__(
        self,
        server_url: str = "ws://localhost:9998",
        auto_reconnect: bool = True,
        request_timeout: float = DEFAULT_TIMEOUT,
    ):
        self.server_url      = server_url
        self.auto_reconnect  = auto_reconnect
        self.request_timeout = request_timeout

        self._ws = None
        # uid → future resolved with the reply Message
        self._pending: dict[str, asyncio.Future] = {}

        self._connected = asyncio.Event()
        self._stopped   = False
        self._recv_task: asyncio.Task | None = None
        self._reconnect_delay = self.RECONNECT_BASE_DELAY

    # ── Connection lifecycle ──────────────────────────────────

    @classmethod
    @asynccontextmanager
    async def connect(
        cls,
        server_url: str = "ws://localhost:9998",
        **kwargs,
    ) -> AsyncGenerator["AsyncClient", None]:
        client = cls(server_url, **kwargs)
        await client.start()
        try:
            yield client
        finally:
            await client.stop()

    async def start(self) -> None:
        await self._connect()
        self._recv_task = asyncio.create_task(self._receive_loop(), name="bridge-client-recv")

    async def stop(self) -> None:
        self._stopped = True

        if self._ws is not None and self._ws.state == WsState.OPEN:
            await self._ws.close()

        if self._recv_task and not self._recv_task.done():
            self._recv_task.cancel()
            try:
                await self._recv_task
            except asyncio.CancelledError:
                pass

        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionError("Client stopped"))
        self._pending.clear()
        self._connected.clear()

    async def wait_until_connected(self, timeout: float = 15.0) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout=timeout)

    @property
    def is_connected(self) -> bool:
        return (
            self._ws is not None
            and self._ws.state == WsState.OPEN
            and self._connected.is_set()
        )

    # ── Request/response ──────────────────────────────────────

    async def request(self, msg: Message, timeout: float | None = None) -> Message:
        """Send ``msg`` and return the reply envelope.

        Raises ServerError on an error reply, TimeoutError when nothing
        comes back in time.
        """
        if not self.is_connected:
            await self.wait_until_connected()
        if not msg.uid:
            raise ClientError("Message has no uid — use the protocol constructors")

        future = asyncio.get_running_loop().create_future()
        self._pending[msg.uid] = future
        wait = timeout or self.request_timeout
        try:
            await self._ws.send(msg.serialize())
            reply = await asyncio.wait_for(future, timeout=wait)
        except asyncio.TimeoutError:
            raise TimeoutError(f"No reply to {msg!r} after {wait}s")
        finally:
            self._pending.pop(msg.uid, None)

        if reply.get("status") == Status.ERROR:
            err = reply.get("error") or {}
            raise ServerError(
                err.get("code", ErrorCode.INTERNAL),
                err.get("message", "Unknown error"),
            )
        return reply

    async def ping(self) -> None:
        await self.request(ping())

    async def create(self, collection: str, data: dict | list) -> Any:
        return (await self.request(items_create(collection, data)))["data"]

    async def read(self, collection: str, **kwargs) -> Any:
        return (await self.request(items_read(collection, **kwargs)))["data"]

    async def update(self, collection: str, data: dict, **kwargs) -> Any:
        return (await self.request(items_update(collection, data, **kwargs)))["data"]

    async def delete(self, collection: str, **kwargs) -> Any:
        return (await self.request(items_delete(collection, **kwargs)))["data"]

    # ── Internal ──────────────────────────────────────────────

    async def _connect(self) -> None:
        self._connected.clear()
        self._ws = await ws_asyncio.connect(self.server_url)
        self._reconnect_delay = self.RECONNECT_BASE_DELAY
        self._connected.set()
        logger.info(f"Connected to {self.server_url}")

    async def _receive_loop(self) -> None:
        while not self._stopped:
            try:
                raw = await self._ws.recv()
            except websockets.exceptions.ConnectionClosed as e:
                self._connected.clear()
                if self._stopped:
                    break
                logger.warning(f"Connection closed: {e}")
                if self.auto_reconnect:
                    await self._reconnect()
                break

            try:
                msg = Message.parse(raw)
            except ValueError as e:
                logger.warning(f"Failed to parse message: {e} — raw: {raw!r:.100}")
                continue

            future = self._pending.get(msg.uid) if msg.uid else None
            if future is not None and not future.done():
                future.set_result(msg)
            else:
                logger.debug(f"Unsolicited message: {msg!r}")

    async def _reconnect(self) -> None:
        while not self._stopped:
            delay = self._reconnect_delay
            logger.info(f"Reconnecting in {delay:.1f}s...")
            await asyncio.sleep(delay)
            self._reconnect_delay = min(delay * self.RECONNECT_MULTIPLIER, self.RECONNECT_MAX_DELAY)
            try:
                await self._connect()
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"Reconnect failed: {e}")
                continue
            self._recv_task = asyncio.create_task(self._receive_loop(), name="bridge-client-recv")
            logger.info("Reconnected successfully.")
            return
