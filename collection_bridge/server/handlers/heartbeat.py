"""
collection-bridge heartbeat handler.

Answers ``{"type": "PING"}`` with ``{"type": "pong"}`` so clients can
check the connection at the application level. Everything else on the
bus belongs to somebody else and is ignored.
"""

from __future__ import annotations

from collection_bridge.server.connections import ConnectedClient
from collection_bridge.server.emitter import Emitter
from collection_bridge.server.protocol import Message, MsgType, pong


WEBSOCKET_MESSAGE = "websocket.message"


class HeartbeatHandler:

    message_type = MsgType.PING

    def __init__(self, emitter: Emitter):
        self.emitter   = emitter
        self._listener = emitter.on_action(WEBSOCKET_MESSAGE, self._on_websocket_message)

    def close(self) -> None:
        self.emitter.off_action(WEBSOCKET_MESSAGE, self._listener)

    def _on_websocket_message(self, payload: dict):
        message = payload.get("message")
        if not isinstance(message, dict) or not Message(message).is_type(self.message_type):
            return None
        return self.on_message(payload["client"], Message(message))

    async def on_message(self, client: ConnectedClient, message: Message) -> None:
        await client.send(pong(message.uid).serialize())
