"""
collection-bridge message handlers.

Each handler owns one message type. It registers on the bus when built
and unregisters on close(). The server builds them all at startup:

    emitter  = Emitter()
    handlers = [ItemsHandler(emitter), HeartbeatHandler(emitter)]
"""

from collection_bridge.server.handlers.heartbeat import HeartbeatHandler
from collection_bridge.server.handlers.items import ItemsHandler

__all__ = ["ItemsHandler", "HeartbeatHandler"]
