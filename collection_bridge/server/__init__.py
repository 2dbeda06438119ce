"""
collection-bridge server.

    protocol     — wire format, action parsing, reply encoder
    emitter      — in-process bus between the socket and the handlers
    connections  — live client tracking
    handlers     — ItemsHandler, HeartbeatHandler
    app          — BridgeServer and the ``main`` entry point
"""
