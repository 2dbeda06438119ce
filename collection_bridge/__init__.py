"""
collection-bridge — CRUD on data collections over a WebSocket.

    python -m collection_bridge.server      # run the server
"""

__version__ = "0.1.0"
