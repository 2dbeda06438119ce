"""
collection-bridge client.

    from collection_bridge.client import AsyncClient, ServerError
"""

from collection_bridge.client.async_client import (
    AsyncClient,
    ClientError,
    ConnectionError,
    ServerError,
    TimeoutError,
)

__all__ = [
    "AsyncClient",
    "ClientError", "ServerError", "ConnectionError", "TimeoutError",
]
