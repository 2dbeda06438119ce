"""
collection-bridge persistence layer.

The store package owns all database access. Nothing outside it builds SQL.

    from collection_bridge.store.session import get_session, create_tables
    from collection_bridge.store.repo import CollectionRepo, ItemRepo

The server holds one async engine and opens a session per service call.
Clients never touch the store — they talk to the server over the socket.
"""

from collection_bridge.store.repo import CollectionRepo, ItemRepo
from collection_bridge.store.session import (
    create_tables,
    dispose_engine,
    get_async_engine,
    get_db_url,
    get_session,
)

__all__ = [
    "CollectionRepo", "ItemRepo",
    "get_session", "get_async_engine",
    "get_db_url", "create_tables", "dispose_engine",
]
