"""
collection-bridge data services.

    from collection_bridge.services import ItemsService, MetaService

Both are built per message with the caller's accountability and the
schema snapshot the handler already fetched.
"""

from collection_bridge.services.items import ItemsService
from collection_bridge.services.meta import MetaService

__all__ = ["ItemsService", "MetaService"]
