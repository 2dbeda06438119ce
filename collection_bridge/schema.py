"""
collection-bridge schema oracle.

Answers one question for the items handler: which collections exist
and are visible to this caller?

    schema = await get_schema(client.accountability)
    if "articles" not in schema.collections:
        ...  # INVALID_COLLECTION

Collections live in the ``collections`` table. A collection with an
empty ``roles`` list is visible to everyone; otherwise only admins and
callers whose role is listed can see it. The handler never looks inside
a CollectionInfo — presence is the whole contract.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from collection_bridge.store.repo import CollectionRepo
from collection_bridge.store.session import get_session


@dataclass(frozen=True)
class Accountability:
    """Who is asking. Attached to every connected client."""
    user:  str | None = None
    role:  str | None = None
    admin: bool = False

    @classmethod
    def anonymous(cls, role: str | None = None) -> "Accountability":
        return cls(user=None, role=role, admin=False)

    @classmethod
    def system(cls) -> "Accountability":
        return cls(user=None, role=None, admin=True)


@dataclass(frozen=True)
class CollectionInfo:
    collection:  str
    primary_key: str = "id"
    roles:       tuple[str, ...] = ()

    def visible_to(self, accountability: Accountability | None) -> bool:
        if not self.roles:
            return True
        if accountability is None:
            return False
        return accountability.admin or accountability.role in self.roles


@dataclass
class SchemaOverview:
    collections: dict[str, CollectionInfo] = field(default_factory=dict)

    def get(self, collection: str) -> CollectionInfo | None:
        return self.collections.get(collection)


async def get_schema(accountability: Accountability | None = None) -> SchemaOverview:
    """Return the collections visible to ``accountability``.

    A fresh snapshot per call; nothing is cached here.
    """
    async with get_session() as session:
        rows = await CollectionRepo(session).list_all()

    collections = {}
    for row in rows:
        info = CollectionInfo(
            collection=row.name,
            primary_key=row.primary_key,
            roles=tuple(row.roles or ()),
        )
        if info.visible_to(accountability):
            collections[info.collection] = info
    return SchemaOverview(collections=collections)
