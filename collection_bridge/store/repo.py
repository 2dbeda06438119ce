"""
collection-bridge repository layer.

All database reads and writes go through these classes. Nothing outside
the store package builds SQL.

Each repository wraps an AsyncSession and works inside whatever
transaction the caller opened with store.session.get_session(). The
statements used here are deliberately plain (primary-key get, select
by collection, ORM delete) so the in-memory session in store/memory.py
can stand in for Postgres.
"""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from collection_bridge.store.models import DBCollection, DBItem


def item_key(value: Any) -> str:
    """Storage form of a primary key. ``123`` and ``"123"`` are the same record."""
    return str(value)


# ─────────────────────────────────────────────────────────────
# Collection Repository
# ─────────────────────────────────────────────────────────────

class CollectionRepo:
    """Read and maintain the collection registry."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_all(self) -> list[DBCollection]:
        result = await self.session.execute(
            select(DBCollection).order_by(DBCollection.name)
        )
        return list(result.scalars().all())

    async def get(self, name: str) -> DBCollection | None:
        return await self.session.get(DBCollection, name)

    async def save(
        self,
        name: str,
        primary_key: str = "id",
        roles: Iterable[str] = (),
        note: str | None = None,
    ) -> DBCollection:
        """Insert or update a collection."""
        existing = await self.get(name)
        if existing:
            existing.primary_key = primary_key
            existing.roles       = list(roles)
            existing.note        = note
            return existing

        db_coll = DBCollection(
            name=name,
            primary_key=primary_key,
            roles=list(roles),
            note=note,
        )
        self.session.add(db_coll)
        return db_coll


# ─────────────────────────────────────────────────────────────
# Item Repository
# ─────────────────────────────────────────────────────────────

class ItemRepo:
    """Records of one collection."""

    def __init__(self, session: AsyncSession, collection: str):
        self.session    = session
        self.collection = collection

    async def get(self, key: Any) -> DBItem | None:
        return await self.session.get(DBItem, (self.collection, item_key(key)))

    async def get_many(self, keys: Sequence[Any]) -> list[DBItem]:
        """Rows for ``keys`` in the order given. Missing keys are skipped."""
        rows = []
        for key in keys:
            row = await self.get(key)
            if row is not None:
                rows.append(row)
        return rows

    async def list_all(self) -> list[DBItem]:
        result = await self.session.execute(
            select(DBItem).where(DBItem.collection == self.collection)
        )
        return list(result.scalars().all())

    async def insert(self, key: Any, data: dict) -> DBItem:
        row = DBItem(collection=self.collection, key=item_key(key), data=dict(data))
        self.session.add(row)
        return row

    async def replace_data(self, row: DBItem, data: dict) -> DBItem:
        # Assign a new dict so the JSON column is seen as changed.
        row.data = dict(data)
        return row

    async def delete(self, row: DBItem) -> None:
        await self.session.delete(row)
