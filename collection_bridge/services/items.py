"""
collection-bridge items service.

CRUD on the records of one collection. One instance per message:

    service = ItemsService("articles", accountability=acct, schema=schema)
    key     = await service.create_one({"title": "Hello"})
    record  = await service.read_one(key)

Every method opens its own session, so each call is its own
transaction. Batch methods (create_many, update_many, delete_many, the
*_by_query variants) are all-or-nothing within their call.

Missing records raise ForbiddenError rather than a not-found error: the
caller must not be able to tell "does not exist" from "not yours".
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Sequence

from collection_bridge.errors import (
    ForbiddenError,
    InvalidPayloadError,
    RecordNotUniqueError,
)
from collection_bridge.query import (
    Query,
    paginate,
    project,
    run_query,
    sanitize_query,
    select_records,
    sort_records,
)
from collection_bridge.schema import Accountability, CollectionInfo, SchemaOverview
from collection_bridge.store.repo import CollectionRepo, ItemRepo, item_key
from collection_bridge.store.session import get_session

logger = logging.getLogger(__name__)

PrimaryKey = str | int


def _check_key(key: Any) -> PrimaryKey:
    if isinstance(key, bool) or not isinstance(key, (str, int)):
        raise InvalidPayloadError(f"Primary key must be a string or an integer, got {key!r}.")
    return key


def _check_record(data: Any) -> dict:
    if not isinstance(data, dict):
        raise InvalidPayloadError("Record must be an object.")
    return data


class ItemsService:
    """Create, read, update and delete records of ``collection``."""

    def __init__(
        self,
        collection: str,
        accountability: Accountability | None = None,
        schema: SchemaOverview | None = None,
    ):
        self.collection     = collection
        self.accountability = accountability
        self.schema         = schema

    def __repr__(self) -> str:
        return f"ItemsService(collection={self.collection!r})"

    # ── Internal ──────────────────────────────────────────────

    async def _info(self, session) -> CollectionInfo:
        if self.schema is not None:
            info = self.schema.get(self.collection)
        else:
            row  = await CollectionRepo(session).get(self.collection)
            info = CollectionInfo(row.name, row.primary_key, tuple(row.roles or ())) if row else None
            if info is not None and not info.visible_to(self.accountability):
                info = None
        if info is None:
            raise ForbiddenError()
        return info

    def _with_default_sort(self, query: Query, primary_key: str) -> Query:
        if query.sort:
            return query
        return query.model_copy(update={"sort": [primary_key]})

    async def _matching_rows(self, repo: ItemRepo, query: Query, primary_key: str) -> list:
        """Rows selected by filter/search, ordered, paged only if the query says so."""
        by_key = {}
        for row in await repo.list_all():
            by_key[item_key(row.data.get(primary_key, row.key))] = row
        records  = select_records((r.data for r in by_key.values()), query)
        ordered  = sort_records(records, self._with_default_sort(query, primary_key).sort)
        selected = paginate(ordered, query, default_limit=None)
        return [by_key[item_key(r[primary_key])] for r in selected]

    async def _insert(self, repo: ItemRepo, primary_key: str, data: Any, seen: set) -> PrimaryKey:
        record = dict(_check_record(data))
        key = record.get(primary_key)
        if key is None:
            key = str(uuid.uuid4())
            record[primary_key] = key
        _check_key(key)
        if item_key(key) in seen or await repo.get(key) is not None:
            raise RecordNotUniqueError(self.collection, key)
        seen.add(item_key(key))
        await repo.insert(key, record)
        return key

    async def _update(self, repo: ItemRepo, primary_key: str, key: Any, data: dict) -> PrimaryKey:
        if primary_key in data and item_key(data[primary_key]) != item_key(key):
            raise InvalidPayloadError("The primary key of a record can't be changed.")
        row = await repo.get(key)
        if row is None:
            raise ForbiddenError()
        await repo.replace_data(row, {**row.data, **data})
        return row.data.get(primary_key, key)

    # ── Create ────────────────────────────────────────────────

    async def create_one(self, data: dict) -> PrimaryKey:
        """Insert one record. Returns its primary key (generated if absent)."""
        async with get_session() as session:
            info = await self._info(session)
            key  = await self._insert(ItemRepo(session, self.collection), info.primary_key, data, set())
        logger.debug(f"{self.collection}: created {key!r}")
        return key

    async def create_many(self, data: Sequence[dict]) -> list[PrimaryKey]:
        """Insert records in order. Returns their keys in the same order."""
        if not isinstance(data, (list, tuple)):
            raise InvalidPayloadError("Expected a list of records.")
        async with get_session() as session:
            info = await self._info(session)
            repo = ItemRepo(session, self.collection)
            seen: set[str] = set()
            keys = [await self._insert(repo, info.primary_key, d, seen) for d in data]
        logger.debug(f"{self.collection}: created {len(keys)} record(s)")
        return keys

    # ── Read ──────────────────────────────────────────────────

    async def read_one(self, key: PrimaryKey, query: Query | dict | None = None) -> dict:
        query = sanitize_query(query)
        async with get_session() as session:
            await self._info(session)
            row = await ItemRepo(session, self.collection).get(_check_key(key))
        if row is None:
            raise ForbiddenError()
        return project(row.data, query.fields)

    async def read_many(
        self,
        keys: Sequence[PrimaryKey],
        query: Query | dict | None = None,
    ) -> list[dict]:
        """Records for ``keys`` in the order given. Unknown keys are skipped."""
        query = sanitize_query(query)
        async with get_session() as session:
            await self._info(session)
            rows = await ItemRepo(session, self.collection).get_many(
                [_check_key(k) for k in keys]
            )
        records = select_records((r.data for r in rows), query)
        return [project(r, query.fields) for r in records]

    async def read_by_query(self, query: Query | dict | None = None) -> list[dict]:
        query = sanitize_query(query)
        async with get_session() as session:
            info = await self._info(session)
            rows = await ItemRepo(session, self.collection).list_all()
        return run_query(
            (r.data for r in rows),
            self._with_default_sort(query, info.primary_key),
        )

    # ── Update ────────────────────────────────────────────────

    async def update_one(self, key: PrimaryKey, data: dict) -> PrimaryKey:
        """Shallow-merge ``data`` into the record. Returns its key."""
        data = _check_record(data)
        async with get_session() as session:
            info = await self._info(session)
            key  = await self._update(
                ItemRepo(session, self.collection), info.primary_key, _check_key(key), data
            )
        return key

    async def update_many(self, keys: Sequence[PrimaryKey], data: dict) -> list[PrimaryKey]:
        data = _check_record(data)
        async with get_session() as session:
            info = await self._info(session)
            repo = ItemRepo(session, self.collection)
            out  = [
                await self._update(repo, info.primary_key, _check_key(k), data)
                for k in keys
            ]
        return out

    async def update_by_query(self, query: Query | dict | None, data: dict) -> list[PrimaryKey]:
        """Update every record the query selects. Returns the updated keys."""
        query = sanitize_query(query)
        data  = _check_record(data)
        async with get_session() as session:
            info = await self._info(session)
            repo = ItemRepo(session, self.collection)
            rows = await self._matching_rows(repo, query, info.primary_key)
            out  = [
                await self._update(repo, info.primary_key, row.data[info.primary_key], data)
                for row in rows
            ]
        return out

    # ── Delete ────────────────────────────────────────────────

    async def delete_one(self, key: PrimaryKey) -> PrimaryKey:
        async with get_session() as session:
            await self._info(session)
            repo = ItemRepo(session, self.collection)
            row  = await repo.get(_check_key(key))
            if row is None:
                raise ForbiddenError()
            await repo.delete(row)
        logger.debug(f"{self.collection}: deleted {key!r}")
        return key

    async def delete_many(self, keys: Sequence[PrimaryKey]) -> list[PrimaryKey]:
        """Delete every key or none of them. Returns ``keys`` as given."""
        async with get_session() as session:
            await self._info(session)
            repo = ItemRepo(session, self.collection)
            deleted: set[str] = set()
            for key in keys:
                if item_key(_check_key(key)) in deleted:
                    continue
                deleted.add(item_key(key))
                row = await repo.get(key)
                if row is None:
                    raise ForbiddenError()
                await repo.delete(row)
        logger.debug(f"{self.collection}: deleted {len(keys)} record(s)")
        return list(keys)

    async def delete_by_query(self, query: Query | dict | None) -> list[PrimaryKey]:
        """Delete every record the query selects. Returns the deleted keys."""
        query = sanitize_query(query)
        async with get_session() as session:
            info = await self._info(session)
            repo = ItemRepo(session, self.collection)
            rows = await self._matching_rows(repo, query, info.primary_key)
            keys = [row.data[info.primary_key] for row in rows]
            for row in rows:
                await repo.delete(row)
        logger.debug(f"{self.collection}: deleted {len(keys)} record(s) by query")
        return keys
