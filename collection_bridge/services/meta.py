"""
collection-bridge meta service.

Aggregate information about a query, returned next to the records of a
query-shaped read:

    {"total_count": 120, "filter_count": 7}

Only the keys named in ``query.meta`` are computed. With no ``meta`` in
the query the answer is None and the reply carries no meta block.
"""

from __future__ import annotations

from collection_bridge.errors import ForbiddenError
from collection_bridge.query import Query, sanitize_query, select_records
from collection_bridge.schema import Accountability, SchemaOverview
from collection_bridge.store.repo import CollectionRepo, ItemRepo
from collection_bridge.store.session import get_session


class MetaService:

    def __init__(
        self,
        accountability: Accountability | None = None,
        schema: SchemaOverview | None = None,
    ):
        self.accountability = accountability
        self.schema         = schema

    async def get_meta_for_query(
        self,
        collection: str,
        query: Query | dict | None,
    ) -> dict | None:
        query = sanitize_query(query)
        if not query.meta:
            return None

        async with get_session() as session:
            if self.schema is not None:
                if self.schema.get(collection) is None:
                    raise ForbiddenError()
            elif await CollectionRepo(session).get(collection) is None:
                raise ForbiddenError()
            rows = await ItemRepo(session, collection).list_all()

        records = [r.data for r in rows]
        meta: dict[str, int] = {}
        for key in query.meta:
            if key == "total_count":
                meta["total_count"] = len(records)
            elif key == "filter_count":
                meta["filter_count"] = len(select_records(records, query))
        return meta
