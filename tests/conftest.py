"""
Shared fixtures.

Service and integration tests run against the in-memory store, so no
Postgres is needed anywhere in the suite.
"""

from __future__ import annotations

import pytest_asyncio

from collection_bridge.store.memory import (
    get_memory_session,
    get_store,
    patch_for_memory,
    reset_store,
)
from collection_bridge.store.repo import CollectionRepo


async def seed_collections() -> None:
    async with get_memory_session() as session:
        repo = CollectionRepo(session)
        await repo.save("articles")
        await repo.save("people", primary_key="slug")
        await repo.save("private", roles=["editor"])


@pytest_asyncio.fixture
async def memory_store():
    """A fresh in-memory store with three collections:

    articles  — primary key ``id``, public
    people    — primary key ``slug``, public
    private   — primary key ``id``, editors only
    """
    patch_for_memory()
    reset_store()
    await seed_collections()
    yield get_store()
    reset_store()
