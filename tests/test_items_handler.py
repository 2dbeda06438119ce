"""
Tests for the items handler.

The schema oracle and both data services are patched out; the bus is
real. Every test emits a ``websocket.message`` action, drains the bus
and inspects what the handler sent to the (mock) client.

Run with: pytest tests/test_items_handler.py -v
"""

from __future__ import annotations

import json
import logging
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from collection_bridge.errors import ForbiddenError, RecordNotUniqueError
from collection_bridge.query import Query
from collection_bridge.schema import CollectionInfo, SchemaOverview
from collection_bridge.server.emitter import Emitter
from collection_bridge.server.handlers.items import ItemsHandler

HANDLER = "collection_bridge.server.handlers.items"


# ─────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────

def mock_client():
    client = MagicMock()
    client.send           = AsyncMock(return_value=True)
    client.close          = AsyncMock()
    client.accountability = None
    client.session_id     = uuid.uuid4()
    return client


@pytest.fixture
def emitter():
    e = Emitter()
    yield e
    e.off_all()


@pytest.fixture
def handler(emitter):
    h = ItemsHandler(emitter)
    yield h
    h.close()


@pytest.fixture
def get_schema():
    schema = SchemaOverview({"test": CollectionInfo("test")})
    with patch(f"{HANDLER}.get_schema", new=AsyncMock(return_value=schema)) as m:
        yield m


@pytest.fixture
def items_cls():
    with patch(f"{HANDLER}.ItemsService") as cls:
        yield cls


@pytest.fixture
def items(items_cls):
    return items_cls.return_value


@pytest.fixture
def meta_cls():
    with patch(f"{HANDLER}.MetaService") as cls:
        cls.return_value.get_meta_for_query = AsyncMock(return_value=None)
        yield cls


@pytest.fixture
def meta(meta_cls):
    return meta_cls.return_value


async def emit(emitter: Emitter, client, message: dict) -> None:
    emitter.emit_action("websocket.message", {"client": client, "message": message})
    await emitter.drain()


def reply_of(client) -> dict:
    """The single reply the handler sent."""
    assert client.send.await_count == 1
    return json.loads(client.send.await_args.args[0])


# ─────────────────────────────────────────────────────────────
# Filtering and registration
# ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestFiltering:

    async def test_ignores_other_message_types(self, emitter, handler):
        client = mock_client()
        with patch.object(handler, "on_message", new=AsyncMock()) as spy:
            await emit(emitter, client, {"type": "PONG"})
        spy.assert_not_called()
        client.send.assert_not_awaited()
        assert emitter.pending == 0

    async def test_items_messages_reach_on_message(self, emitter, handler):
        client  = mock_client()
        message = {"type": "ITEMS", "collection": "test", "action": "read"}
        with patch.object(handler, "on_message", new=AsyncMock()) as spy:
            await emit(emitter, client, message)
        spy.assert_awaited_once()
        assert spy.await_args.args[0] is client
        assert spy.await_args.args[1] == message

    async def test_non_dict_message_ignored(self, emitter, handler):
        client = mock_client()
        with patch.object(handler, "on_message", new=AsyncMock()) as spy:
            await emit(emitter, client, "ITEMS")
        spy.assert_not_called()

    async def test_close_unregisters(self, emitter):
        h = ItemsHandler(emitter)
        assert len(emitter.listeners("websocket.message")) == 1
        h.close()
        assert emitter.listeners("websocket.message") == []


# ─────────────────────────────────────────────────────────────
# Collection validation
# ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestInvalidCollection:

    async def test_exact_error_envelope(self, emitter, handler, items_cls, meta_cls):
        client = mock_client()
        with patch(f"{HANDLER}.get_schema", new=AsyncMock(return_value=SchemaOverview())):
            await emit(emitter, client, {
                "type": "ITEMS", "collection": "test", "action": "create", "data": {},
            })
        client.send.assert_awaited_once_with(
            '{"type":"items","status":"error","error":{"code":"INVALID_COLLECTION",'
            '"message":"The provided collection does not exists or is not accessible."}}'
        )
        items_cls.assert_not_called()
        meta_cls.assert_not_called()

    async def test_uid_echoed_on_error(self, emitter, handler, items_cls, meta_cls):
        client = mock_client()
        with patch(f"{HANDLER}.get_schema", new=AsyncMock(return_value=SchemaOverview())):
            await emit(emitter, client, {
                "type": "ITEMS", "collection": "nope", "action": "read", "uid": "abc",
            })
        raw = client.send.await_args.args[0]
        assert raw.endswith(',"uid":"abc"}')
        assert json.loads(raw)["error"]["code"] == "INVALID_COLLECTION"

    async def test_checked_before_the_message_shape(self, emitter, handler, items_cls, meta_cls):
        client = mock_client()
        with patch(f"{HANDLER}.get_schema", new=AsyncMock(return_value=SchemaOverview())):
            await emit(emitter, client, {
                "type": "ITEMS", "collection": "ghost", "action": "update", "data": {},
            })
        client.send.assert_awaited_once_with(
            '{"type":"items","status":"error","error":{"code":"INVALID_COLLECTION",'
            '"message":"The provided collection does not exists or is not accessible."}}'
        )
        items_cls.assert_not_called()

    async def test_checked_before_the_query(self, emitter, handler, items_cls, meta_cls):
        client = mock_client()
        with patch(f"{HANDLER}.get_schema", new=AsyncMock(return_value=SchemaOverview())):
            await emit(emitter, client, {
                "type": "ITEMS", "collection": "ghost", "action": "read",
                "query": {"bogus": 1}, "id": 1, "ids": [1],
            })
        assert reply_of(client)["error"]["code"] == "INVALID_COLLECTION"

    async def test_missing_collection_name(self, emitter, handler, get_schema, items_cls, meta_cls):
        client = mock_client()
        await emit(emitter, client, {"type": "ITEMS", "action": "read"})
        assert reply_of(client)["error"]["code"] == "INVALID_PAYLOAD"
        get_schema.assert_not_awaited()

    async def test_schema_asked_with_client_accountability(
        self, emitter, handler, get_schema, items, meta_cls,
    ):
        client = mock_client()
        client.accountability = object()
        items.read_by_query = AsyncMock(return_value=[])
        await emit(emitter, client, {"type": "ITEMS", "collection": "test", "action": "read"})
        get_schema.assert_awaited_once_with(client.accountability)
        assert reply_of(client)["status"] == "ok"


# ─────────────────────────────────────────────────────────────
# Create
# ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestCreate:

    async def test_create_one(self, emitter, handler, get_schema, items, meta_cls):
        items.create_one = AsyncMock(return_value=1)
        items.read_one   = AsyncMock(return_value={"id": 1, "title": "a"})
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "create", "data": {"title": "a"},
        })

        items.create_one.assert_awaited_once_with({"title": "a"})
        assert items.read_one.await_args.args[0] == 1
        client.send.assert_awaited_once_with(
            '{"type":"items","status":"ok","data":{"id":1,"title":"a"}}'
        )

    async def test_create_many(self, emitter, handler, get_schema, items, meta_cls):
        items.create_many = AsyncMock(return_value=[1, 2])
        items.read_many   = AsyncMock(return_value=[{"id": 1}, {"id": 2}])
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "create", "data": [{}, {}],
        })

        items.create_many.assert_awaited_once_with([{}, {}])
        assert items.read_many.await_args.args[0] == [1, 2]
        assert reply_of(client)["data"] == [{"id": 1}, {"id": 2}]

    async def test_read_back_uses_only_fields(self, emitter, handler, get_schema, items, meta_cls):
        items.create_one = AsyncMock(return_value=1)
        items.read_one   = AsyncMock(return_value={"id": 1})
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "create", "data": {},
            "query": {"fields": ["id"], "filter": {"id": {"_eq": 2}}},
        })

        assert items.read_one.await_args.args[1] == Query(fields=["id"])

    async def test_create_failure_skips_read_back(self, emitter, handler, get_schema, items, meta_cls):
        items.create_one = AsyncMock(side_effect=RecordNotUniqueError("test", 1))
        items.read_one   = AsyncMock()
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "create", "data": {"id": 1},
        })

        items.read_one.assert_not_awaited()
        assert reply_of(client)["error"]["code"] == "RECORD_NOT_UNIQUE"

    async def test_read_back_failure_is_an_error(self, emitter, handler, get_schema, items, meta_cls):
        items.create_one = AsyncMock(return_value=1)
        items.read_one   = AsyncMock(side_effect=ForbiddenError())
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "create", "data": {},
        })

        items.create_one.assert_awaited_once()
        reply = reply_of(client)
        assert reply["status"] == "error"
        assert reply["error"]["code"] == "FORBIDDEN"
        assert "data" not in reply


# ─────────────────────────────────────────────────────────────
# Read
# ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestRead:

    async def test_read_by_query_with_meta(self, emitter, handler, get_schema, items, meta):
        items.read_by_query = AsyncMock(return_value=[{"id": 1}])
        meta.get_meta_for_query = AsyncMock(return_value={"total_count": 3})
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "read",
            "query": {"meta": ["total_count"]},
        })

        items.read_by_query.assert_awaited_once()
        assert meta.get_meta_for_query.await_args.args[0] == "test"
        client.send.assert_awaited_once_with(
            '{"type":"items","status":"ok","data":[{"id":1}],"meta":{"total_count":3}}'
        )

    async def test_read_by_query_without_meta(self, emitter, handler, get_schema, items, meta):
        items.read_by_query = AsyncMock(return_value=[])
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "read", "query": {},
        })

        meta.get_meta_for_query.assert_awaited_once()
        assert reply_of(client) == {"type": "items", "status": "ok", "data": []}

    async def test_read_one(self, emitter, handler, get_schema, items, meta):
        items.read_one = AsyncMock(return_value={"id": "123"})
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "read", "id": "123",
            "query": {"fields": "id"},
        })

        items.read_one.assert_awaited_once_with("123", Query(fields=["id"]))
        meta.get_meta_for_query.assert_not_awaited()
        assert reply_of(client)["data"] == {"id": "123"}

    async def test_read_many(self, emitter, handler, get_schema, items, meta):
        items.read_many = AsyncMock(return_value=[{"id": 2}, {"id": 1}])
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "read", "ids": [2, 1],
        })

        assert items.read_many.await_args.args[0] == [2, 1]
        meta.get_meta_for_query.assert_not_awaited()
        assert reply_of(client)["data"] == [{"id": 2}, {"id": 1}]

    async def test_missing_record_is_forbidden(self, emitter, handler, get_schema, items, meta):
        items.read_one = AsyncMock(side_effect=ForbiddenError())
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "read", "id": "404", "uid": 7,
        })

        assert reply_of(client) == {
            "type": "items",
            "status": "error",
            "error": {"code": "FORBIDDEN", "message": "You don't have permission to access this."},
            "uid": 7,
        }


# ─────────────────────────────────────────────────────────────
# Update
# ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestUpdate:

    async def test_update_one(self, emitter, handler, get_schema, items, meta):
        items.update_one = AsyncMock(return_value="123")
        items.read_one   = AsyncMock(return_value={"id": "123", "x": 1})
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "update", "data": {"x": 1}, "id": "123",
        })

        items.update_one.assert_awaited_once_with("123", {"x": 1})
        assert items.read_one.await_args.args[0] == "123"
        assert reply_of(client)["data"] == {"id": "123", "x": 1}

    async def test_update_many_order(self, emitter, handler, get_schema, items, meta):
        calls = []

        async def update_many(keys, data):
            calls.append("update_many")
            return ["123", "456"]

        async def get_meta_for_query(collection, query):
            calls.append("get_meta_for_query")
            return None

        async def read_many(keys, query=None):
            calls.append("read_many")
            return [{"id": k} for k in keys]

        items.update_many       = AsyncMock(side_effect=update_many)
        items.read_many         = AsyncMock(side_effect=read_many)
        meta.get_meta_for_query = AsyncMock(side_effect=get_meta_for_query)
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "update",
            "data": {}, "ids": ["123", "456"],
        })

        assert calls == ["update_many", "get_meta_for_query", "read_many"]
        assert items.update_many.await_args.args == (["123", "456"], {})
        assert reply_of(client)["data"] == [{"id": "123"}, {"id": "456"}]

    async def test_update_by_query_reads_back_returned_keys(
        self, emitter, handler, get_schema, items, meta,
    ):
        items.update_by_query = AsyncMock(return_value=[3, 9])
        items.read_many       = AsyncMock(return_value=[{"id": 3}, {"id": 9}])
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "update",
            "data": {"status": "published"}, "query": {"filter": {"status": {"_eq": "draft"}}},
        })

        query, data = items.update_by_query.await_args.args
        assert query.filter == {"status": {"_eq": "draft"}}
        assert data == {"status": "published"}
        assert items.read_many.await_args.args[0] == [3, 9]
        assert items.read_many.await_args.args[1].filter is None
        meta.get_meta_for_query.assert_awaited_once()

    async def test_update_without_target_is_malformed(self, emitter, handler, get_schema, items_cls, meta_cls):
        client = mock_client()
        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "update", "data": {},
        })
        assert reply_of(client)["error"]["code"] == "INVALID_PAYLOAD"
        items_cls.assert_not_called()


# ─────────────────────────────────────────────────────────────
# Delete
# ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestDelete:

    async def test_delete_one(self, emitter, handler, get_schema, items, meta):
        items.delete_one = AsyncMock(return_value="123")
        items.read_one   = AsyncMock()
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "delete", "id": "123",
        })

        items.delete_one.assert_awaited_once_with("123")
        items.read_one.assert_not_awaited()
        client.send.assert_awaited_once_with('{"type":"items","status":"ok","data":"123"}')

    async def test_delete_many_by_ids(self, emitter, handler, get_schema, items, meta):
        items.delete_many = AsyncMock(return_value=["123", 456])
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "delete", "ids": ["123", 456],
        })

        items.delete_many.assert_awaited_once_with(["123", 456])
        assert reply_of(client)["data"] == ["123", 456]

    async def test_delete_by_query(self, emitter, handler, get_schema, items, meta):
        items.delete_by_query = AsyncMock(return_value=[1, 2])
        client = mock_client()

        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "delete", "query": {},
        })

        items.delete_by_query.assert_awaited_once()
        assert isinstance(items.delete_by_query.await_args.args[0], Query)
        assert reply_of(client)["data"] == [1, 2]


# ─────────────────────────────────────────────────────────────
# Malformed messages and unexpected failures
# ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestErrors:

    async def test_id_and_ids_rejected(self, emitter, handler, get_schema, items_cls, meta_cls):
        client = mock_client()
        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "read", "id": 1, "ids": [1],
        })
        assert reply_of(client)["error"]["code"] == "INVALID_PAYLOAD"
        items_cls.assert_not_called()

    async def test_unknown_action(self, emitter, handler, get_schema, items_cls, meta_cls):
        client = mock_client()
        await emit(emitter, client, {"type": "ITEMS", "collection": "test", "action": "upsert"})
        assert reply_of(client)["error"]["code"] == "INVALID_PAYLOAD"

    async def test_bad_query(self, emitter, handler, get_schema, items_cls, meta_cls):
        client = mock_client()
        await emit(emitter, client, {
            "type": "ITEMS", "collection": "test", "action": "read", "query": {"bogus": 1},
        })
        assert reply_of(client)["error"]["code"] == "INVALID_QUERY"

    async def test_unexpected_exception_is_internal(self, emitter, handler, get_schema, items, meta):
        items.read_by_query = AsyncMock(side_effect=RuntimeError("db exploded"))
        client = mock_client()

        await emit(emitter, client, {"type": "ITEMS", "collection": "test", "action": "read"})

        reply = reply_of(client)
        assert reply["error"] == {"code": "INTERNAL", "message": "An unexpected error occurred."}
        assert "db exploded" not in client.send.await_args.args[0]

    async def test_schema_failure_is_internal(self, emitter, handler, items_cls, meta_cls):
        client = mock_client()
        with patch(f"{HANDLER}.get_schema", new=AsyncMock(side_effect=OSError("down"))):
            await emit(emitter, client, {"type": "ITEMS", "collection": "test", "action": "read"})
        assert reply_of(client)["error"]["code"] == "INTERNAL"
        items_cls.assert_not_called()

    async def test_undelivered_reply_is_logged(self, emitter, handler, get_schema, items, meta, caplog):
        items.read_by_query = AsyncMock(return_value=[])
        client = mock_client()
        client.send = AsyncMock(return_value=False)

        with caplog.at_level(logging.WARNING, logger=HANDLER):
            await emit(emitter, client, {"type": "ITEMS", "collection": "test", "action": "read"})

        client.send.assert_awaited_once()
        assert "not delivered" in caplog.text

    async def test_each_message_gets_its_own_reply(self, emitter, handler, get_schema, items, meta):
        items.read_one = AsyncMock(side_effect=lambda key, query=None: {"id": key})
        client = mock_client()

        emitter.emit_action("websocket.message", {"client": client, "message": {
            "type": "ITEMS", "collection": "test", "action": "read", "id": 1, "uid": "a",
        }})
        emitter.emit_action("websocket.message", {"client": client, "message": {
            "type": "ITEMS", "collection": "test", "action": "read", "id": 2, "uid": "b",
        }})
        await emitter.drain()

        assert client.send.await_count == 2
        replies = {json.loads(c.args[0])["uid"]: json.loads(c.args[0]) for c in client.send.await_args_list}
        assert replies["a"]["data"] == {"id": 1}
        assert replies["b"]["data"] == {"id": 2}
