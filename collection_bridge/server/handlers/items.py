"""
collection-bridge items handler.

Turns one ITEMS message into exactly one reply:

  1. Filter      — anything that isn't type ITEMS is ignored, silently.
  2. Validate    — the collection must be in the caller's schema snapshot,
                   otherwise INVALID_COLLECTION, whatever else the
                   message holds, and no service is touched.
  3. Parse       — the message becomes one action variant (protocol.py).
  4. Dispatch    — mutate first, then read back by the keys the mutation
                   returned, so the reply shows what was stored rather
                   than what was sent.
  5. Reply       — one envelope, one ``client.send``.

Any failure along the way becomes a single error envelope. Errors never
reach the bus and never close the connection.

A mutation that succeeds followed by a read-back that fails still
replies with an error. The write is not rolled back.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from collection_bridge.errors import (
    InvalidCollectionError,
    InvalidPayloadError,
    ServiceError,
)
from collection_bridge.query import Query
from collection_bridge.schema import get_schema
from collection_bridge.server.connections import ConnectedClient
from collection_bridge.server.emitter import Emitter
from collection_bridge.server.protocol import (
    CreateMany, CreateOne,
    DeleteByQuery, DeleteMany, DeleteOne,
    ItemsAction, Message, MsgType,
    ReadByQuery, ReadMany, ReadOne,
    UpdateByQuery, UpdateMany, UpdateOne,
    error_from_exception, ok, parse_items_action,
)
from collection_bridge.services import ItemsService, MetaService

logger = logging.getLogger(__name__)

WEBSOCKET_MESSAGE = "websocket.message"

Result = tuple[Any, Any]   # (data, meta)


def _read_back_query(action: ItemsAction) -> Query:
    # Only the projection carries over; the filter described the write.
    return Query(fields=action.query.fields)


class ItemsHandler:
    """Owns the ITEMS message type on the bus.

    Registers itself on construction; close() unregisters. Holds no
    state beyond that registration.

    Every dispatch coroutine has the signature:
        async def _*(
            self,
            action:  ItemsAction,
            items:   ItemsService,
            meta:    MetaService,
        ) -> tuple[data, meta]
    """

    message_type = MsgType.ITEMS

    def __init__(self, emitter: Emitter):
        self.emitter   = emitter
        self._listener = emitter.on_action(WEBSOCKET_MESSAGE, self._on_websocket_message)
        self._dispatch: dict[type, Callable[..., Awaitable[Result]]] = {
            CreateOne:     self._create_one,
            CreateMany:    self._create_many,
            ReadOne:       self._read_one,
            ReadMany:      self._read_many,
            ReadByQuery:   self._read_by_query,
            UpdateOne:     self._update_one,
            UpdateMany:    self._update_many,
            UpdateByQuery: self._update_by_query,
            DeleteOne:     self._delete_one,
            DeleteMany:    self._delete_many,
            DeleteByQuery: self._delete_by_query,
        }

    def close(self) -> None:
        self.emitter.off_action(WEBSOCKET_MESSAGE, self._listener)

    # ── Bus entry point ───────────────────────────────────────

    def _on_websocket_message(self, payload: dict):
        message = payload.get("message")
        if not isinstance(message, dict):
            return None
        message = Message(message)
        if not message.is_type(self.message_type):
            return None
        return self.on_message(payload["client"], message)

    async def on_message(self, client: ConnectedClient, message: Message) -> None:
        reply = await self.handle(client, message)
        if not await client.send(reply.serialize()):
            logger.warning(
                f"Reply to {message!r} not delivered: session {client.session_id!s:.8}... is gone"
            )

    # ── Handling ──────────────────────────────────────────────

    async def handle(self, client: ConnectedClient, message: Message) -> Message:
        """Build the one reply for ``message``. Never raises."""
        msg_type = message.type
        uid      = message.get("uid")
        try:
            collection = message.get("collection")
            if not isinstance(collection, str) or not collection.strip():
                raise InvalidPayloadError("'collection' is required.")

            schema = await get_schema(client.accountability)
            if schema.get(collection) is None:
                raise InvalidCollectionError()

            action = parse_items_action(message)

            items = ItemsService(
                action.collection,
                accountability=client.accountability,
                schema=schema,
            )
            meta_service = MetaService(accountability=client.accountability, schema=schema)

            logger.debug(f"{type(action).__name__} on {action.collection!r}")
            data, meta = await self._dispatch[type(action)](action, items, meta_service)

        except ServiceError as e:
            logger.debug(f"{message!r} rejected: {e.code} {e.message}")
            return error_from_exception(msg_type, e, uid)
        except Exception as e:
            logger.exception(f"Unhandled error handling {message!r}: {e}")
            return error_from_exception(msg_type, e, uid)

        return ok(msg_type, data, meta, uid)

    # ── Create ────────────────────────────────────────────────

    async def _create_one(self, action: CreateOne, items: ItemsService, meta: MetaService) -> Result:
        key = await items.create_one(action.data)
        return await items.read_one(key, _read_back_query(action)), None

    async def _create_many(self, action: CreateMany, items: ItemsService, meta: MetaService) -> Result:
        keys = await items.create_many(action.data)
        return await items.read_many(keys, _read_back_query(action)), None

    # ── Read ──────────────────────────────────────────────────

    async def _read_one(self, action: ReadOne, items: ItemsService, meta: MetaService) -> Result:
        return await items.read_one(action.id, action.query), None

    async def _read_many(self, action: ReadMany, items: ItemsService, meta: MetaService) -> Result:
        return await items.read_many(action.ids, action.query), None

    async def _read_by_query(self, action: ReadByQuery, items: ItemsService, meta: MetaService) -> Result:
        data = await items.read_by_query(action.query)
        return data, await meta.get_meta_for_query(action.collection, action.query)

    # ── Update ────────────────────────────────────────────────

    async def _update_one(self, action: UpdateOne, items: ItemsService, meta: MetaService) -> Result:
        key = await items.update_one(action.id, action.data)
        return await items.read_one(key, _read_back_query(action)), None

    async def _update_many(self, action: UpdateMany, items: ItemsService, meta: MetaService) -> Result:
        keys = await items.update_many(action.ids, action.data)
        result_meta = await meta.get_meta_for_query(action.collection, action.query)
        return await items.read_many(keys, _read_back_query(action)), result_meta

    async def _update_by_query(self, action: UpdateByQuery, items: ItemsService, meta: MetaService) -> Result:
        keys = await items.update_by_query(action.query, action.data)
        result_meta = await meta.get_meta_for_query(action.collection, action.query)
        return await items.read_many(keys, _read_back_query(action)), result_meta

    # ── Delete ────────────────────────────────────────────────

    async def _delete_one(self, action: DeleteOne, items: ItemsService, meta: MetaService) -> Result:
        return await items.delete_one(action.id), None

    async def _delete_many(self, action: DeleteMany, items: ItemsService, meta: MetaService) -> Result:
        return await items.delete_many(action.ids), None

    async def _delete_by_query(self, action: DeleteByQuery, items: ItemsService, meta: MetaService) -> Result:
        return await items.delete_by_query(action.query), None
