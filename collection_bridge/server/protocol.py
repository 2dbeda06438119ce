"""
collection-bridge wire protocol.

Every message that crosses the socket is defined here, client→server
and server→client. Both sides import from this module. If it isn't
here it doesn't exist on the wire.

Client → server, items actions:

    {
        "type":       "ITEMS",
        "collection": "articles",
        "action":     "create" | "read" | "update" | "delete",
        "data":       {...} | [{...}, ...],   # create / update
        "id":         "123",                  # one record
        "ids":        ["123", 456],           # several records
        "query":      {...},                  # filter / sort / fields / meta
        "uid":        "<opaque>"              # optional, echoed back
    }

Server → client, exactly one reply per items message:

    {"type": "items", "status": "ok", "data": ..., "meta": {...}, "uid": "..."}
    {"type": "items", "status": "error",
     "error": {"code": "INVALID_COLLECTION", "message": "..."}, "uid": "..."}

``meta`` and ``uid`` only appear when there is something to put in them.
Replies serialize to compact JSON with keys in the order shown.

Shape of an items action
------------------------
There is no explicit shape tag. parse_items_action() decides the variant
from which fields are present, in this precedence:

    id  >  ids  >  query  >  bare collection

``id`` together with ``ids`` is rejected. ``query`` next to ``id`` or
``ids`` is not a shape signal; it only carries read options (fields,
meta) for the read-back.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from collection_bridge.errors import (
    ErrorCode,
    InvalidPayloadError,
    ServiceError,
)
from collection_bridge.query import Query, sanitize_query


# ─────────────────────────────────────────────────────────────
# Message type constants
# ─────────────────────────────────────────────────────────────

class MsgType:
    # Client → server (upper case on the wire)
    ITEMS = "ITEMS"
    PING  = "PING"

    # Server → client
    PONG  = "pong"
    ERROR = "error"    # frame-level failures (not JSON, no type)


class Action:
    CREATE = "create"
    READ   = "read"
    UPDATE = "update"
    DELETE = "delete"

    ALL = (CREATE, READ, UPDATE, DELETE)


class Status:
    OK    = "ok"
    ERROR = "error"


# ─────────────────────────────────────────────────────────────
# Message
# ─────────────────────────────────────────────────────────────

def _new_id() -> str:
    return str(uuid.uuid4())


class Message(dict):
    """A wire message — a dict with a ``type`` field and helpers.

    Subclassing dict keeps insertion order and lets handlers read fields
    with plain ``msg["collection"]`` / ``msg.get("id")``.
    """

    @classmethod
    def parse(cls, raw: str | bytes) -> "Message":
        """Deserialize a JSON frame into a Message."""
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"Expected JSON object, got {type(data).__name__}")
        if "type" not in data:
            raise ValueError("Message missing 'type' field")
        return cls(data)

    def serialize(self) -> str:
        """Compact JSON, key order preserved."""
        return json.dumps(self, separators=(",", ":"), default=str)

    @property
    def type(self) -> str:
        return self["type"]

    @property
    def uid(self) -> str | None:
        return self.get("uid")

    def is_type(self, expected: str) -> bool:
        t = self.get("type")
        return isinstance(t, str) and t.upper() == expected.upper()

    def __repr__(self) -> str:
        return f"Message(type={self.get('type')!r}, uid={self.uid!r})"


# ─────────────────────────────────────────────────────────────
# Items actions (tagged union)
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ItemsAction:
    collection: str
    query:      Query = field(default_factory=Query)
    uid:        Any = None

    action = ""   # overridden per variant
    shape  = ""


@dataclass(frozen=True)
class CreateOne(ItemsAction):
    data: dict = field(default_factory=dict)
    action = Action.CREATE
    shape  = "one"


@dataclass(frozen=True)
class CreateMany(ItemsAction):
    data: list = field(default_factory=list)
    action = Action.CREATE
    shape  = "many"


@dataclass(frozen=True)
class ReadOne(ItemsAction):
    id: Any = None
    action = Action.READ
    shape  = "one"


@dataclass(frozen=True)
class ReadMany(ItemsAction):
    ids: list = field(default_factory=list)
    action = Action.READ
    shape  = "many"


@dataclass(frozen=True)
class ReadByQuery(ItemsAction):
    action = Action.READ
    shape  = "query"


@dataclass(frozen=True)
class UpdateOne(ItemsAction):
    id:   Any = None
    data: dict = field(default_factory=dict)
    action = Action.UPDATE
    shape  = "one"


@dataclass(frozen=True)
class UpdateMany(ItemsAction):
    ids:  list = field(default_factory=list)
    data: dict = field(default_factory=dict)
    action = Action.UPDATE
    shape  = "many"


@dataclass(frozen=True)
class UpdateByQuery(ItemsAction):
    data: dict = field(default_factory=dict)
    action = Action.UPDATE
    shape  = "query"


@dataclass(frozen=True)
class DeleteOne(ItemsAction):
    id: Any = None
    action = Action.DELETE
    shape  = "one"


@dataclass(frozen=True)
class DeleteMany(ItemsAction):
    ids: list = field(default_factory=list)
    action = Action.DELETE
    shape  = "many"


@dataclass(frozen=True)
class DeleteByQuery(ItemsAction):
    action = Action.DELETE
    shape  = "query"


def _check_id(value: Any, name: str = "id") -> Any:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise InvalidPayloadError(f"'{name}' must be a string or an integer.")
    return value


def _check_ids(value: Any) -> list:
    if not isinstance(value, list):
        raise InvalidPayloadError("'ids' must be a list.")
    for v in value:
        _check_id(v, "ids[]")
    return value


def _require_object(msg: Message, name: str = "data") -> dict:
    value = msg.get(name)
    if not isinstance(value, dict):
        raise InvalidPayloadError(f"'{name}' must be an object.")
    return value


def parse_items_action(msg: dict) -> ItemsAction:
    """Turn an ITEMS message into exactly one action variant.

    Raises InvalidPayloadError (or InvalidQueryError for a bad ``query``)
    when the message doesn't describe a single, well-formed operation.
    """
    collection = msg.get("collection")
    if not isinstance(collection, str) or not collection.strip():
        raise InvalidPayloadError("'collection' is required.")

    action = msg.get("action")
    if action not in Action.ALL:
        raise InvalidPayloadError(
            f"'action' must be one of {', '.join(Action.ALL)}; got {action!r}."
        )

    has_id, has_ids = "id" in msg, "ids" in msg
    if has_id and has_ids:
        raise InvalidPayloadError("Malformed action: 'id' and 'ids' can't be combined.")

    common = {
        "collection": collection,
        "query":      sanitize_query(msg.get("query")),
        "uid":        msg.get("uid"),
    }
    has_query = "query" in msg

    if action == Action.CREATE:
        data = msg.get("data")
        if has_id or has_ids:
            raise InvalidPayloadError("Malformed action: create takes 'data', not 'id' or 'ids'.")
        if isinstance(data, dict):
            return CreateOne(data=data, **common)
        if isinstance(data, list):
            return CreateMany(data=data, **common)
        raise InvalidPayloadError("'data' must be an object or a list of objects.")

    if action == Action.READ:
        if has_id:
            return ReadOne(id=_check_id(msg["id"]), **common)
        if has_ids:
            return ReadMany(ids=_check_ids(msg["ids"]), **common)
        return ReadByQuery(**common)

    if action == Action.UPDATE:
        data = _require_object(msg)
        if has_id:
            return UpdateOne(id=_check_id(msg["id"]), data=data, **common)
        if has_ids:
            return UpdateMany(ids=_check_ids(msg["ids"]), data=data, **common)
        if has_query:
            return UpdateByQuery(data=data, **common)
        raise InvalidPayloadError("Malformed action: update needs 'id', 'ids' or 'query'.")

    # Action.DELETE
    if has_id:
        return DeleteOne(id=_check_id(msg["id"]), **common)
    if has_ids:
        return DeleteMany(ids=_check_ids(msg["ids"]), **common)
    if has_query:
        return DeleteByQuery(**common)
    raise InvalidPayloadError("Malformed action: delete needs 'id', 'ids' or 'query'.")


# ─────────────────────────────────────────────────────────────
# Constructors — server → client (reply encoder)
# ─────────────────────────────────────────────────────────────

def ok(msg_type: str, data: Any = None, meta: Any = None, uid: Any = None) -> Message:
    msg = Message({"type": msg_type.lower(), "status": Status.OK, "data": data})
    if meta is not None:
        msg["meta"] = meta
    if uid is not None:
        msg["uid"] = uid
    return msg


def error(msg_type: str, code: str, message: str, uid: Any = None) -> Message:
    msg = Message({
        "type":   msg_type.lower(),
        "status": Status.ERROR,
        "error":  {"code": code, "message": message},
    })
    if uid is not None:
        msg["uid"] = uid
    return msg


def error_from_exception(msg_type: str, exc: BaseException, uid: Any = None) -> Message:
    """ServiceErrors keep their code and message; anything else is INTERNAL."""
    if isinstance(exc, ServiceError):
        return error(msg_type, exc.code, exc.message, uid)
    return error(msg_type, ErrorCode.INTERNAL, ServiceError.default_message, uid)


def pong(uid: Any = None) -> Message:
    msg = Message({"type": MsgType.PONG})
    if uid is not None:
        msg["uid"] = uid
    return msg


# ─────────────────────────────────────────────────────────────
# Constructors — client → server
# ─────────────────────────────────────────────────────────────

def _items(collection: str, action: str, uid: str | None, **fields) -> Message:
    msg = {"type": MsgType.ITEMS, "collection": collection, "action": action}
    msg.update({k: v for k, v in fields.items() if v is not None})
    msg["uid"] = uid or _new_id()
    return Message(msg)


def items_create(collection: str, data: dict | list, uid: str | None = None) -> Message:
    return _items(collection, Action.CREATE, uid, data=data)


def items_read(
    collection: str,
    id: str | int | None = None,
    ids: list | None = None,
    query: dict | None = None,
    uid: str | None = None,
) -> Message:
    return _items(collection, Action.READ, uid, id=id, ids=ids, query=query)


def items_update(
    collection: str,
    data: dict,
    id: str | int | None = None,
    ids: list | None = None,
    query: dict | None = None,
    uid: str | None = None,
) -> Message:
    return _items(collection, Action.UPDATE, uid, data=data, id=id, ids=ids, query=query)


def items_delete(
    collection: str,
    id: str | int | None = None,
    ids: list | None = None,
    query: dict | None = None,
    uid: str | None = None,
) -> Message:
    return _items(collection, Action.DELETE, uid, id=id, ids=ids, query=query)


def ping(uid: str | None = None) -> Message:
    return Message({"type": MsgType.PING, "uid": uid or _new_id()})
