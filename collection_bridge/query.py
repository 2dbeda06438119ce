"""
collection-bridge query model.

A query travels inside an items message as a plain JSON object:

    {
        "fields": ["id", "title"],
        "filter": {"status": {"_eq": "published"}, "_or": [...]},
        "search": "needle",
        "sort":   ["-date_created", "title"],
        "limit":  25,
        "page":   2,
        "meta":   ["total_count", "filter_count"]
    }

Query validates that shape. The helpers below evaluate it against
plain record dicts. Evaluation is done in Python rather than SQL so the
Postgres store and the in-memory store answer every query the same way.
"""

from __future__ import annotations

import json
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from collection_bridge.errors import InvalidQueryError

DEFAULT_LIMIT = 100

META_KEYS = ("total_count", "filter_count")

LOGICAL_OPERATORS = ("_and", "_or")


def _eq(value, arg) -> bool:
    return value == arg


def _lt(value, arg) -> bool:
    try:
        return value is not None and value < arg
    except TypeError:
        return False


def _lte(value, arg) -> bool:
    try:
        return value is not None and value <= arg
    except TypeError:
        return False


def _gt(value, arg) -> bool:
    try:
        return value is not None and value > arg
    except TypeError:
        return False


def _gte(value, arg) -> bool:
    try:
        return value is not None and value >= arg
    except TypeError:
        return False


def _contains(value, arg) -> bool:
    if isinstance(value, str):
        return str(arg) in value
    if isinstance(value, (list, tuple)):
        return arg in value
    return False


def _starts_with(value, arg) -> bool:
    return isinstance(value, str) and value.startswith(str(arg))


def _ends_with(value, arg) -> bool:
    return isinstance(value, str) and value.endswith(str(arg))


FIELD_OPERATORS = {
    "_eq":          _eq,
    "_neq":         lambda v, a: not _eq(v, a),
    "_lt":          _lt,
    "_lte":         _lte,
    "_gt":          _gt,
    "_gte":         _gte,
    "_in":          lambda v, a: v in a,
    "_nin":         lambda v, a: v not in a,
    "_null":        lambda v, a: (v is None) == bool(a),
    "_nnull":       lambda v, a: (v is not None) == bool(a),
    "_contains":    _contains,
    "_ncontains":   lambda v, a: not _contains(v, a),
    "_starts_with": _starts_with,
    "_ends_with":   _ends_with,
}

_LIST_OPERATORS = ("_in", "_nin")


# ─────────────────────────────────────────────────────────────
# Query model
# ─────────────────────────────────────────────────────────────

def _split_csv(v):
    if isinstance(v, str):
        return [part.strip() for part in v.split(",") if part.strip()]
    return v


def _check_filter(node: Any, path: str = "filter") -> None:
    """Walk a filter tree and reject anything we can't evaluate."""
    if not isinstance(node, dict):
        raise ValueError(f"{path} must be an object")
    for key, value in node.items():
        if key in LOGICAL_OPERATORS:
            if not isinstance(value, list):
                raise ValueError(f"{path}.{key} must be a list")
            for i, child in enumerate(value):
                _check_filter(child, f"{path}.{key}[{i}]")
        elif key.startswith("_"):
            raise ValueError(f"Unknown filter operator {key!r} at {path}")
        elif isinstance(value, dict):
            for op, arg in value.items():
                if op not in FIELD_OPERATORS:
                    raise ValueError(f"Unknown filter operator {op!r} at {path}.{key}")
                if op in _LIST_OPERATORS and not isinstance(arg, list):
                    raise ValueError(f"{path}.{key}.{op} must be a list")


class Query(BaseModel):
    """Read options for a collection: filter, search, sort, paging, fields, meta."""

    model_config = ConfigDict(extra="forbid")

    fields: list[str] | None = None
    filter: dict[str, Any] | None = None
    search: str | None = None
    sort:   list[str] | None = None
    limit:  int | None = None
    offset: int | None = None
    page:   int | None = None
    meta:   list[str] | None = None

    @field_validator("fields", "sort", "meta", mode="before")
    @classmethod
    def _comma_lists(cls, v):
        return _split_csv(v)

    @field_validator("filter")
    @classmethod
    def _valid_filter(cls, v):
        if v is not None:
            _check_filter(v)
        return v

    @field_validator("limit")
    @classmethod
    def _valid_limit(cls, v):
        if v is not None and v < -1:
            raise ValueError("limit must be -1 (unlimited) or a non-negative integer")
        return v

    @field_validator("offset")
    @classmethod
    def _valid_offset(cls, v):
        if v is not None and v < 0:
            raise ValueError("offset must be a non-negative integer")
        return v

    @field_validator("page")
    @classmethod
    def _valid_page(cls, v):
        if v is not None and v < 1:
            raise ValueError("page is 1-based")
        return v

    @field_validator("meta")
    @classmethod
    def _valid_meta(cls, v):
        if v is None:
            return v
        if "*" in v:
            return list(META_KEYS)
        unknown = [m for m in v if m not in META_KEYS]
        if unknown:
            raise ValueError(f"Unknown meta field(s): {', '.join(unknown)}")
        return v

    def to_dict(self) -> dict:
        return self.model_dump(exclude_none=True)


def sanitize_query(raw: Any) -> Query:
    """Build a Query from whatever arrived on the wire.

    Raises InvalidQueryError with a readable message on bad input.
    """
    if raw is None:
        return Query()
    if isinstance(raw, Query):
        return raw
    if not isinstance(raw, dict):
        raise InvalidQueryError("Query must be an object.")
    try:
        return Query.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'query'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidQueryError(f"Invalid query. {problems}") from e


# ─────────────────────────────────────────────────────────────
# Evaluation
# ─────────────────────────────────────────────────────────────

def matches_filter(record: dict, node: dict | None) -> bool:
    """True if the record satisfies every clause of the filter tree."""
    if not node:
        return True
    for key, cond in node.items():
        if key == "_and":
            if not all(matches_filter(record, child) for child in cond):
                return False
        elif key == "_or":
            if not any(matches_filter(record, child) for child in cond):
                return False
        else:
            value = record.get(key)
            if isinstance(cond, dict):
                for op, arg in cond.items():
                    if not FIELD_OPERATORS[op](value, arg):
                        return False
            elif value != cond:
                return False
    return True


def matches_search(record: dict, search: str | None) -> bool:
    if not search:
        return True
    needle = search.casefold()
    return any(
        isinstance(v, str) and needle in v.casefold()
        for v in record.values()
    )


def _sort_key(value):
    # Total order across mixed types: nulls, numbers, strings, everything else.
    if value is None:
        return (0, 0)
    if isinstance(value, (bool, int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    return (3, json.dumps(value, sort_keys=True, default=str))


def sort_records(records: list[dict], sort: Iterable[str] | None) -> list[dict]:
    out = list(records)
    for term in reversed(list(sort or [])):
        descending = term.startswith("-")
        field = term[1:] if descending else term
        out.sort(key=lambda r: _sort_key(r.get(field)), reverse=descending)
    return out


def paginate(
    records: list[dict],
    query: Query,
    default_limit: int | None = DEFAULT_LIMIT,
) -> list[dict]:
    limit = query.limit if query.limit is not None else default_limit
    offset = query.offset or 0
    if query.page is not None and limit is not None and limit > 0:
        offset = (query.page - 1) * limit
    if limit is None or limit == -1:
        return records[offset:]
    return records[offset:offset + limit]


def project(record: dict, fields: list[str] | None) -> dict:
    """Keep only the requested top-level fields. ``*`` means everything."""
    if not fields or "*" in fields:
        return dict(record)
    return {f: record[f] for f in fields if f in record}


def select_records(records: Iterable[dict], query: Query) -> list[dict]:
    """Filter + search, no ordering or paging. Used for counts and bulk writes."""
    return [
        r for r in records
        if matches_filter(r, query.filter) and matches_search(r, query.search)
    ]


def run_query(
    records: Iterable[dict],
    query: Query,
    default_limit: int | None = DEFAULT_LIMIT,
) -> list[dict]:
    """Full read pipeline: filter, search, sort, page, project."""
    selected = select_records(records, query)
    ordered  = sort_records(selected, query.sort)
    page     = paginate(ordered, query, default_limit)
    return [project(r, query.fields) for r in page]
