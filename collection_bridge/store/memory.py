"""
collection-bridge in-memory store.

A real store backed by Python dicts. No Postgres required. Used for
demos (``BRIDGE_MEMORY=1``), the integration tests and the service tests.

MemorySession understands exactly the statements the repositories in
store/repo.py issue: primary-key ``get``, ``add``, ``delete`` and
``select(Model).where(...)`` with equality / IN clauses. Changes are
staged per session and only reach the store on commit, so a failed
create_many leaves nothing behind, same as a Postgres rollback.

Drop-in replacement for the Postgres store:

    from collection_bridge.store.memory import patch_for_memory
    patch_for_memory()   # call once before starting the server
"""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from typing import Any

import sqlalchemy.sql.operators as sqop

from collection_bridge.store.models import Base


# ─────────────────────────────────────────────────────────────
# Store singleton
# ─────────────────────────────────────────────────────────────

class MemoryStore:
    """Committed rows, per table: {table_name: {pk_tuple: row_dict}}."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.tables: dict[str, dict[tuple, dict]] = {
            table.name: {} for table in Base.metadata.sorted_tables
        }


_store = MemoryStore()

def get_store() -> MemoryStore:  return _store
def reset_store() -> None:       _store.reset()


# ─────────────────────────────────────────────────────────────
# Row <-> ORM object
# ─────────────────────────────────────────────────────────────

def _models() -> dict[str, type]:
    return {m.class_.__tablename__: m.class_ for m in Base.registry.mappers}


def _pk_of(obj) -> tuple:
    return tuple(getattr(obj, c.key) for c in obj.__table__.primary_key.columns)


def _pk_arg(pk) -> tuple:
    return tuple(pk) if isinstance(pk, (tuple, list)) else (pk,)


def _to_row(obj) -> dict:
    return {
        c.key: copy.deepcopy(getattr(obj, c.key, None))
        for c in obj.__table__.columns
    }


def _to_obj(model_cls: type, row: dict):
    return model_cls(**copy.deepcopy(row))


# ─────────────────────────────────────────────────────────────
# WHERE clause evaluator
# ─────────────────────────────────────────────────────────────

def _matches(row: dict, clause) -> bool:
    """Evaluate a SQLAlchemy WHERE clause against a plain dict."""
    if clause is None:
        return True

    cls = type(clause).__name__

    if cls in ("BooleanClauseList", "ClauseList"):
        parts = [_matches(row, c) for c in clause.clauses]
        if clause.operator is sqop.or_:
            return any(parts)
        return all(parts)

    if cls == "BinaryExpression":
        col = clause.left.key
        val = getattr(clause.right, "effective_value", None)
        op  = clause.operator
        if op is sqop.eq:
            return row.get(col) == val
        if op is sqop.ne:
            return row.get(col) != val
        if op is sqop.in_op:
            return row.get(col) in (val or ())
        if op is sqop.not_in_op:
            return row.get(col) not in (val or ())
        raise NotImplementedError(f"MemorySession cannot evaluate operator {op!r}")

    raise NotImplementedError(f"MemorySession cannot evaluate {cls}")


# ─────────────────────────────────────────────────────────────
# Session
# ─────────────────────────────────────────────────────────────

class MemorySession:
    """Stands in for AsyncSession inside the repositories."""

    def __init__(self, store: MemoryStore):
        self._store    = store
        self._identity: dict[tuple[str, tuple], Any]  = {}   # loaded or added
        self._loaded:   dict[tuple[str, tuple], dict] = {}   # row as first read
        self._deleted:  set[tuple[str, tuple]]        = set()

    # ── Transaction lifecycle ─────────────────────────────────

    async def commit(self):
        for (table, pk) in self._deleted:
            self._store.tables[table].pop(pk, None)
        for ident, obj in self._identity.items():
            row = _to_row(obj)
            # untouched reads are not written back
            if row != self._loaded.get(ident):
                self._store.tables[ident[0]][ident[1]] = row
        await self.rollback()

    async def rollback(self):
        self._identity.clear()
        self._loaded.clear()
        self._deleted.clear()

    async def flush(self):
        pass

    # ── Writes ────────────────────────────────────────────────

    def add(self, obj) -> None:
        ident = (obj.__tablename__, _pk_of(obj))
        self._deleted.discard(ident)
        self._loaded.pop(ident, None)
        self._identity[ident] = obj

    async def delete(self, obj) -> None:
        ident = (obj.__tablename__, _pk_of(obj))
        self._identity.pop(ident, None)
        self._deleted.add(ident)

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, model_cls, pk):
        ident = (model_cls.__tablename__, _pk_arg(pk))
        if ident in self._deleted:
            return None
        if ident in self._identity:
            return self._identity[ident]
        row = self._store.tables[ident[0]].get(ident[1])
        if row is None:
            return None
        obj = _to_obj(model_cls, row)
        self._identity[ident] = obj
        self._loaded[ident]   = _to_row(obj)
        return obj

    async def execute(self, stmt):
        from sqlalchemy.sql.selectable import Select

        if not isinstance(stmt, Select):
            raise NotImplementedError(f"MemorySession only runs SELECT, got {type(stmt).__name__}")

        table     = list(stmt.get_final_froms())[0].name
        model_cls = _models()[table]

        pks = list(self._store.tables[table].keys())
        pks += [pk for (t, pk) in self._identity if t == table and pk not in self._store.tables[table]]

        rows = []
        for pk in sorted(pks, key=lambda p: tuple(str(v) for v in p)):
            obj = await self.get(model_cls, pk)
            if obj is not None and _matches(_to_row(obj), stmt.whereclause):
                rows.append(obj)
        return _Result(rows)


class _Result:
    """Full-row result — scalars().all() returns objects."""
    def __init__(self, rows): self._rows = rows
    def scalars(self):        return self
    def all(self):            return self._rows
    def scalar_one_or_none(self): return self._rows[0] if self._rows else None
    def __iter__(self):       return iter(self._rows)


# ─────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────

@asynccontextmanager
async def get_memory_session(*args, **kwargs):
    session = MemorySession(_store)
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise


def patch_for_memory():
    """Point every session consumer at the in-memory store. Call once."""
    import collection_bridge.schema as schema_mod
    import collection_bridge.services.items as items_mod
    import collection_bridge.services.meta as meta_mod
    import collection_bridge.store.session as session_mod

    session_mod.get_session = get_memory_session
    schema_mod.get_session  = get_memory_session
    items_mod.get_session   = get_memory_session
    meta_mod.get_session    = get_memory_session
