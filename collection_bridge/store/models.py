"""
collection-bridge database schema.

Table design principles:

  1. Collections are rows, not tables. Creating a collection is an
     INSERT into ``collections``; no DDL at runtime.

  2. Every record of every collection lives in ``items``, keyed by
     (collection, key). The record itself is a JSONB document in
     ``data``, including its own primary-key field.

  3. ``key`` is the string form of the primary key. The typed value
     (string or integer) stays inside ``data`` so it round-trips.

  4. All times in UTC, stored as TIMESTAMP WITH TIME ZONE.

Schema overview:

  collections   — collection registry (name, primary key field, roles)
  items         — records of every collection
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.sql import func

# JSONB on Postgres, plain JSON anywhere else (SQLite in ad-hoc tooling).
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


# ─────────────────────────────────────────────────────────────
# Base
# ─────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    pass


# ─────────────────────────────────────────────────────────────
# Collections
# ─────────────────────────────────────────────────────────────

class DBCollection(Base):
    """A collection clients can address over the socket.

    name        — what clients put in the ``collection`` field.
    primary_key — name of the primary-key field inside each record.
    roles       — roles allowed to see the collection. Empty = everyone.
    """
    __tablename__ = "collections"

    name        = Column(String(64), primary_key=True)
    primary_key = Column(String(64), nullable=False, default="id")
    roles       = Column(JSONDocument, nullable=False, default=list)
    note        = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<DBCollection {self.name!r} pk={self.primary_key!r}>"


# ─────────────────────────────────────────────────────────────
# Items
# ─────────────────────────────────────────────────────────────

class DBItem(Base):
    """One record in one collection."""
    __tablename__ = "items"

    collection = Column(
        String(64),
        ForeignKey("collections.name", ondelete="CASCADE"),
        primary_key=True,
    )
    key  = Column(String(255), primary_key=True)
    data = Column(JSONDocument, nullable=False, default=dict)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_items_collection", "collection"),
    )

    def __repr__(self) -> str:
        return f"<DBItem {self.collection}/{self.key}>"
