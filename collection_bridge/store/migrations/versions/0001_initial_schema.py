"""Initial schema — collections and items.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-17
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "collections",
        sa.Column("name",        sa.String(64), primary_key=True),
        sa.Column("primary_key", sa.String(64), nullable=False, server_default="id"),
        sa.Column("roles",       JSONB,         nullable=False, server_default="[]"),
        sa.Column("note",        sa.Text(),     nullable=True),
        sa.Column("created_at",  sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "items",
        sa.Column(
            "collection", sa.String(64),
            sa.ForeignKey("collections.name", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("key",  sa.String(255), primary_key=True),
        sa.Column("data", JSONB, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_items_collection", "items", ["collection"])


def downgrade() -> None:
    op.drop_index("ix_items_collection", table_name="items")
    op.drop_table("items")
    op.drop_table("collections")
