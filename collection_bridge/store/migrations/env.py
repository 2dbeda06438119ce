"""
Alembic environment for the collection-bridge schema.

    BRIDGE_DB_URL=postgresql+asyncpg://... alembic upgrade head
    alembic upgrade head --sql          # print the DDL instead

Revisions manage the two tables in store/models.py: the collection
registry and the shared items table. The server itself only calls
create_tables(), which never alters an existing table, so column
changes must ship as a revision here.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from collection_bridge.store.models import Base
from collection_bridge.store.session import get_sync_db_url

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# asyncpg URL from the environment, rewritten for psycopg2
DB_URL = get_sync_db_url()


def _configure(**kwargs) -> None:
    context.configure(target_metadata=Base.metadata, compare_type=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    _configure(url=DB_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
else:
    engine = create_engine(DB_URL, poolclass=pool.NullPool)
    with engine.connect() as connection:
        _configure(connection=connection)
