from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

import growthdesk.models  # noqa: F401  registers every table on Base.metadata
from growthdesk.config import get_settings
from growthdesk.database import Base, normalize_database_url

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def migration_url() -> str:
    """``-x url=...`` wins over DATABASE_URL; either way a sync driver is used."""
    url = context.get_x_argument(as_dictionary=True).get("url") or get_settings().DATABASE_URL
    # psycopg serves sync and async alike; aiosqlite has to fall back to pysqlite
    return normalize_database_url(url).replace("sqlite+aiosqlite", "sqlite", 1)


def run_migrations_offline() -> None:
    context.configure(
        url=migration_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(migration_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
