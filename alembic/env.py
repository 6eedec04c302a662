import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from db import Base

config = context.config
target_metadata = Base.metadata

if config.config_file_name is not None:
    # Keep loggers configured by the caller (test runner, scripts).
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def _get_database_url() -> str:
    # An explicit sqlalchemy.url (set by the DB test harness) wins over the env.
    url = config.get_main_option("sqlalchemy.url") or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL is not set. Set it to run migrations.")
    for prefix in ("postgres://", "postgresql+asyncpg://", "postgresql://"):
        if url.startswith(prefix):
            return url.replace(prefix, "postgresql+psycopg://", 1)
    return url


def _configure_options() -> dict:
    # BIGINT[] columns are only told apart by their element type.
    return {"target_metadata": target_metadata, "compare_type": True}


def run_migrations_offline() -> None:
    context.configure(
        url=_get_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(_get_database_url(), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_options())
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
