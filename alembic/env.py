import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import context
from tenant_manager import models  # noqa: F401  registers every table on Base.metadata
from tenant_manager.config import settings
from tenant_manager.database import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def database_url() -> str:
    """`alembic -x url=...` wins over DATABASE_URL from the environment."""
    return context.get_x_argument(as_dictionary=True).get("url") or settings.database_url


def configure_and_run(**options) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **options)
    with context.begin_transaction():
        context.run_migrations()


async def run_online() -> None:
    engine = create_async_engine(database_url(), poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(lambda sync_connection: configure_and_run(connection=sync_connection))
    finally:
        await engine.dispose()


if context.is_offline_mode():
    configure_and_run(url=database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
else:
    asyncio.run(run_online())
