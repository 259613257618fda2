"""
Alembic environment for the settlement schema.

The database URL always comes from application settings so migrations and
the service agree on the target. Migrations run over asyncpg.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from src.core.config import get_settings
from src.core.logging import get_logger
from src.database.base import Base

# Registers orders, payments, COD tracking, the webhook ledger and settings
import src.database.models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = get_logger(__name__)
target_metadata = Base.metadata

config.set_main_option("sqlalchemy.url", get_settings().async_database_url)

COMPARE_OPTIONS = {
    "target_metadata": target_metadata,
    "compare_type": True,
    "compare_server_default": True,
}


def run_migrations_offline() -> None:
    """Emit the migration SQL to stdout without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **COMPARE_OPTIONS,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    # Each revision commits on its own so a failed step leaves earlier ones applied
    context.configure(connection=connection, transaction_per_migration=True, **COMPARE_OPTIONS)

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    try:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
    except Exception as e:
        logger.error("Settlement schema migration failed", error=str(e), error_type=type(e).__name__)
        raise
    finally:
        await connectable.dispose()

    logger.info("Settlement schema migrated")


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
