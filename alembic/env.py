from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sl_backend import models  # noqa: F401
from sl_backend.config import get_database_config
from sl_backend.db import Base, get_engine

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# All semantic linker tables hang off one declarative Base.
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """
    Emit SQL for SEMANTICLINKER_DATABASE_URL without connecting.
    """
    context.configure(
        url=get_database_config().database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """
    Migrate through the same engine the application uses.
    """
    with get_engine().connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            # SQLite cannot ALTER most constraints in place.
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
