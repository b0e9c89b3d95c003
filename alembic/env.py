"""Alembic migration runner using the application's engine.

Uses the engine from orgbrain.db.engine, which already handles the optional
SQLCipher key and PRAGMA configuration.
"""

from logging.config import fileConfig

from alembic import context

# Import all model modules to register them with Base.metadata
import orgbrain.knowledge.models  # noqa: F401
from orgbrain.db.base import Base
from orgbrain.db.engine import get_engine

# Alembic Config object
config = context.config

# Set up Python logging from the ini file
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Target metadata for autogenerate support
target_metadata = Base.metadata


def run_migrations_online() -> None:
    """Run migrations using the application's engine."""
    with get_engine().connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()


run_migrations_online()
