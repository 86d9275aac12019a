"""
Alembic Environment Configuration
==================================

Runs migrations against the linemeter database. The sqlalchemy.url is
overridden at runtime by linemeter.core.database, so the value in
alembic.ini is only a fallback for CLI usage.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

from linemeter.config import settings
# Import models so their tables are registered on metadata
from linemeter.models.billing import Plan, SubscriptionPeriod, UsageEvent, UserAccount  # noqa: F401

config = context.config

# CLI runs honour LINEMETER_DATABASE_URL / DATABASE_URL like the app does
config.set_main_option("sqlalchemy.url", settings.get_database_url())

# Programmatic upgrades keep the app's structlog configuration
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (emit SQL to stdout)."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=url.startswith("sqlite"),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (connect to DB)."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
