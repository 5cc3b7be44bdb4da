"""Alembic environment configuration.

The connection string comes from DATABASE_URL, then the ``database`` key of
the CrmFlow config file (CRMFLOW_CONFIG), then sqlalchemy.url in alembic.ini.
Migrations are raw SQL via op.execute(); there is no ORM metadata.
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from crmflow.config import load_config

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = None


def get_url() -> str:
    url = os.environ.get("DATABASE_URL", "")
    config_path = os.environ.get("CRMFLOW_CONFIG", "config.yaml")
    if not url and os.path.exists(config_path):
        url = load_config(config_path).get("database") or ""
    if not url:
        url = config.get_main_option("sqlalchemy.url", "")
    if not url:
        raise RuntimeError(
            "No database configured. Set DATABASE_URL, CRMFLOW_CONFIG "
            "or sqlalchemy.url in alembic.ini."
        )
    return url


def run_migrations_offline() -> None:
    """Emit the SQL script without connecting."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = get_url()
    connectable = engine_from_config(configuration, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
