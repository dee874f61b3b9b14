"""Alembic environment for the paas_* tables."""

from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context

# Models must be imported so Base.metadata knows every table
from paas_engine.infrastructure.postgres.config import DatabaseSettings
from paas_engine.infrastructure.postgres.database import Base
from paas_engine.infrastructure.postgres import models  # noqa: F401

VERSION_TABLE = "paas_alembic_version"

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# `alembic -x url=postgresql://...` wins over POSTGRES_* settings
override_url = context.get_x_argument(as_dictionary=True).get("url")
config.set_main_option("sqlalchemy.url", override_url or DatabaseSettings().database_url)

target_metadata = Base.metadata


def include_object(obj, name, type_, reflected, compare_to):
    # Tables that do not belong to the control plane are left alone
    if type_ == "table":
        return name.startswith("paas_")
    return True


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        version_table=VERSION_TABLE,
        include_object=include_object,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
