import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

# Import all models so SQLModel.metadata is populated
from mindscript.gateway import domain_models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = SQLModel.metadata

MANAGED_TABLES = {table.name for table in target_metadata.sorted_tables}

# Alembic runs on sync drivers
SYNC_DRIVERS = {
    "postgresql+asyncpg://": "postgresql+psycopg://",
    "sqlite+aiosqlite://": "sqlite://",
}


def include_object(object, name, type_, reflected, compare_to):
    """Only include objects that are part of our models."""
    if type_ == "table":
        return name in MANAGED_TABLES
    if hasattr(object, "table") and object.table is not None:
        return object.table.name in MANAGED_TABLES
    return True


def get_url() -> str:
    """Database URL from the caller's config, else the environment, with a sync driver."""
    url = config.get_main_option("sqlalchemy.url") or os.environ.get("DATABASE_URL", "")
    for async_prefix, sync_prefix in SYNC_DRIVERS.items():
        url = url.replace(async_prefix, sync_prefix)
    return url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_object=include_object,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = get_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            include_object=include_object,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
