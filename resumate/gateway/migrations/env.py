import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

from resumate.gateway import domain_models  # noqa: F401

config = context.config

# Only when run from the alembic CLI; the app configures logging itself
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata
BILLING_TABLES = frozenset(target_metadata.tables)

SYNC_DRIVERS = {
    "postgresql+asyncpg://": "postgresql+psycopg://",
    "sqlite+aiosqlite://": "sqlite://",
}


def include_object(object, name, type_, reflected, compare_to):
    """The identity provider shares the database; never autogenerate against its tables."""
    table = name if type_ == "table" else getattr(getattr(object, "table", None), "name", None)
    return table is None or table in BILLING_TABLES


def database_url() -> str:
    url = config.attributes.get("database_url") or os.environ.get("DATABASE_URL", "")
    for async_prefix, sync_prefix in SYNC_DRIVERS.items():
        if url.startswith(async_prefix):
            return sync_prefix + url.removeprefix(async_prefix)
    return url


def configure_context(**kwargs) -> None:
    url = database_url()
    context.configure(
        target_metadata=target_metadata,
        include_object=include_object,
        # sqlite can't ALTER most constraints in place
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


if context.is_offline_mode():
    configure_context(url=database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = database_url()
    engine = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with engine.connect() as connection:
        configure_context(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
