from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator, TypeVar

from alembic import command, config
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from resumate.gateway.config import Settings
from resumate.gateway.exceptions import ResourceNotFoundError

ALEMBIC_INI = Path(__file__).parent / "alembic.ini"
MIGRATIONS_DIR = ALEMBIC_INI.parent / "migrations"

T = TypeVar("T", bound=SQLModel)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(database_url: str) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        # Webhook and request sessions share one file; wait on the write lock instead of erroring
        return {"connect_args": {"timeout": 30}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 10}


def _get_engine(settings: Settings) -> AsyncEngine:
    global _engine, _session_factory
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.sqlalchemy_echo,
            **_engine_options(settings.database_url),
        )
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    return _engine


async def create_session(settings: Settings) -> AsyncIterator[AsyncSession]:
    _get_engine(settings)
    assert _session_factory is not None
    async with _session_factory() as session:
        yield session


def alembic_config(settings: Settings) -> config.Config:
    cfg = config.Config(str(ALEMBIC_INI))
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    cfg.attributes["database_url"] = settings.database_url
    # The app has already routed logging through loguru; don't let fileConfig replace it
    cfg.attributes["configure_logger"] = False
    return cfg


async def prepare_database(settings: Settings) -> None:
    """Create or migrate the billing schema.

    With DB_DROP_AND_RECREATE the tables are rebuilt from the models (dev and
    tests). Otherwise Alembic migrates to head in a worker thread, since it
    drives a sync driver.
    """
    engine = _get_engine(settings)
    if settings.db_drop_and_recreate:
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.drop_all)
            await conn.run_sync(SQLModel.metadata.create_all)
        return
    await asyncio.to_thread(command.upgrade, alembic_config(settings), "head")


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_or_404(session: AsyncSession, model: type[T], id: Any) -> T:
    result = await session.get(model, id)
    if not result:
        raise ResourceNotFoundError(model.__name__, id)
    return result
