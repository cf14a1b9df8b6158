from __future__ import annotations

from pathlib import Path

from alembic import command, config
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from mindscript.gateway import domain_models  # noqa: F401  (registers tables on SQLModel.metadata)
from mindscript.gateway.config import Settings

ALEMBIC_INI = Path(__file__).parent / "alembic.ini"

_engine: AsyncEngine | None = None


def _get_engine(settings: Settings) -> AsyncEngine:
    global _engine
    if _engine is not None:
        return _engine
    _engine = create_async_engine(
        settings.database_url,
        echo=settings.sqlalchemy_echo,
        pool_pre_ping=True,
    )
    return _engine


def create_session_factory(settings: Settings) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        _get_engine(settings),
        expire_on_commit=False,
        class_=AsyncSession,
    )


async def prepare_database(settings: Settings) -> None:
    """Bring the schema to the requested state.

    - DEV (DB_DROP_AND_RECREATE=1):   drop all tables and recreate from scratch
    - PROD (default):                 run Alembic `upgrade head`
    """
    engine = _get_engine(settings)
    if settings.db_drop_and_recreate:
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.drop_all)
            await conn.run_sync(SQLModel.metadata.create_all)
    else:
        alembic_cfg = config.Config(str(ALEMBIC_INI))
        # Absolute path for migrations, the relative one in the ini breaks outside the repo root
        alembic_cfg.set_main_option("script_location", str(ALEMBIC_INI.parent / "migrations"))
        alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url.replace("%", "%%"))
        command.upgrade(alembic_cfg, "head")


async def close_db() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
