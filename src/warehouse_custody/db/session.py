"""Engine and session factory helpers."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from warehouse_custody.config import CustodyConfig
from warehouse_custody.db.models import Base


def create_engine(config: CustodyConfig, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine for ``config.database_url``."""
    return create_async_engine(config.database_url, echo=echo)


def create_session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Session factory whose objects stay readable after commit."""
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create all custody tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
