from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from taskhub.core.config import Settings
from taskhub.models import Task  # noqa: F401  registers the table on SQLModel.metadata


def create_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(
        settings.database_url,
        echo=False,
        future=True,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Sessions are opened per store operation; objects stay readable after commit.
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_db_and_tables(engine: AsyncEngine):
    """Create tables directly (tests and local runs; migrations live elsewhere)."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
