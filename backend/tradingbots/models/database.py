"""Database configuration and session management."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

DATABASE_URL = "sqlite+aiosqlite:///./tradingbots.db"

engine = create_async_engine(DATABASE_URL, echo=False)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


def create_session_maker(database_url: str) -> async_sessionmaker:
    """Build a session maker bound to a dedicated engine.

    Args:
        database_url: SQLAlchemy async database URL

    Returns:
        Session maker whose engine is reachable via ``.kw["bind"]``
    """
    bound_engine = create_async_engine(database_url, echo=False)
    return async_sessionmaker(bound_engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(target_engine: Optional[AsyncEngine] = None):
    """Initialize the database, creating all tables."""
    async with (target_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
