"""Database session factory setup."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel


def create_engine_for_url(db_url: str, pool_size: int = 20) -> AsyncEngine:
    """Create async engine with driver-appropriate pool settings.

    Args:
        db_url: Database URL (postgresql+psycopg://... or sqlite+aiosqlite://...)
        pool_size: Maximum number of connections in the pool (PostgreSQL only)

    Returns:
        Configured async engine
    """
    if db_url.startswith("sqlite"):
        if ":memory:" not in db_url:
            return create_async_engine(
                db_url, connect_args={"check_same_thread": False}, echo=False
            )
        # Single shared connection so in-memory databases survive across sessions
        return create_async_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )

    return create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,  # No overflow beyond pool_size
        pool_pre_ping=True,  # Verify connections before using
        echo=False,  # Don't log SQL queries (use structlog instead)
    )


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database connection URL
        pool_size: Maximum number of connections in the pool (default: 20)

    Returns:
        Async session factory for creating database sessions
    """
    engine = create_engine_for_url(db_url, pool_size)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )

    return session_factory


async def init_db(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Create all tables registered with SQLModel metadata (no-op for existing tables)."""
    # Import models so they register with SQLModel metadata
    import mjrelay.models  # noqa: F401

    engine = session_factory.kw["bind"]
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
