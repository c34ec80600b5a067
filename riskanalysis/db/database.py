"""
RiskAnalysis - Database Configuration
======================================
Database connection with SQLAlchemy async support.
Supports both PostgreSQL (production) and SQLite (development).
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from riskanalysis.config import settings

DATABASE_URL = settings.database_url

engine_kwargs = {
    "echo": settings.debug,
}

# PostgreSQL-specific settings
if DATABASE_URL.startswith("postgresql"):
    engine_kwargs.update({
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 1800,  # Recycle connections after 30 minutes
    })
# SQLite-specific settings - use NullPool to avoid connection sharing issues
elif "sqlite" in DATABASE_URL:
    from sqlalchemy.pool import NullPool
    engine_kwargs.update({
        "poolclass": NullPool,
        "connect_args": {"check_same_thread": False},
    })

engine = create_async_engine(DATABASE_URL, **engine_kwargs)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


async def init_db():
    """Initialize database tables."""
    # Register models on the metadata
    from riskanalysis.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connections."""
    await engine.dispose()


async def check_db_health() -> dict:
    """
    Check database health.

    Returns:
        dict with connection status
    """
    try:
        async with AsyncSessionLocal() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()

        return {
            "connected": True,
            "database_type": "postgresql" if "postgresql" in DATABASE_URL else "sqlite",
        }

    except Exception as e:
        return {
            "connected": False,
            "error": str(e)
        }
