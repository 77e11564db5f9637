"""
group_tiers/database.py
Database configuration and transaction boundary
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from group_tiers.config.settings import settings
from group_tiers.errors import APIError, ConflictError, ErrorCode, UnavailableError
from group_tiers.orm.base import Base
import group_tiers.orm  # noqa: F401  registers every model on Base.metadata

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL

if "sqlite" in DATABASE_URL.lower():
    engine = create_async_engine(
        DATABASE_URL,
        echo=False,
        future=True,
        pool_pre_ping=True,
        connect_args={
            "timeout": 30.0,   # SQLite busy timeout in seconds
        }
    )
else:
    engine = create_async_engine(
        DATABASE_URL,
        echo=False,
        future=True,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_recycle=3600,
    )

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting async database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def transaction(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    One unit of work: commit on success, full rollback on any error.

    Constraint violations mean a concurrent writer won the race and are
    reported as Conflict; any other store failure is reported as Unavailable.
    """
    try:
        yield db
        await db.commit()
    except APIError:
        await db.rollback()
        raise
    except IntegrityError as e:
        await db.rollback()
        logger.warning(f"Integrity violation rolled back: {e.orig}")
        raise ConflictError(
            "The change conflicts with a concurrent update. Reload and try again.",
            code=ErrorCode.CONCURRENT_MODIFICATION
        )
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Transaction failed and was rolled back: {type(e).__name__}: {e}")
        raise UnavailableError()
    except BaseException:
        await db.rollback()
        raise


async def init_db():
    """Create all tables if missing. Idempotent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✓ Database schema ready")


async def close_db():
    await engine.dispose()
