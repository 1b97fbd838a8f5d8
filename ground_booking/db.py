import logging
from contextlib import asynccontextmanager

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .config import DATABASE_URL
from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)

SessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db():
    async with SessionLocal() as session:
        yield session


@asynccontextmanager
async def transaction(db: AsyncSession):
    """
    Commits the session's current unit of work on exit, rolls it back on error.
    Driver-level connection failures come out as StoreUnavailable.
    """
    try:
        yield db
        await db.commit()
    except (OperationalError, InterfaceError) as e:
        await db.rollback()
        logger.error("store unavailable: %s", e)
        raise StoreUnavailable("Booking store is unavailable, please retry") from e
    except Exception:
        await db.rollback()
        raise
