import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from predictgate.db.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns the async engine and hands out transactional sessions."""

    def __init__(self, url: str, *, echo: bool = False):
        engine_kwargs = {"echo": echo}
        if not url.startswith("sqlite"):
            engine_kwargs.update(pool_recycle=3600, pool_pre_ping=True)
        self.url = url
        self.engine = create_async_engine(url, **engine_kwargs)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Commit when the block exits cleanly, roll back on any error."""
        session = self.Session()
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            logger.error("Database error, rolling back: %s", e)
            await session.rollback()
            raise
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def dispose(self) -> None:
        await self.engine.dispose()
