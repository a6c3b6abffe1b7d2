"""
Store
=====

Async SQLAlchemy engine and session handling.

``Database.transaction()`` is the unit of work used by every write path:
it opens a session, begins a transaction, commits on normal exit, and rolls
back and re-raises on any error. The connection is always returned to the
pool.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base

logger = structlog.get_logger(__name__)


class Database:
    """Owns the engine and session factory for one process."""

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_size: Optional[int] = None,
        engine: Optional[AsyncEngine] = None
    ):
        if engine is None:
            engine_kwargs = {"echo": echo, "pool_pre_ping": True}
            if pool_size and not url.startswith("sqlite"):
                engine_kwargs["pool_size"] = pool_size
            engine = create_async_engine(url, **engine_kwargs)

        self.engine = engine
        # Objects stay readable after commit; async sessions cannot lazy-load.
        self.session_factory = async_sessionmaker(
            self.engine,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session for reads that do not need a transaction of their own."""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Transactional unit of work: commit on success, rollback on error."""
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except Exception as e:
                logger.warning(
                    "Transaction rolled back",
                    error_type=type(e).__name__,
                    error=str(e)
                )
                raise

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def close(self) -> None:
        await self.engine.dispose()
