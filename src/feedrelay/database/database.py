import contextlib
from typing import AsyncIterator

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from feedrelay.main.exceptions import NotReadyException
from feedrelay.main.logging import get_logger

logger = get_logger(__name__)


class DatabaseSessionManager:
    """Engine and session factory for the SQL storage backend.

    Only the scheduler process and the broker consumer talk to the database,
    and each runs its repository calls one transaction at a time, so the pool
    stays small.
    """

    def __init__(self):
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    def init(self, url: str, pool_size: int = 5, max_overflow: int = 5):
        if self._engine is not None:
            logger.debug("Database already initialized, skipping reinitialization")
            return

        self._engine = create_async_engine(
            url, pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True
        )
        # Repositories hand back domain objects, never live ORM rows
        self._sessionmaker = async_sessionmaker(
            bind=self._engine, autobegin=False, expire_on_commit=False
        )
        logger.debug("Database engine created", extra={"pool_size": pool_size})

    async def close(self):
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.debug("Database engine disposed")

    def _require_engine(self) -> AsyncEngine:
        if self._engine is None:
            raise NotReadyException("DatabaseSessionManager is not initialized")
        return self._engine

    @contextlib.asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        async with self._require_engine().begin() as connection:
            yield connection

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        self._require_engine()
        async with self._sessionmaker() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One repository call: commits on exit, rolls back on error."""
        async with self.session() as session, session.begin():
            yield session

    async def ping(self) -> None:
        async with self.connect() as connection:
            await connection.execute(sa.text("SELECT 1"))


sessionmanager = DatabaseSessionManager()


async def create_tables(manager: DatabaseSessionManager = sessionmanager) -> None:
    """Create missing tables; existing ones are left untouched."""
    from feedrelay.database.tables.base_class import Base
    import feedrelay.database.tables.all_tables  # noqa: F401  registers every table

    await manager.ping()
    async with manager.connect() as connection:
        await connection.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready", extra={"tables": sorted(Base.metadata.tables)})
