"""
Target Datastores

Every job writes its category records to a target database. One capped
engine (connection pool) is kept per target URL and reused by all
deliveries and backfills for that target. ``None`` means the main database.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.config import normalize_database_url
from app.core.logging import get_logger
from app.db.database import build_engine
from app.db.models.category_records import CategoryBase

logger = get_logger(__name__)


class TargetDatastoreRegistry:
    """Per-target engine cache with idempotent category-table bootstrap"""

    def __init__(
        self,
        default_engine: AsyncEngine,
        *,
        pool_size: int = 5,
        max_overflow: int = 5,
    ):
        self._default_engine = default_engine
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._engines: dict[str, AsyncEngine] = {}
        self._session_makers: dict[str, async_sessionmaker[AsyncSession]] = {}

    def _key(self, url: str | None) -> str:
        return normalize_database_url(url) if url else ""

    def engine_for(self, url: str | None) -> AsyncEngine:
        key = self._key(url)
        if not key:
            return self._default_engine
        engine = self._engines.get(key)
        if engine is None:
            engine = build_engine(key, pool_size=self._pool_size, max_overflow=self._max_overflow)
            self._engines[key] = engine
            logger.info(
                "Target datastore pool created",
                extra_data={"dialect": engine.dialect.name, "pool_size": self._pool_size},
            )
        return engine

    def _session_maker(self, url: str | None) -> async_sessionmaker[AsyncSession]:
        key = self._key(url)
        maker = self._session_makers.get(key)
        if maker is None:
            maker = async_sessionmaker(
                bind=self.engine_for(url),
                class_=AsyncSession,
                expire_on_commit=False,
            )
            self._session_makers[key] = maker
        return maker

    @asynccontextmanager
    async def session(self, url: str | None) -> AsyncIterator[AsyncSession]:
        """Session on the target datastore; the caller owns the transaction"""
        async with self._session_maker(url)() as session:
            yield session

    async def bootstrap(self, url: str | None) -> None:
        """Create category tables if they do not exist yet"""
        engine = self.engine_for(url)
        async with engine.begin() as conn:
            await conn.run_sync(CategoryBase.metadata.create_all, checkfirst=True)
        logger.debug("Category tables bootstrapped", extra_data={"dialect": engine.dialect.name})

    async def dispose(self) -> None:
        """Close every target pool (the main engine is owned elsewhere)"""
        for engine in self._engines.values():
            await engine.dispose()
        self._engines.clear()
        self._session_makers.clear()
