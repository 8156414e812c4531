"""
Database Connection and Session Management

The main database holds jobs, webhook registrations and the delivery log.
Category tables live on each job's target datastore (see app.db.datastore).
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings


def build_engine(url: str, **pool_options) -> AsyncEngine:
    """Create an async engine; pool options are skipped for SQLite"""
    options = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options.update(pool_options)
    return create_async_engine(url, **options)


engine = build_engine(settings.DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Database session for Celery tasks.

    Workers keep one event loop per process (see app.workers.tasks), so the
    module-level engine and its pool are shared by every task of the process.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
