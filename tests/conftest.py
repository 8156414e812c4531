"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- Fake external services (provider API, job queue, Redis)
- Service container wired to the fakes
- Test data factories
"""
# settings are read at import time, so the environment is prepared first
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PROVIDER_API_KEY", "test-provider-key")
os.environ.setdefault("WEBHOOK_CALLBACK_URL", "https://indexer.test/api/webhooks/provider")
os.environ.setdefault("SERVICE_API_KEY", "test-service-key")

import pytest
from typing import Any, AsyncGenerator
from unittest.mock import patch

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.dependencies.services import get_service_container
from app.core.config import settings
from app.core.exceptions import ProviderQuotaExceededError
from app.db.database import Base, get_db
from app.db.models.category_records import CategoryBase
from app.db.models.indexing_job import IndexingJob, JobStatus
from app.db.models.webhook_registration import RegistrationStatus, WebhookRegistration
from app.domain.services.container import ServiceContainer
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_SERVICE_API_KEY = "test-service-key"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine with job and category tables"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(CategoryBase.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(CategoryBase.metadata.drop_all)
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fake External Services
# ============================================================================


class FakeQueue:
    """In-memory job queue; set fail_enqueue / fail_remove to simulate a broker outage"""

    def __init__(self) -> None:
        self.enqueued: list[tuple[int, str]] = []
        self.removed: list[str] = []
        self.deliveries: list[tuple[int, dict]] = []
        self.fail_enqueue = False
        self.fail_remove = False

    def enqueue(self, job_id: int, task_id: str) -> None:
        if self.fail_enqueue:
            raise ConnectionError("broker unavailable")
        self.enqueued.append((job_id, task_id))

    def remove(self, task_id: str) -> None:
        if self.fail_remove:
            raise ConnectionError("broker unavailable")
        self.removed.append(task_id)

    def enqueue_delivery(self, registration_id: int, payload: dict) -> None:
        if self.fail_enqueue:
            raise ConnectionError("broker unavailable")
        self.deliveries.append((registration_id, payload))

    def last_task_id(self, job_id: int) -> str:
        return [task_id for jid, task_id in self.enqueued if jid == job_id][-1]


class FakeProvider:
    """
    Stand-in for ProviderClient.

    quota_failures: number of create_webhook calls refused with "webhook limit".
    pages: address -> list of transaction pages returned by fetch_transactions.
    """

    def __init__(self) -> None:
        self.webhooks: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []
        self.deleted: list[str] = []
        self.fetches: list[tuple[str, int, str | None]] = []
        self.pages: dict[str, list[list[dict[str, Any]]]] = {}
        self.quota_failures = 0
        self.fetch_errors: list[Exception] = []
        self.list_calls = 0
        self._counter = 0

    def add_remote(self, webhook_id: str) -> None:
        self.webhooks[webhook_id] = {"webhookID": webhook_id}

    async def create_webhook(self, **request: Any) -> str:
        if self.quota_failures > 0:
            self.quota_failures -= 1
            raise ProviderQuotaExceededError(upstream_status=400)
        self._counter += 1
        webhook_id = f"wh-{self._counter}"
        self.created.append(request)
        self.webhooks[webhook_id] = {"webhookID": webhook_id, **request}
        return webhook_id

    async def list_webhooks(self) -> list[dict[str, Any]]:
        self.list_calls += 1
        return list(self.webhooks.values())

    async def delete_webhook(self, provider_webhook_id: str) -> bool:
        self.deleted.append(provider_webhook_id)
        return self.webhooks.pop(provider_webhook_id, None) is not None

    async def fetch_transactions(
        self, address: str, *, limit: int = 100, before: str | None = None
    ) -> list[dict[str, Any]]:
        self.fetches.append((address, limit, before))
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        pages = self.pages.get(address) or []
        return pages.pop(0) if pages else []


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def services(async_engine, fake_queue, fake_provider) -> ServiceContainer:
    """Service container wired to the test database and the fakes"""
    return ServiceContainer(
        settings,
        engine=async_engine,
        queue=fake_queue,
        provider=fake_provider,
    )


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def pipeline(db_session, services, sleeps):
    """Ingestion pipeline that records sleeps instead of waiting"""
    from app.domain.services.ingestion_pipeline import IngestionPipeline

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return IngestionPipeline(
        db_session,
        queue=services.queue,
        datastores=services.datastores,
        provider=services.provider,
        sleep=_sleep,
    )


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, services: ServiceContainer):
    """Create test client with database and service overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_service_container] = lambda: services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def api_headers() -> dict[str, str]:
    return {"X-API-Key": TEST_SERVICE_API_KEY}


@pytest.fixture(autouse=True)
def service_api_key():
    with patch.object(settings, "SERVICE_API_KEY", TEST_SERVICE_API_KEY):
        yield


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FakeRedis:
    """In-memory Redis replacement with the commands the app uses."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._lists: dict[str, list[str]] = {}
        self.published: list[tuple[str, str]] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        return True

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1

    async def lpush(self, key: str, *values: str) -> int:
        items = self._lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def ltrim(self, key: str, start: int, end: int) -> None:
        items = self._lists.get(key, [])
        self._lists[key] = items[start:end + 1]

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self._lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._lists.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._lists.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Test Data Factories
# ============================================================================

NFT_PROGRAM = "M2mx93ekt1fmXSVkTrUL9xVFHkmME8HTUi5Cyc5aF7K"
DEX_PROGRAM = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
LENDING_PROGRAM = "So1endDq2YkqhipRh3WViPa8hdiSpxWy6z3Z6tMCpAo"


def job_config(
    *,
    categories: dict[str, bool] | None = None,
    accounts: list[str] | None = None,
    program_ids: list[str] | None = None,
    webhook: bool = True,
    backfill: bool = False,
    secret: str = "job-secret",
) -> dict[str, Any]:
    return {
        "categories": categories or {"nft_bids": True, "nft_prices": True},
        "filters": {"accounts": accounts or [], "program_ids": program_ids or []},
        "webhook": {"enabled": webhook, "url": "https://indexer.test/api/webhooks/provider", "secret": secret},
        "backfill": backfill,
    }


@pytest.fixture
def job_factory(db_session: AsyncSession):
    """Insert a job directly in a given status"""
    async def _create_job(
        *,
        owner_id: str = "owner-1",
        status: JobStatus = JobStatus.RUNNING,
        config: dict[str, Any] | None = None,
        registration: WebhookRegistration | None = None,
        queue_task_id: str | None = "task-1",
        **fields: Any,
    ) -> IndexingJob:
        job = IndexingJob(
            owner_id=owner_id,
            status=status,
            config=config or job_config(),
            webhook_registration_id=registration.id if registration else None,
            queue_task_id=queue_task_id,
            checkpoints=[],
            **fields,
        )
        db_session.add(job)
        await db_session.commit()
        await db_session.refresh(job)
        return job

    return _create_job


@pytest.fixture
def registration_factory(db_session: AsyncSession):
    """Insert a webhook registration"""
    async def _create_registration(
        *,
        provider_webhook_id: str = "wh-existing",
        owner_id: str = "owner-1",
        secret: str = "job-secret",
        accounts: list[str] | None = None,
        program_ids: list[str] | None = None,
        status: RegistrationStatus = RegistrationStatus.ACTIVE,
        **fields: Any,
    ) -> WebhookRegistration:
        registration = WebhookRegistration(
            provider_webhook_id=provider_webhook_id,
            owner_id=owner_id,
            callback_url="https://indexer.test/api/webhooks/provider",
            secret=secret,
            account_addresses=accounts or [],
            program_ids=program_ids or [],
            transaction_types=["NFT_SALE"],
            status=status,
            **fields,
        )
        db_session.add(registration)
        await db_session.commit()
        await db_session.refresh(registration)
        return registration

    return _create_registration
