"""
Service Container

Process-wide services (rate limiter, circuit breakers, provider client,
target datastore pools, queue adapter) are built once here and handed to the
per-session services. Tests construct their own container or services.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from app.core.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from app.core.config import Settings, settings as default_settings
from app.core.logging import get_logger
from app.core.rate_limiter import RateLimitConfig, RateLimiter
from app.db.datastore import TargetDatastoreRegistry
from app.domain.services.ingestion_pipeline import IngestionPipeline
from app.domain.services.job_maintenance_service import JobMaintenanceService
from app.domain.services.job_state_machine import JobQueue, JobStateMachine
from app.domain.services.provider_client import ProviderClient
from app.domain.services.webhook_registry import WebhookRegistry

logger = get_logger(__name__)


class ServiceContainer:
    """Explicitly constructed long-lived services"""

    def __init__(
        self,
        config: Settings,
        *,
        engine: AsyncEngine,
        queue: JobQueue,
        rate_limiter: RateLimiter | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        provider: ProviderClient | None = None,
    ):
        self.settings = config
        self.queue = queue
        self.rate_limiter = rate_limiter or RateLimiter(
            RateLimitConfig(
                tokens_per_interval=config.PROVIDER_RATE_LIMIT_TOKENS,
                interval_seconds=config.PROVIDER_RATE_LIMIT_INTERVAL_SECONDS,
            )
        )
        self.breakers = breakers or CircuitBreakerRegistry(
            CircuitBreakerConfig(
                failure_threshold=config.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                reset_timeout_seconds=config.CIRCUIT_BREAKER_RESET_TIMEOUT_SECONDS,
                max_retries=config.CIRCUIT_BREAKER_MAX_RETRIES,
                retry_delay_seconds=config.CIRCUIT_BREAKER_RETRY_DELAY_SECONDS,
                exponential_backoff=config.CIRCUIT_BREAKER_EXPONENTIAL_BACKOFF,
            )
        )
        self.provider = provider or ProviderClient(
            config.PROVIDER_API_URL,
            config.PROVIDER_API_KEY,
            rate_limiter=self.rate_limiter,
            circuit_breaker=self.breakers.get(config.PROVIDER_SERVICE_NAME),
            rate_limit_key=config.PROVIDER_SERVICE_NAME,
            timeout_seconds=config.PROVIDER_TIMEOUT_SECONDS,
            webhook_type=config.PROVIDER_WEBHOOK_TYPE,
        )
        self.datastores = TargetDatastoreRegistry(
            engine,
            pool_size=config.TARGET_POOL_SIZE,
            max_overflow=config.TARGET_MAX_OVERFLOW,
        )

    def state_machine(self, db: AsyncSession) -> JobStateMachine:
        return JobStateMachine(db, self.queue)

    def registry(self, db: AsyncSession) -> WebhookRegistry:
        return WebhookRegistry(db, self.provider)

    def pipeline(self, db: AsyncSession) -> IngestionPipeline:
        return IngestionPipeline(
            db,
            queue=self.queue,
            datastores=self.datastores,
            provider=self.provider,
        )

    def maintenance(self, db: AsyncSession) -> JobMaintenanceService:
        return JobMaintenanceService(db, self.queue)

    async def close(self) -> None:
        await self.datastores.dispose()


_container: ServiceContainer | None = None


def get_services() -> ServiceContainer:
    """The process container, built on first use with the Celery queue"""
    global _container
    if _container is None:
        from app.db.database import engine
        from app.workers.queue import CeleryJobQueue

        _container = ServiceContainer(default_settings, engine=engine, queue=CeleryJobQueue())
        logger.info(
            "Service container initialized",
            extra_data={"provider_url": default_settings.PROVIDER_API_URL},
        )
    return _container


def set_services(container: ServiceContainer | None) -> None:
    """Replace the process container (tests, shutdown)"""
    global _container
    _container = container
