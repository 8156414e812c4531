"""
Celery Tasks

Worker side of the ingestion core: inbound deliveries, job runs and the
periodic maintenance passes (webhook housekeeping, recovery, retries,
cleanup).
"""
from __future__ import annotations

import asyncio
import threading

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import bind_job_id, get_logger, set_correlation_id
from app.db.database import get_task_session
from app.domain.services.container import get_services
from app.domain.services.job_state_machine import calculate_backoff_seconds

logger = get_logger(__name__)

_loop: asyncio.AbstractEventLoop | None = None
_loop_lock = threading.Lock()


def get_event_loop() -> asyncio.AbstractEventLoop:
    """
    Event loop of this worker process.

    Kept open between tasks so target datastore pools and the Redis client,
    which are bound to the loop that created them, are reused across
    deliveries.
    """
    global _loop
    with _loop_lock:
        if _loop is None or _loop.is_closed():
            _loop = asyncio.new_event_loop()
            asyncio.set_event_loop(_loop)
        return _loop


def run_async(coro):
    """Helper to run async code in sync Celery task"""
    # Set correlation ID for task tracking
    set_correlation_id()
    return get_event_loop().run_until_complete(coro)


@celery_app.task(
    bind=True,
    name="app.workers.tasks.process_webhook_delivery",
    max_retries=settings.JOB_MAX_RETRIES,
)
def process_webhook_delivery(self, registration_id: int, payload: dict):
    """
    Apply one authenticated delivery.

    A failed attempt is logged by the pipeline and retried with exponential
    backoff; every write is an upsert so redelivery is safe.
    """
    attempt = self.request.retries + 1

    async def _process():
        async with get_task_session() as db:
            return await get_services().pipeline(db).process_delivery(
                registration_id, payload, attempt=attempt
            )

    try:
        return run_async(_process())
    except Exception as exc:
        countdown = calculate_backoff_seconds(
            self.request.retries,
            base_seconds=settings.JOB_RETRY_BASE_SECONDS,
            max_backoff_seconds=settings.JOB_MAX_BACKOFF_SECONDS,
        )
        logger.warning(
            "Delivery processing will be retried",
            extra_data={
                "registration_id": registration_id,
                "attempt": attempt,
                "countdown_seconds": countdown,
                "error": str(exc),
            },
        )
        raise self.retry(exc=exc, countdown=countdown)


@celery_app.task(name="app.workers.tasks.run_indexing_job")
def run_indexing_job(job_id: int, task_id: str):
    """Start or resume a job; stale queue entries are skipped"""

    async def _run():
        bind_job_id(job_id)
        try:
            async with get_task_session() as db:
                outcome = await get_services().pipeline(db).run_job(job_id, task_id)
                return {"job_id": job_id, "outcome": outcome}
        finally:
            bind_job_id(None)

    return run_async(_run())


@celery_app.task(name="app.workers.tasks.cleanup_webhooks")
def cleanup_webhooks(retention_hours: int | None = None):
    """Reconcile local webhook registrations with the provider"""

    async def _cleanup():
        async with get_task_session() as db:
            return await get_services().registry(db).housekeeping(
                retention_hours or settings.WEBHOOK_INACTIVE_RETENTION_HOURS
            )

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.recover_interrupted_jobs")
def recover_interrupted_jobs():
    """Resume or fail running jobs that stopped making progress"""

    async def _recover():
        async with get_task_session() as db:
            return await get_services().maintenance(db).recover_interrupted_jobs()

    return run_async(_recover())


@celery_app.task(name="app.workers.tasks.retry_failed_jobs")
def retry_failed_jobs():
    """Requeue failed jobs whose retry time has come"""

    async def _retry():
        async with get_task_session() as db:
            return await get_services().maintenance(db).retry_failed_jobs()

    return run_async(_retry())


@celery_app.task(name="app.workers.tasks.cleanup_failed_jobs")
def cleanup_failed_jobs(days: int | None = None):
    """Delete failed jobs with no retries left past the retention window"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await get_services().maintenance(db).cleanup_failed_jobs(days)
            logger.info(
                "Cleaned up failed jobs",
                extra_data={"deleted": deleted, "retention_days": days or settings.FAILED_JOB_RETENTION_DAYS},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
