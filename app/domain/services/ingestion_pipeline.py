"""
Ingestion Pipeline

Two entry points, both driven by Celery tasks:

- process_delivery: apply one authenticated inbound webhook delivery to every
  running job attached to its registration.
- run_job: worker side of a job. Starts it, makes sure a webhook registration
  exists when webhooks are enabled, and runs the historical backfill.

Category writes of one delivery share a single transaction per target
datastore, covering every job that writes there. A backfill page is one
transaction for its job.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    DataIntegrityFailure,
    JobFailure,
    MalformedEventError,
    RateLimitedError,
)
from app.core.logging import get_logger
from app.db.datastore import TargetDatastoreRegistry
from app.db.models.indexing_job import IndexingJob, JobStatus
from app.db.models.webhook_delivery_log import DeliveryLogStatus, WebhookDeliveryLog
from app.db.models.webhook_registration import RegistrationStatus, WebhookRegistration
from app.domain.classifier import EventCategory, classify
from app.domain.events import EventEnvelope, normalize
from app.domain.services.job_state_machine import JobQueue, JobStateMachine
from app.domain.services.provider_client import ProviderClient
from app.domain.services.webhook_registry import WebhookRegistry
from app.domain.upserters import apply_envelope, set_indexer_state

logger = get_logger(__name__)

_MAX_ERROR_CHARS = 2000


def enabled_categories(job: IndexingJob) -> set[EventCategory]:
    return {EventCategory(name) for name, on in job.categories.items() if on}


def job_filter_set(job: IndexingJob) -> set[str]:
    filters = job.filters
    return set(filters.get("accounts") or []) | set(filters.get("program_ids") or [])


def normalize_events(raw_events: Iterable[Any]) -> list[EventEnvelope]:
    """Normalize events, dropping the ones that cannot be identified"""
    envelopes = []
    for raw in raw_events:
        try:
            envelopes.append(normalize(raw))
        except MalformedEventError as exc:
            logger.warning("Dropping malformed event", extra_data={"error": exc.message})
    return envelopes


def backfill_state_key(job_id: int) -> str:
    return f"job:{job_id}:last_signature"


def _group_by_target(jobs: list[IndexingJob]) -> list[list[IndexingJob]]:
    groups: dict[str | None, list[IndexingJob]] = {}
    for job in jobs:
        groups.setdefault(job.target_database_url or None, []).append(job)
    return list(groups.values())


def job_failure(job_id: int, exc: Exception) -> JobFailure:
    """Failure stored on the job; only curated application messages are kept"""
    if isinstance(exc, JobFailure):
        return exc
    if isinstance(exc, AppException):
        return JobFailure(job_id, exc.message)
    return JobFailure(job_id, "Job failed: internal error")


class IngestionPipeline:
    """Applies deliveries and runs jobs against their target datastores"""

    def __init__(
        self,
        db: AsyncSession,
        *,
        queue: JobQueue,
        datastores: TargetDatastoreRegistry,
        provider: ProviderClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.datastores = datastores
        self.provider = provider
        self.state_machine = JobStateMachine(db, queue)
        self.registry = WebhookRegistry(db, provider)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # shared write path
    # ------------------------------------------------------------------

    async def _write_job(
        self,
        session: AsyncSession,
        job: IndexingJob,
        envelopes: list[EventEnvelope],
        *,
        last_signature: str | None = None,
        filtered: bool = True,
    ) -> int:
        categories = enabled_categories(job)
        # history pages are fetched per address and already match the filters
        filters = job_filter_set(job) if filtered else set()
        written = 0
        for envelope in envelopes:
            if filters and not envelope.touches(filters):
                continue
            matched = [c for c in classify(envelope) if c in categories]
            if not matched:
                logger.debug(
                    "Event matches no enabled category",
                    extra_data={"job_id": job.id, "signature": envelope.signature, "type": envelope.type},
                )
                continue
            counts = await apply_envelope(session, envelope, matched)
            written += sum(counts.values())
        if last_signature:
            await set_indexer_state(session, backfill_state_key(job.id), last_signature)
        return written

    async def _apply_to_jobs(
        self,
        jobs: list[IndexingJob],
        envelopes: list[EventEnvelope],
        *,
        last_signature: str | None = None,
        filtered: bool = True,
    ) -> int:
        """Upsert matching events for jobs sharing a target, in one transaction"""
        target = jobs[0].target_database_url
        try:
            async with self.datastores.session(target) as session:
                async with session.begin():
                    written = 0
                    for job in jobs:
                        written += await self._write_job(
                            session, job, envelopes, last_signature=last_signature, filtered=filtered
                        )
        except SQLAlchemyError as exc:
            raise DataIntegrityFailure(
                "Failed to write category records",
                details={"job_ids": [job.id for job in jobs], "error": str(exc)[:500]},
            ) from exc
        return written

    # ------------------------------------------------------------------
    # inbound deliveries
    # ------------------------------------------------------------------

    async def _log_delivery(
        self,
        registration_id: int,
        status: DeliveryLogStatus,
        payload: dict[str, Any],
        attempt: int,
        error: str | None = None,
    ) -> None:
        self.db.add(WebhookDeliveryLog(
            registration_id=registration_id,
            status=status,
            attempt=attempt,
            payload=payload,
            error=error[:_MAX_ERROR_CHARS] if error else None,
        ))

    async def _running_jobs(self, registration_id: int) -> list[IndexingJob]:
        result = await self.db.execute(
            select(IndexingJob)
            .where(
                IndexingJob.webhook_registration_id == registration_id,
                IndexingJob.status == JobStatus.RUNNING,
            )
            .order_by(IndexingJob.id)
        )
        return list(result.scalars().all())

    async def process_delivery(
        self,
        registration_id: int,
        payload: dict[str, Any],
        attempt: int = 1,
    ) -> dict[str, Any]:
        """
        Apply an authenticated delivery.

        Failures are logged as a "failed" delivery row and re-raised so the
        queue redelivers; redelivery is safe because every write is an upsert.
        """
        registration = await self.db.get(WebhookRegistration, registration_id)
        if registration is None:
            logger.warning("Delivery for unknown registration dropped", extra_data={"registration_id": registration_id})
            return {"status": "dropped", "jobs": 0, "records": 0}

        jobs = await self._running_jobs(registration_id)
        if not jobs:
            await self._log_delivery(registration_id, DeliveryLogStatus.NOTIFICATION, payload, attempt)
            await self.db.commit()
            logger.info("Delivery recorded without a running job", extra_data={"registration_id": registration_id})
            return {"status": "notification", "jobs": 0, "records": 0}

        try:
            envelopes = normalize_events(payload.get("events") or [])
            written = 0
            for group in _group_by_target(jobs):
                written += await self._apply_to_jobs(group, envelopes)

            registration.updated_at = datetime.utcnow()
            await self._log_delivery(registration_id, DeliveryLogStatus.SUCCESS, payload, attempt)
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            await self._log_delivery(
                registration_id, DeliveryLogStatus.FAILED, payload, attempt, error=str(exc) or type(exc).__name__
            )
            await self.db.commit()
            logger.error(
                "Delivery processing failed",
                extra_data={"registration_id": registration_id, "attempt": attempt, "error": str(exc)},
                exc_info=True,
            )
            raise

        logger.info(
            "Delivery applied",
            extra_data={
                "registration_id": registration_id,
                "events": len(envelopes),
                "jobs": len(jobs),
                "records": written,
            },
        )
        return {"status": "success", "jobs": len(jobs), "records": written}

    # ------------------------------------------------------------------
    # job execution
    # ------------------------------------------------------------------

    async def _reload(self, job_id: int) -> IndexingJob | None:
        return await self.db.get(IndexingJob, job_id, populate_existing=True)

    async def _ensure_registration(self, job: IndexingJob) -> None:
        if job.webhook_registration_id is not None:
            current = await self.db.get(WebhookRegistration, job.webhook_registration_id)
            if current is not None and current.status == RegistrationStatus.ACTIVE:
                return

        options = job.webhook_options
        registration = await self.registry.create(
            owner_id=job.owner_id,
            filters=job.filters,
            callback_url=options["url"],
            secret=options["secret"],
            transaction_types=settings.webhook_transaction_types,
        )
        job.webhook_registration_id = registration.id
        await self.db.commit()

    async def run_job(self, job_id: int, task_id: str) -> str:
        """
        Worker entry point; returns the outcome.

        Only a pending job, or a running job whose queue entry is task_id,
        is worked on. Anything else is a stale or duplicate queue entry.
        """
        job = await self._reload(job_id)
        if job is None:
            logger.warning("Queued job no longer exists", extra_data={"job_id": job_id})
            return "missing"

        if job.status == JobStatus.PENDING:
            job = await self.state_machine.start(job_id, task_id)
        elif job.status != JobStatus.RUNNING or job.queue_task_id != task_id:
            logger.info(
                "Skipping stale queue entry",
                extra_data={"job_id": job_id, "status": job.status.value, "task_id": task_id},
            )
            return "skipped"

        try:
            await self.datastores.bootstrap(job.target_database_url)
            webhook_enabled = bool(job.webhook_options.get("enabled"))
            if webhook_enabled:
                await self._ensure_registration(job)
            await self.state_machine.update_progress(job_id, 50)

            if job.backfill_enabled:
                finished = await self._backfill(job_id, task_id)
                if not finished:
                    return "stopped"

            if webhook_enabled:
                logger.info("Job live on webhook deliveries", extra_data={"job_id": job_id})
                return "running"

            await self.state_machine.complete(job_id)
            return "completed"
        except Exception as exc:
            await self.db.rollback()
            failure = job_failure(job_id, exc)
            current = await self._reload(job_id)
            if current is not None and current.status in (JobStatus.PENDING, JobStatus.RUNNING):
                await self.state_machine.fail(job_id, failure.message)
            logger.error(
                "Job run failed",
                extra_data={"job_id": job_id, "error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )
            return "failed"

    async def _still_owned(self, job_id: int, task_id: str) -> bool:
        job = await self._reload(job_id)
        return job is not None and job.status == JobStatus.RUNNING and job.queue_task_id == task_id

    async def _backfill(self, job_id: int, task_id: str) -> bool:
        """
        Page through history for every program id, then every account.

        Returns False when the job was paused or cancelled in between (a
        checkpoint is saved first so a resume continues from there).
        """
        job = await self._reload(job_id)
        filters = job.filters
        targets = list(filters.get("program_ids") or []) + list(filters.get("accounts") or [])
        page_size = settings.BACKFILL_PAGE_SIZE
        limit = settings.BACKFILL_MAX_TRANSACTIONS
        interval = settings.BACKFILL_CHECKPOINT_INTERVAL

        checkpoint = job.last_checkpoint or {}
        start_index = int(checkpoint.get("target_index", 0))
        before = checkpoint.get("before")
        processed = int(checkpoint.get("processed", 0))

        logger.info(
            "Backfill started",
            extra_data={"job_id": job_id, "targets": len(targets), "resume_from": checkpoint or None},
        )

        for index in range(start_index, len(targets)):
            target = targets[index]
            cursor = before if index == start_index else None
            while processed < limit:
                if not await self._still_owned(job_id, task_id):
                    await self.state_machine.save_checkpoint(
                        job_id, {"target_index": index, "before": cursor, "processed": processed}
                    )
                    logger.info("Backfill stopped", extra_data={"job_id": job_id, "processed": processed})
                    return False

                try:
                    page = await self.provider.fetch_transactions(
                        target, limit=min(page_size, limit - processed), before=cursor
                    )
                except RateLimitedError as exc:
                    await self._sleep(exc.retry_after_seconds)
                    continue

                if not page:
                    break

                cursor = page[-1].get("signature") or cursor
                job = await self._reload(job_id)
                await self._apply_to_jobs(
                    [job], normalize_events(page), last_signature=cursor, filtered=False
                )

                previous = processed
                processed += len(page)
                await self.state_machine.update_progress(job_id, 50 + (40 * processed) // limit)
                if processed // interval > previous // interval:
                    await self.state_machine.save_checkpoint(
                        job_id, {"target_index": index, "before": cursor, "processed": processed}
                    )

                if len(page) < page_size:
                    break
            if processed >= limit:
                break

        await self.state_machine.update_progress(job_id, 90)
        logger.info("Backfill finished", extra_data={"job_id": job_id, "processed": processed})
        return True
