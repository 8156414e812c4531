"""
Job State Machine

Lifecycle of an indexing job:

    created -> pending -> running <-> paused
    running -> completed
    pending | running -> failed
    created | pending | running | paused -> cancelled
    failed -> pending (scheduled retry only)

Every transition is persisted together with its queue operation (enqueue or
revoke). When the queue operation fails the previous status is restored.
Each change is published as a job_updated notification.
"""
from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    ExternalServiceException,
    InvalidStateTransitionError,
    JobNotFoundError,
    JobStateError,
    ValidationException,
)
from app.core.logging import get_logger
from app.db.models.indexing_job import IndexingJob, JobStatus, TERMINAL_STATUSES
from app.domain.classifier import EventCategory
from app.domain.services.job_notifications import publish_job_update
from app.domain.services.webhook_registry import release_registration

logger = get_logger(__name__)


JOB_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.CREATED: {JobStatus.PENDING, JobStatus.CANCELLED},
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.PAUSED: {JobStatus.RUNNING, JobStatus.CANCELLED},
    JobStatus.FAILED: {JobStatus.PENDING},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}

# fields restored when a queue operation fails
_SNAPSHOT_FIELDS = ("status", "queue_task_id", "started_at", "completed_at", "next_retry_at")


class JobQueue(Protocol):
    """Work queue used to hand jobs to workers"""

    def enqueue(self, job_id: int, task_id: str) -> None: ...

    def remove(self, task_id: str) -> None: ...

    def enqueue_delivery(self, registration_id: int, payload: dict[str, Any]) -> None: ...


def calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff with a hard upper bound.

        backoff = base_seconds * (2 ** retry_count)

    Capped at max_backoff_seconds without computing huge powers when
    retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # is 2**retry_count >= ceil(max/base)?
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    backoff = base_seconds * (1 << retry_count)
    return min(backoff, max_backoff_seconds)


def _string_list(value: Any, field: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) and v for v in value):
        raise ValidationException(f"'{field}' must be a list of strings", field=field)
    return list(dict.fromkeys(value))


def validate_job_config(config: dict[str, Any]) -> dict[str, Any]:
    """Normalize a job config; raises ValidationException when it cannot run"""
    if not isinstance(config, dict):
        raise ValidationException("Job config must be an object", field="config")

    raw_categories = config.get("categories") or {}
    if not isinstance(raw_categories, dict):
        raise ValidationException("'categories' must be an object", field="categories")
    known = {c.value for c in EventCategory}
    unknown = set(raw_categories) - known
    if unknown:
        raise ValidationException(
            f"Unknown categories: {', '.join(sorted(unknown))}", field="categories"
        )
    categories = {name: bool(raw_categories.get(name, False)) for name in sorted(known)}
    if not any(categories.values()):
        raise ValidationException("At least one category must be enabled", field="categories")

    raw_filters = config.get("filters") or {}
    filters = {
        "accounts": _string_list(raw_filters.get("accounts"), "filters.accounts"),
        "program_ids": _string_list(raw_filters.get("program_ids"), "filters.program_ids"),
    }

    raw_webhook = config.get("webhook") or {}
    webhook = {
        "enabled": bool(raw_webhook.get("enabled", False)),
        "url": raw_webhook.get("url") or settings.WEBHOOK_CALLBACK_URL,
        "secret": raw_webhook.get("secret") or secrets.token_hex(32),
    }
    if webhook["enabled"] and not webhook["url"]:
        raise ValidationException("Webhook callback URL is required", field="webhook.url")

    backfill = bool(config.get("backfill", False))
    if not webhook["enabled"] and not backfill:
        raise ValidationException(
            "Enable webhooks, backfill or both", field="config"
        )
    if backfill and not (filters["accounts"] or filters["program_ids"]):
        raise ValidationException(
            "Backfill needs at least one account or program id", field="filters"
        )

    return {"categories": categories, "filters": filters, "webhook": webhook, "backfill": backfill}


def new_task_id() -> str:
    return uuid.uuid4().hex


class JobStateMachine:
    """Guards, transitions and queue side effects for indexing jobs"""

    def __init__(
        self,
        db: AsyncSession,
        queue: JobQueue,
        *,
        task_id_factory: Callable[[], str] = new_task_id,
    ):
        self.db = db
        self.queue = queue
        self._new_task_id = task_id_factory

    @staticmethod
    def _is_valid_transition(current: JobStatus, target: JobStatus) -> bool:
        return target in JOB_TRANSITIONS.get(current, set())

    def _transition(self, job: IndexingJob, target: JobStatus) -> JobStatus:
        current = job.status
        if not self._is_valid_transition(current, target):
            logger.warning(
                "Invalid job transition attempted",
                extra_data={"job_id": job.id, "from": current.value, "to": target.value},
            )
            raise InvalidStateTransitionError(current.value, target.value, job.id)
        job.status = target
        return current

    async def _load(self, job_id: int, owner_id: str | None = None) -> IndexingJob:
        job = await self.db.get(IndexingJob, job_id, populate_existing=True)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise JobNotFoundError(job_id)
        return job

    async def _finish(self, job: IndexingJob, previous: JobStatus) -> IndexingJob:
        if job.status in TERMINAL_STATUSES:
            await release_registration(self.db, job.webhook_registration_id)
        await self.db.commit()
        await self.db.refresh(job)
        logger.info(
            "Job transitioned",
            extra_data={"job_id": job.id, "from": previous.value, "to": job.status.value},
        )
        await publish_job_update(job, previous.value)
        return job

    async def _commit_with_queue(
        self,
        job: IndexingJob,
        previous: JobStatus,
        snapshot: dict[str, Any],
        queue_op: Callable[[], None],
    ) -> IndexingJob:
        """Persist the transition, then run the queue operation; undo on queue failure"""
        await self.db.commit()
        try:
            queue_op()
        except Exception as exc:
            for name, value in snapshot.items():
                setattr(job, name, value)
            await self.db.commit()
            logger.error(
                "Queue operation failed, job transition rolled back",
                extra_data={"job_id": job.id, "restored_status": previous.value, "error": str(exc)},
                exc_info=True,
            )
            raise ExternalServiceException(
                service_name="task-queue",
                message="Could not update the job queue",
                details={"job_id": job.id},
            ) from exc
        return await self._finish(job, previous)

    @staticmethod
    def _snapshot(job: IndexingJob) -> dict[str, Any]:
        return {name: getattr(job, name) for name in _SNAPSHOT_FIELDS}

    # ------------------------------------------------------------------
    # API-facing operations
    # ------------------------------------------------------------------

    async def create_job(
        self,
        owner_id: str,
        config: dict[str, Any],
        target_database_url: str | None = None,
    ) -> IndexingJob:
        """Create a job, validate it and queue it for a worker"""
        job = IndexingJob(
            owner_id=owner_id,
            status=JobStatus.CREATED,
            progress=0,
            config=validate_job_config(config),
            target_database_url=target_database_url or None,
            checkpoints=[],
            retry_count=0,
            max_retries=settings.JOB_MAX_RETRIES,
        )
        self.db.add(job)
        await self.db.flush()

        snapshot = self._snapshot(job)
        previous = self._transition(job, JobStatus.PENDING)
        task_id = self._new_task_id()
        job.queue_task_id = task_id
        logger.info("Job created", extra_data={"job_id": job.id, "owner_id": owner_id})
        return await self._commit_with_queue(
            job, previous, snapshot, lambda: self.queue.enqueue(job.id, task_id)
        )

    async def get_status(self, job_id: int, owner_id: str) -> IndexingJob:
        return await self._load(job_id, owner_id)

    async def pause(self, job_id: int, owner_id: str | None = None) -> IndexingJob:
        job = await self._load(job_id, owner_id)
        if job.status != JobStatus.RUNNING:
            raise JobStateError(JobStateError.NOT_ACTIVE, job.id, job.status.value)

        snapshot = self._snapshot(job)
        previous = self._transition(job, JobStatus.PAUSED)
        old_task_id = job.queue_task_id
        job.queue_task_id = None
        return await self._commit_with_queue(
            job, previous, snapshot, lambda: self._remove(old_task_id)
        )

    async def resume(self, job_id: int, owner_id: str | None = None) -> IndexingJob:
        job = await self._load(job_id, owner_id)
        if job.status != JobStatus.PAUSED:
            raise JobStateError(JobStateError.NOT_PAUSED, job.id, job.status.value)

        snapshot = self._snapshot(job)
        previous = self._transition(job, JobStatus.RUNNING)
        task_id = self._new_task_id()
        job.queue_task_id = task_id
        return await self._commit_with_queue(
            job, previous, snapshot, lambda: self.queue.enqueue(job.id, task_id)
        )

    async def cancel(self, job_id: int, owner_id: str | None = None) -> IndexingJob:
        job = await self._load(job_id, owner_id)
        if job.is_terminal:
            raise JobStateError(JobStateError.ALREADY_FINISHED, job.id, job.status.value)

        snapshot = self._snapshot(job)
        previous = self._transition(job, JobStatus.CANCELLED)
        old_task_id = job.queue_task_id
        job.queue_task_id = None
        job.completed_at = datetime.utcnow()
        return await self._commit_with_queue(
            job, previous, snapshot, lambda: self._remove(old_task_id)
        )

    def _remove(self, task_id: str | None) -> None:
        if task_id:
            self.queue.remove(task_id)

    # ------------------------------------------------------------------
    # Worker-facing operations
    # ------------------------------------------------------------------

    async def start(self, job_id: int, task_id: str) -> IndexingJob:
        job = await self._load(job_id)
        previous = self._transition(job, JobStatus.RUNNING)
        job.queue_task_id = task_id
        job.started_at = job.started_at or datetime.utcnow()
        job.last_error = None
        return await self._finish(job, previous)

    async def complete(self, job_id: int) -> IndexingJob:
        job = await self._load(job_id)
        previous = self._transition(job, JobStatus.COMPLETED)
        job.progress = 100
        job.queue_task_id = None
        job.completed_at = datetime.utcnow()
        job.next_retry_at = None
        return await self._finish(job, previous)

    async def fail(self, job_id: int, error: str) -> IndexingJob:
        """Fail a job; schedules a retry while the budget lasts"""
        job = await self._load(job_id)
        previous = self._transition(job, JobStatus.FAILED)
        job.last_error = (error or "")[:1000]
        job.queue_task_id = None
        job.completed_at = datetime.utcnow()

        if job.retry_count < job.max_retries:
            backoff = calculate_backoff_seconds(
                job.retry_count,
                base_seconds=settings.JOB_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.JOB_MAX_BACKOFF_SECONDS,
            )
            job.retry_count += 1
            job.next_retry_at = datetime.utcnow() + timedelta(seconds=backoff)
        else:
            job.next_retry_at = None

        logger.error(
            "Job failed",
            extra_data={
                "job_id": job.id,
                "error": job.last_error,
                "retry_count": job.retry_count,
                "next_retry_at": job.next_retry_at.isoformat() if job.next_retry_at else None,
            },
        )
        return await self._finish(job, previous)

    async def update_progress(self, job_id: int, progress: int) -> IndexingJob:
        """Monotonic progress clamped to 0-100; ignored once the job has finished"""
        job = await self._load(job_id)
        if job.is_terminal:
            return job
        clamped = max(0, min(100, int(progress)))
        if clamped <= job.progress:
            return job
        job.progress = clamped
        await self.db.commit()
        await self.db.refresh(job)
        await publish_job_update(job, job.status.value)
        return job

    async def save_checkpoint(self, job_id: int, checkpoint: dict[str, Any]) -> IndexingJob:
        """Append a backfill checkpoint, keeping the newest BACKFILL_MAX_CHECKPOINTS"""
        job = await self._load(job_id)
        entry = dict(checkpoint)
        entry.setdefault("saved_at", datetime.utcnow().isoformat())
        keep = settings.BACKFILL_MAX_CHECKPOINTS
        # reassign so the JSON column is flagged dirty
        job.checkpoints = (list(job.checkpoints or []) + [entry])[-keep:]
        await self.db.commit()
        await self.db.refresh(job)
        return job

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def requeue_failed(self, job_id: int) -> IndexingJob:
        """failed -> pending for a scheduled retry"""
        job = await self._load(job_id)
        snapshot = self._snapshot(job)
        previous = self._transition(job, JobStatus.PENDING)
        task_id = self._new_task_id()
        job.queue_task_id = task_id
        job.next_retry_at = None
        job.completed_at = None
        return await self._commit_with_queue(
            job, previous, snapshot, lambda: self.queue.enqueue(job.id, task_id)
        )

    async def reassign(self, job_id: int) -> IndexingJob:
        """Hand a stalled running job to a new queue entry (resumes from its checkpoint)"""
        job = await self._load(job_id)
        if job.status != JobStatus.RUNNING:
            raise JobStateError(JobStateError.NOT_ACTIVE, job.id, job.status.value)

        snapshot = self._snapshot(job)
        task_id = self._new_task_id()
        job.queue_task_id = task_id
        job.updated_at = datetime.utcnow()
        return await self._commit_with_queue(
            job, JobStatus.RUNNING, snapshot, lambda: self.queue.enqueue(job.id, task_id)
        )
