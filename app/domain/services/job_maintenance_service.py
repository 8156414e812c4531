"""
Job Maintenance Service - periodic recovery, retry and cleanup of jobs.

Run by Celery beat:
- recover_interrupted_jobs: running backfills that stopped making progress
- retry_failed_jobs: failed jobs whose retry time has come
- cleanup_failed_jobs: failed jobs with no retries left, past retention
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import AppException
from app.core.logging import get_logger, log_async_operation
from app.db.models.indexing_job import IndexingJob, JobStatus
from app.domain.services.job_state_machine import JobQueue, JobStateMachine
from app.domain.services.webhook_registry import release_registration

logger = get_logger(__name__)

NO_CHECKPOINT_MESSAGE = "No valid checkpoint found for recovery"

# progress reached once the backfill has finished
_BACKFILL_DONE_PROGRESS = 90


def is_stalled_candidate(job: IndexingJob) -> bool:
    """Running jobs that are still expected to make progress"""
    if not job.backfill_enabled:
        return False
    live = bool(job.webhook_options.get("enabled"))
    return job.progress < _BACKFILL_DONE_PROGRESS or not live


class JobMaintenanceService:
    """Recovery, retry and cleanup passes over the jobs table"""

    def __init__(self, db: AsyncSession, queue: JobQueue):
        self.db = db
        self.state_machine = JobStateMachine(db, queue)

    @log_async_operation("recover_interrupted_jobs")
    async def recover_interrupted_jobs(self, timeout_minutes: int | None = None) -> dict[str, int]:
        """Resume stalled running jobs from their last checkpoint, or fail them"""
        timeout = timeout_minutes or settings.JOB_TIMEOUT_MINUTES
        cutoff = datetime.utcnow() - timedelta(minutes=timeout)
        result = await self.db.execute(
            select(IndexingJob).where(
                IndexingJob.status == JobStatus.RUNNING,
                IndexingJob.updated_at < cutoff,
            )
        )
        jobs = [job for job in result.scalars().all() if is_stalled_candidate(job)]

        resumed = failed = 0
        for job in jobs:
            try:
                if job.last_checkpoint:
                    await self.state_machine.reassign(job.id)
                    resumed += 1
                else:
                    await self.state_machine.fail(job.id, NO_CHECKPOINT_MESSAGE)
                    failed += 1
            except AppException as exc:
                logger.error(
                    "Job recovery failed",
                    extra_data={"job_id": job.id, "error": exc.message},
                )

        stats = {"checked": len(jobs), "resumed": resumed, "failed": failed}
        if jobs:
            logger.info("Interrupted jobs recovered", extra_data=stats)
        return stats

    async def retry_failed_jobs(self) -> dict[str, int]:
        """Move due failed jobs back to pending and queue them again"""
        now = datetime.utcnow()
        result = await self.db.execute(
            select(IndexingJob.id).where(
                IndexingJob.status == JobStatus.FAILED,
                IndexingJob.next_retry_at.is_not(None),
                IndexingJob.next_retry_at <= now,
                IndexingJob.retry_count <= IndexingJob.max_retries,
            )
        )
        job_ids = list(result.scalars().all())

        requeued = 0
        for job_id in job_ids:
            try:
                await self.state_machine.requeue_failed(job_id)
                requeued += 1
            except AppException as exc:
                logger.error(
                    "Failed to requeue job",
                    extra_data={"job_id": job_id, "error": exc.message},
                )

        if job_ids:
            logger.info("Failed jobs requeued", extra_data={"due": len(job_ids), "requeued": requeued})
        return {"due": len(job_ids), "requeued": requeued}

    async def cleanup_failed_jobs(self, retention_days: int | None = None) -> int:
        """Delete failed jobs with no retries left older than the retention window"""
        days = retention_days or settings.FAILED_JOB_RETENTION_DAYS
        cutoff = datetime.utcnow() - timedelta(days=days)
        result = await self.db.execute(
            select(IndexingJob).where(
                IndexingJob.status == JobStatus.FAILED,
                IndexingJob.next_retry_at.is_(None),
                IndexingJob.updated_at < cutoff,
            )
        )
        jobs = list(result.scalars().all())
        registration_ids = {job.webhook_registration_id for job in jobs if job.webhook_registration_id}

        for job in jobs:
            await self.db.delete(job)
        await self.db.flush()
        for registration_id in registration_ids:
            await release_registration(self.db, registration_id)
        await self.db.commit()

        if jobs:
            logger.info("Old failed jobs deleted", extra_data={"count": len(jobs)})
        return len(jobs)
