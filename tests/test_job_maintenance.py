"""
Tests for periodic job maintenance: recovery, retries, cleanup
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update

from app.db.models.indexing_job import IndexingJob, JobStatus
from app.db.models.webhook_registration import RegistrationStatus
from app.domain.services.job_maintenance_service import (
    NO_CHECKPOINT_MESSAGE,
    JobMaintenanceService,
    is_stalled_candidate,
)
from tests.conftest import job_config

BACKFILL = job_config(program_ids=["prog-1"], webhook=False, backfill=True)
LIVE_BACKFILL = job_config(program_ids=["prog-1"], webhook=True, backfill=True)


@pytest.fixture
def maintenance(db_session, fake_queue) -> JobMaintenanceService:
    return JobMaintenanceService(db_session, fake_queue)


async def _age(db_session, job, **delta):
    await db_session.execute(
        update(IndexingJob)
        .where(IndexingJob.id == job.id)
        .values(updated_at=datetime.utcnow() - timedelta(**delta))
    )
    await db_session.commit()


class TestStalledCandidate:

    @pytest.mark.unit
    def test_webhook_only_job_never_stalls(self):
        assert not is_stalled_candidate(IndexingJob(config=job_config(), progress=50))

    @pytest.mark.unit
    def test_backfill_in_progress(self):
        assert is_stalled_candidate(IndexingJob(config=BACKFILL, progress=60))

    @pytest.mark.unit
    def test_live_job_after_backfill(self):
        assert not is_stalled_candidate(IndexingJob(config=LIVE_BACKFILL, progress=90))
        assert is_stalled_candidate(IndexingJob(config=LIVE_BACKFILL, progress=70))


class TestRecoverInterruptedJobs:

    @pytest.mark.unit
    async def test_resumes_from_checkpoint_or_fails(self, maintenance, job_factory, db_session, fake_queue):
        with_checkpoint = await job_factory(
            config=BACKFILL, progress=60, queue_task_id="task-dead",
        )
        with_checkpoint.checkpoints = [{"target_index": 0, "before": "S9", "processed": 900}]
        await db_session.commit()
        without_checkpoint = await job_factory(config=BACKFILL, progress=55)
        fresh = await job_factory(config=BACKFILL, progress=55)
        live = await job_factory(config=job_config(), progress=50)

        for job in (with_checkpoint, without_checkpoint, live):
            await _age(db_session, job, minutes=45)

        stats = await maintenance.recover_interrupted_jobs(timeout_minutes=30)

        assert stats == {"checked": 2, "resumed": 1, "failed": 1}

        await db_session.refresh(with_checkpoint)
        assert with_checkpoint.status == JobStatus.RUNNING
        assert with_checkpoint.queue_task_id != "task-dead"
        assert fake_queue.enqueued == [(with_checkpoint.id, with_checkpoint.queue_task_id)]

        await db_session.refresh(without_checkpoint)
        assert without_checkpoint.status == JobStatus.FAILED
        assert without_checkpoint.last_error == NO_CHECKPOINT_MESSAGE

        await db_session.refresh(fresh)
        await db_session.refresh(live)
        assert fresh.status == JobStatus.RUNNING
        assert live.status == JobStatus.RUNNING

    @pytest.mark.unit
    async def test_queue_error_is_logged_not_raised(self, maintenance, job_factory, db_session, fake_queue):
        job = await job_factory(config=BACKFILL, progress=60)
        job.checkpoints = [{"target_index": 0, "before": None, "processed": 0}]
        await db_session.commit()
        await _age(db_session, job, hours=2)
        fake_queue.fail_enqueue = True

        stats = await maintenance.recover_interrupted_jobs()

        assert stats == {"checked": 1, "resumed": 0, "failed": 0}


class TestRetryFailedJobs:

    @pytest.mark.unit
    async def test_due_jobs_requeued(self, maintenance, job_factory, fake_queue, db_session):
        due = await job_factory(
            status=JobStatus.FAILED, queue_task_id=None,
            next_retry_at=datetime.utcnow() - timedelta(seconds=5), retry_count=1,
        )
        later = await job_factory(
            status=JobStatus.FAILED, queue_task_id=None,
            next_retry_at=datetime.utcnow() + timedelta(hours=1), retry_count=1,
        )
        exhausted = await job_factory(status=JobStatus.FAILED, queue_task_id=None, next_retry_at=None, retry_count=3)

        stats = await maintenance.retry_failed_jobs()

        assert stats == {"due": 1, "requeued": 1}
        await db_session.refresh(due)
        assert due.status == JobStatus.PENDING
        assert fake_queue.enqueued == [(due.id, due.queue_task_id)]
        for job in (later, exhausted):
            await db_session.refresh(job)
            assert job.status == JobStatus.FAILED


class TestCleanupFailedJobs:

    @pytest.mark.unit
    async def test_deletes_old_exhausted_jobs_and_releases_registration(
        self, maintenance, job_factory, registration_factory, db_session
    ):
        registration = await registration_factory()
        old = await job_factory(
            status=JobStatus.FAILED, registration=registration, queue_task_id=None, next_retry_at=None,
        )
        retrying = await job_factory(
            status=JobStatus.FAILED, queue_task_id=None, next_retry_at=datetime.utcnow() + timedelta(hours=1),
        )
        recent = await job_factory(status=JobStatus.FAILED, queue_task_id=None, next_retry_at=None)
        await _age(db_session, old, days=10)
        await _age(db_session, retrying, days=10)

        deleted = await maintenance.cleanup_failed_jobs(retention_days=7)

        assert deleted == 1
        remaining = (await db_session.execute(select(IndexingJob.id))).scalars().all()
        assert sorted(remaining) == sorted([retrying.id, recent.id])
        await db_session.refresh(registration)
        assert registration.status == RegistrationStatus.INACTIVE
