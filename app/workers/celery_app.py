"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "chain_indexer",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # backfills run up to the job timeout
    task_time_limit=settings.JOB_TIMEOUT_MINUTES * 60,
    worker_prefetch_multiplier=1,
    # a delivery is acknowledged only after it was applied
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "cleanup-webhooks-hourly": {
        "task": "app.workers.tasks.cleanup_webhooks",
        "schedule": 3600.0,
    },
    "recover-interrupted-jobs-every-5-minutes": {
        "task": "app.workers.tasks.recover_interrupted_jobs",
        "schedule": 300.0,
    },
    "retry-failed-jobs-every-minute": {
        "task": "app.workers.tasks.retry_failed_jobs",
        "schedule": 60.0,
    },
    "cleanup-failed-jobs-daily": {
        "task": "app.workers.tasks.cleanup_failed_jobs",
        "schedule": 86400.0,  # 24 hours
    },
}
