"""
Job update notifications

Every job transition is published on Redis Pub/Sub (one-way) and kept in a
bounded history list. Publishing never blocks or fails a transition.
"""
from datetime import datetime

from redis.exceptions import RedisError

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import publish_json
from app.db.models.indexing_job import IndexingJob

logger = get_logger(__name__)

JOB_UPDATED = "job_updated"


def history_key(channel: str) -> str:
    return f"{channel}:history"


def build_job_update(job: IndexingJob, previous_status: str | None = None) -> dict:
    return {
        "event": JOB_UPDATED,
        "job_id": job.id,
        "owner_id": job.owner_id,
        "status": job.status.value,
        "previous_status": previous_status,
        "progress": job.progress,
        "error": job.last_error,
        "timestamp": datetime.utcnow().isoformat(),
    }


async def publish_job_update(job: IndexingJob, previous_status: str | None = None) -> bool:
    """Publish a job_updated message; returns False when Redis is unavailable"""
    channel = settings.JOB_UPDATES_CHANNEL
    try:
        await publish_json(
            channel,
            build_job_update(job, previous_status),
            history_key=history_key(channel),
            history_size=settings.JOB_UPDATES_HISTORY_SIZE,
        )
    except (RedisError, OSError) as exc:
        logger.warning(
            "Failed to publish job update",
            extra_data={"job_id": job.id, "status": job.status.value, "error": str(exc)},
        )
        return False
    return True
