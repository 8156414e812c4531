"""
Celery-backed job queue.

Tasks are sent by name so the API process never imports the task module.
"""
from typing import Any

from app.core.logging import get_logger
from app.workers.celery_app import celery_app

logger = get_logger(__name__)

RUN_JOB_TASK = "app.workers.tasks.run_indexing_job"
PROCESS_DELIVERY_TASK = "app.workers.tasks.process_webhook_delivery"


class CeleryJobQueue:
    """Queue adapter used by the job state machine and the inbound endpoint"""

    def enqueue(self, job_id: int, task_id: str) -> None:
        celery_app.send_task(RUN_JOB_TASK, args=[job_id, task_id], task_id=task_id)
        logger.debug("Job enqueued", extra_data={"job_id": job_id, "task_id": task_id})

    def remove(self, task_id: str) -> None:
        celery_app.control.revoke(task_id)
        logger.debug("Queue entry revoked", extra_data={"task_id": task_id})

    def enqueue_delivery(self, registration_id: int, payload: dict[str, Any]) -> None:
        celery_app.send_task(PROCESS_DELIVERY_TASK, args=[registration_id, payload])
