"""
Indexing Job Model - a long-running request for live and/or historical data
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, ForeignKey, Index

from app.db.database import Base


class JobStatus(str, enum.Enum):
    CREATED = "created"
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class IndexingJob(Base):
    """Indexing job with lifecycle status, retry tracking and backfill checkpoints"""

    __tablename__ = "indexing_jobs"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(100), nullable=False, index=True)

    status = Column(SQLEnum(JobStatus), default=JobStatus.CREATED, nullable=False, index=True)
    progress = Column(Integer, default=0, nullable=False)

    # category flags, filters, webhook and backfill options
    config = Column(JSON, nullable=False, default=dict)
    # None = category tables live in the main database
    target_database_url = Column(String(500), nullable=True)

    webhook_registration_id = Column(
        Integer,
        ForeignKey("webhook_registrations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # id of the queue entry currently allowed to work on this job
    queue_task_id = Column(String(64), nullable=True)
    # newest last, bounded by BACKFILL_MAX_CHECKPOINTS
    checkpoints = Column(JSON, nullable=False, default=list)

    # Retry tracking
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    next_retry_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_indexing_jobs_status_updated", "status", "updated_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def categories(self) -> dict:
        return dict((self.config or {}).get("categories") or {})

    @property
    def filters(self) -> dict:
        return dict((self.config or {}).get("filters") or {})

    @property
    def webhook_options(self) -> dict:
        return dict((self.config or {}).get("webhook") or {})

    @property
    def backfill_enabled(self) -> bool:
        return bool((self.config or {}).get("backfill", False))

    @property
    def last_checkpoint(self) -> dict | None:
        return self.checkpoints[-1] if self.checkpoints else None
