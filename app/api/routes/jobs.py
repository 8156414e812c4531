"""
Indexing Job API Routes
"""
from datetime import datetime
from typing import Any, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_serializer, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.service_auth import require_service_api_key
from app.api.dependencies.services import get_service_container
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.indexing_job import IndexingJob
from app.domain.services.container import ServiceContainer
from app.domain.upserters import get_active_bids

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_service_api_key)])


class CategoryFlags(BaseModel):
    nft_bids: bool = False
    nft_prices: bool = False
    token_prices: bool = False
    lending_rates: bool = False


class JobFilters(BaseModel):
    accounts: List[str] = Field(default_factory=list)
    program_ids: List[str] = Field(default_factory=list)


class WebhookOptions(BaseModel):
    enabled: bool = False
    url: str | None = None
    secret: str | None = None


class JobConfig(BaseModel):
    categories: CategoryFlags = Field(default_factory=CategoryFlags)
    filters: JobFilters = Field(default_factory=JobFilters)
    webhook: WebhookOptions = Field(default_factory=WebhookOptions)
    backfill: bool = False


class JobCreate(BaseModel):
    """Schema for creating an indexing job"""
    owner_id: str = Field(min_length=1, max_length=100)
    config: JobConfig
    target_database_url: str | None = Field(default=None, max_length=500)

    @field_validator("owner_id")
    @classmethod
    def strip_owner(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("owner_id must not be blank")
        return v


class OwnerRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=100)


class JobResponse(BaseModel):
    """Job status; the webhook secret and target URL are never returned"""
    id: int
    owner_id: str
    status: str
    progress: int
    categories: dict[str, bool]
    filters: dict[str, Any]
    webhook_enabled: bool
    backfill: bool
    webhook_registration_id: int | None
    retry_count: int
    max_retries: int
    next_retry_at: datetime | None
    last_error: str | None
    created_at: datetime | None
    updated_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None

    @field_serializer("status")
    def serialize_status(self, v: Any) -> str:
        return str(getattr(v, "value", v))

    @classmethod
    def from_job(cls, job: IndexingJob) -> "JobResponse":
        return cls(
            id=job.id,
            owner_id=job.owner_id,
            status=job.status.value,
            progress=job.progress,
            categories=job.categories,
            filters=job.filters,
            webhook_enabled=bool(job.webhook_options.get("enabled")),
            backfill=job.backfill_enabled,
            webhook_registration_id=job.webhook_registration_id,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            next_retry_at=job.next_retry_at,
            last_error=job.last_error,
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class BidSummary(BaseModel):
    mint_address: str
    marketplace: str
    bid_count: int
    min_bid: float
    max_bid: float
    avg_bid: float
    bids: List[dict[str, Any]]


@router.post(
    "/",
    response_model=JobResponse,
    status_code=201,
    summary="Create an indexing job",
    description="Validates the job and queues it; a worker starts it asynchronously.",
    responses={
        201: {"description": "Job created and queued"},
        400: {"description": "Invalid job configuration"},
        503: {"description": "Job queue unavailable"},
    },
    tags=["Jobs"],
)
async def create_job(
    data: JobCreate,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_service_container),
) -> JobResponse:
    logger.info("Creating indexing job", extra_data={"owner_id": data.owner_id})
    job = await services.state_machine(db).create_job(
        data.owner_id,
        data.config.model_dump(),
        data.target_database_url,
    )
    return JobResponse.from_job(job)


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job status",
    responses={404: {"description": "Job not found"}},
    tags=["Jobs"],
)
async def get_job(
    job_id: int,
    owner_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_service_container),
) -> JobResponse:
    job = await services.state_machine(db).get_status(job_id, owner_id)
    return JobResponse.from_job(job)


@router.post(
    "/{job_id}/pause",
    response_model=JobResponse,
    summary="Pause a running job",
    responses={404: {"description": "Job not found"}, 409: {"description": "Job is not active"}},
    tags=["Jobs"],
)
async def pause_job(
    job_id: int,
    data: OwnerRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_service_container),
) -> JobResponse:
    job = await services.state_machine(db).pause(job_id, data.owner_id)
    return JobResponse.from_job(job)


@router.post(
    "/{job_id}/resume",
    response_model=JobResponse,
    summary="Resume a paused job",
    responses={404: {"description": "Job not found"}, 409: {"description": "Job is not paused"}},
    tags=["Jobs"],
)
async def resume_job(
    job_id: int,
    data: OwnerRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_service_container),
) -> JobResponse:
    job = await services.state_machine(db).resume(job_id, data.owner_id)
    return JobResponse.from_job(job)


@router.post(
    "/{job_id}/cancel",
    response_model=JobResponse,
    summary="Cancel a job",
    responses={
        404: {"description": "Job not found"},
        409: {"description": "Job is already cancelled or completed"},
    },
    tags=["Jobs"],
)
async def cancel_job(
    job_id: int,
    data: OwnerRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_service_container),
) -> JobResponse:
    job = await services.state_machine(db).cancel(job_id, data.owner_id)
    return JobResponse.from_job(job)


@router.get(
    "/{job_id}/active-bids",
    response_model=List[BidSummary],
    summary="Active bids for an NFT mint",
    description="Active, unexpired bids in the job's datastore grouped by marketplace.",
    responses={400: {"description": "Invalid mint address"}, 404: {"description": "Job not found"}},
    tags=["Jobs"],
)
async def active_bids(
    job_id: int,
    owner_id: str = Query(..., min_length=1),
    mint: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_service_container),
) -> List[BidSummary]:
    job = await services.state_machine(db).get_status(job_id, owner_id)
    await services.datastores.bootstrap(job.target_database_url)
    async with services.datastores.session(job.target_database_url) as session:
        summary = await get_active_bids(session, mint)
    return [BidSummary(**entry) for entry in summary]
