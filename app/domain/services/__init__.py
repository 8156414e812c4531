"""
Domain Services
"""
from app.domain.services.provider_client import ProviderClient
from app.domain.services.webhook_registry import WebhookRegistry
from app.domain.services.job_state_machine import JobStateMachine
from app.domain.services.ingestion_pipeline import IngestionPipeline
from app.domain.services.job_maintenance_service import JobMaintenanceService

__all__ = [
    "ProviderClient",
    "WebhookRegistry",
    "JobStateMachine",
    "IngestionPipeline",
    "JobMaintenanceService",
]
