"""
Provider Webhook Endpoint

Authenticates inbound deliveries and hands them to the queue. Answers as
soon as the delivery is accepted; events are applied by the
process_webhook_delivery task.

- 202: authenticated and queued
- 400: body is not a JSON delivery
- 401: unknown or inactive webhook id, or a bad signature
"""
import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.services import get_service_container
from app.core.exceptions import (
    AuthenticationFailure,
    ErrorCode,
    ExternalServiceException,
    MalformedPayloadError,
)
from app.core.logging import get_logger
from app.core.signature import SIGNATURE_HEADER, verify
from app.db.database import get_db
from app.db.models.webhook_registration import RegistrationStatus, WebhookRegistration
from app.domain.services.container import ServiceContainer

logger = get_logger(__name__)

router = APIRouter()


def parse_delivery(raw_body: bytes) -> dict:
    """Decode {webhookId, events: [...]}; raises MalformedPayloadError"""
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError("Body is not valid JSON") from exc

    if not isinstance(payload, dict):
        raise MalformedPayloadError("Body must be a JSON object")
    webhook_id = payload.get("webhookId") or payload.get("webhookID")
    if not isinstance(webhook_id, str) or not webhook_id:
        raise MalformedPayloadError("Missing webhookId", details={"field": "webhookId"})
    if not isinstance(payload.get("events", []), list):
        raise MalformedPayloadError("'events' must be a list", details={"field": "events"})
    return payload


@router.post(
    "/provider",
    status_code=202,
    summary="Inbound provider webhook",
    description="Signed delivery of blockchain events for a registered webhook.",
    responses={
        202: {"description": "Delivery accepted for processing"},
        400: {"description": "Malformed body"},
        401: {"description": "Unknown webhook or invalid signature"},
        429: {"description": "Too many requests from this client"},
    },
    tags=["Webhooks"],
)
async def receive_delivery(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_service_container),
) -> JSONResponse:
    raw_body = await request.body()
    payload = parse_delivery(raw_body)
    webhook_id = payload.get("webhookId") or payload.get("webhookID")

    result = await db.execute(
        select(WebhookRegistration).where(WebhookRegistration.provider_webhook_id == webhook_id)
    )
    registration = result.scalar_one_or_none()
    if registration is None or registration.status != RegistrationStatus.ACTIVE:
        logger.warning("Delivery for unknown webhook rejected", extra_data={"webhook_id": webhook_id})
        raise AuthenticationFailure("Unknown webhook", error_code=ErrorCode.UNKNOWN_WEBHOOK)

    if not verify(raw_body, request.headers.get(SIGNATURE_HEADER), registration.secret):
        logger.warning(
            "Delivery signature rejected",
            extra_data={"registration_id": registration.id},
        )
        raise AuthenticationFailure()

    try:
        services.queue.enqueue_delivery(registration.id, payload)
    except Exception as exc:
        logger.error(
            "Failed to queue delivery",
            extra_data={"registration_id": registration.id, "error": str(exc)},
            exc_info=True,
        )
        raise ExternalServiceException("task-queue", "Delivery could not be queued") from exc

    logger.info(
        "Delivery accepted",
        extra_data={"registration_id": registration.id, "events": len(payload.get("events") or [])},
    )
    return JSONResponse(status_code=202, content={"status": "accepted"})
