"""
API key check for the job lifecycle endpoints.

Usage:
    @router.post("/")
    async def create_job(
        _: None = Depends(require_service_api_key),
    ):
        ...
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_service_api_key(
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    Validate the service API key.

    401 when the key is missing, 403 when it does not match. When
    SERVICE_API_KEY is not configured every request is refused.
    """
    if not settings.SERVICE_API_KEY:
        logger.warning("Job API request refused, SERVICE_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="SERVICE_API_KEY is not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key, X-API-Key header required",
        )

    if not hmac.compare_digest(api_key.encode(), settings.SERVICE_API_KEY.encode()):
        logger.warning("Job API request refused, wrong API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
