"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the
ingestion pipeline, the provider client and the lifecycle API.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Inbound delivery errors (2xxx)
    INVALID_SIGNATURE = "ERR_2001"
    UNKNOWN_WEBHOOK = "ERR_2002"
    MALFORMED_PAYLOAD = "ERR_2003"
    MALFORMED_EVENT = "ERR_2004"

    # External provider errors (5xxx)
    PROVIDER_ERROR = "ERR_5001"
    PROVIDER_QUOTA_EXCEEDED = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"

    # Job state machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    JOB_NOT_FOUND = "ERR_6002"
    INVALID_STATE = "ERR_6003"

    # Data errors (7xxx)
    DATA_INTEGRITY = "ERR_7001"

    # Job execution errors (8xxx)
    JOB_FAILED = "ERR_8001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


# ---------------------------------------------------------------------------
# Inbound deliveries
# ---------------------------------------------------------------------------


class AuthenticationFailure(AppException):
    """Inbound delivery failed authentication (bad signature or unknown webhook)"""

    def __init__(
        self,
        message: str = "Invalid webhook signature",
        error_code: ErrorCode = ErrorCode.INVALID_SIGNATURE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=401,
            details=details
        )


class MalformedPayloadError(AppException):
    """Inbound delivery body could not be parsed"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.MALFORMED_PAYLOAD,
            status_code=400,
            details=details
        )


class MalformedEventError(AppException):
    """A single event inside a delivery lacks its identity fields"""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.MALFORMED_EVENT,
            status_code=400,
        )


class DataIntegrityFailure(AppException):
    """Datastore transaction failed; the whole delivery was rolled back"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.DATA_INTEGRITY,
            status_code=500,
            details=details
        )


# ---------------------------------------------------------------------------
# External provider
# ---------------------------------------------------------------------------


class RateLimitedError(AppException):
    """Token bucket exhausted; the caller should defer and try again"""

    def __init__(self, key: str, retry_after_seconds: float):
        super().__init__(
            message=f"Rate limit exceeded for {key}",
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={"key": key, "retry_after_seconds": retry_after_seconds}
        )
        self.retry_after_seconds = retry_after_seconds


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class ProviderRequestError(ExternalServiceException):
    """Provider rejected the request (4xx); not an upstream health problem"""

    def __init__(
        self,
        message: str,
        upstream_status: int | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.PROVIDER_ERROR,
    ):
        super().__init__(
            service_name="provider",
            message=f"Provider API error: {message}",
            error_code=error_code,
            details=details
        )
        self.upstream_status = upstream_status
        self.details["upstream_status"] = upstream_status

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "ProviderRequestError":
        """
        Build the error from an HTTP response.

        Args:
            operation: logical operation name (create_webhook, list_webhooks, ...)
            response: response object (httpx.Response)
            message: custom message (built from the status when omitted)
            max_response_chars: cap on the stored response text
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            upstream_status=status_code,
            details={
                "operation": operation,
                "response_text": response_text[:max_response_chars],
            },
        )


class ProviderQuotaExceededError(ProviderRequestError):
    """Provider refused to create a webhook because its registration limit is reached"""

    def __init__(self, message: str = "webhook limit reached", upstream_status: int | None = None):
        super().__init__(
            message=message,
            upstream_status=upstream_status,
            error_code=ErrorCode.PROVIDER_QUOTA_EXCEEDED,
        )


class TransientUpstreamError(ExternalServiceException):
    """Timeout, transport error or 5xx from the provider; retried by the circuit breaker"""

    def __init__(self, message: str, upstream_status: int | None = None):
        super().__init__(
            service_name="provider",
            message=message,
            error_code=(
                ErrorCode.EXTERNAL_SERVICE_TIMEOUT
                if upstream_status is None
                else ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE
            ),
            details={"upstream_status": upstream_status}
        )
        self.upstream_status = upstream_status


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
        self.retry_after_seconds = retry_after_seconds


# ---------------------------------------------------------------------------
# Job lifecycle
# ---------------------------------------------------------------------------


class StateMachineException(AppException):
    """Base exception for state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None,
        status_code: int = 400,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )


class InvalidStateTransitionError(StateMachineException):
    """Raised when state transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, job_id: int | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "job_id": job_id
            },
            status_code=409,
        )


class JobStateError(StateMachineException):
    """A lifecycle operation was refused by its guard"""

    NOT_ACTIVE = "Job is not active"
    NOT_PAUSED = "Job is not paused"
    ALREADY_FINISHED = "Job is already cancelled or completed"

    def __init__(self, message: str, job_id: int, current_state: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_STATE,
            details={"job_id": job_id, "current_state": current_state},
            status_code=409,
        )


class JobNotFoundError(NotFoundException):
    """Unknown job id, or a job owned by someone else"""

    def __init__(self, job_id: int):
        super().__init__(
            resource="Job",
            identifier=job_id,
            error_code=ErrorCode.JOB_NOT_FOUND,
        )
        # same message whether the job is missing or owned by someone else
        self.message = "Job not found"
        self.args = (self.message,)


class JobFailure(AppException):
    """Unrecoverable error while running a job"""

    def __init__(self, job_id: int, message: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.JOB_FAILED,
            status_code=500,
            details={"job_id": job_id}
        )
