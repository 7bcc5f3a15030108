from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional
import logging
import time

logger = logging.getLogger(__name__)

class SongMintError(Exception):
    """Base exception for the Song Mint backend."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

        logger.error(f"{self.__class__.__name__}: {message}", extra={"details": self.details})

class InsufficientCreditsError(SongMintError):
    """Raised when a user has too few credits for an operation."""

    def __init__(self, required: int, available: Optional[int] = None, user_id: str = None):
        message = f"Insufficient credits. Required: {required}, Available: {available}"
        details = {
            "required_credits": required,
            "available_credits": available,
            "user_id": user_id
        }
        super().__init__(message, details)

class InvalidCreditAmountError(SongMintError):
    """Raised when a credit grant or deduction amount is out of range."""

    def __init__(self, amount: Any, reason: str):
        super().__init__(f"Invalid credit amount {amount!r}: {reason}", {"amount": amount})

class CreditOperationError(SongMintError):
    """The atomic credit update reported failure; must be retried."""

    def __init__(self, user_id: str, operation_type: str, error: Optional[str]):
        message = f"Credit operation failed: {error or 'unknown error'}"
        details = {
            "user_id": user_id,
            "operation_type": operation_type,
            "ledger_error": error
        }
        super().__init__(message, details)

class ProfileUpdateError(SongMintError):
    """A required profile write failed."""

    def __init__(self, operation: str, error: str):
        super().__init__(f"{operation} failed: {error}", {"operation": operation, "database_error": error})

class AuthenticationError(SongMintError):
    """Raised when authentication fails."""

    def __init__(self, reason: str = "Authentication failed"):
        super().__init__(reason, {"auth_failure_reason": reason})

class NotFoundError(SongMintError):
    """Raised when a requested resource does not exist for the caller."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found"
        super().__init__(message, {"resource": resource, "id": identifier})

class RateLimitExceeded(SongMintError):
    """Raised when rate limit is exceeded."""

    def __init__(self, limit: int, window_seconds: int, retry_after: int, client_id: str = None):
        message = f"Rate limit exceeded: {limit} requests per {window_seconds}s"
        self.limit = limit
        self.retry_after = retry_after
        details = {
            "limit": limit,
            "window_seconds": window_seconds,
            "retry_after": retry_after,
            "client_id": client_id
        }
        super().__init__(message, details)

class WebhookValidationError(SongMintError):
    """Raised when webhook signature validation fails."""

    def __init__(self, provider: str, reason: str = "Invalid signature"):
        self.reason = reason
        message = f"Webhook validation failed for {provider}: {reason}"
        details = {"provider": provider, "validation_error": reason}
        super().__init__(message, details)

class WebhookProcessingError(SongMintError):
    """A webhook handler failed; `retry` tells the provider whether to redeliver."""

    def __init__(self, event_id: str, event_type: str, attempt: int, retry: bool, error: str):
        self.event_id = event_id
        self.attempt = attempt
        self.retry = retry
        message = f"Processing {event_type} event {event_id} failed on attempt {attempt}: {error}"
        details = {
            "event_id": event_id,
            "event_type": event_type,
            "attempt": attempt,
            "retry": retry
        }
        super().__init__(message, details)

class ConfigurationError(SongMintError):
    """Raised when application configuration is invalid."""

    def __init__(self, setting: str, reason: str):
        message = f"Configuration error for '{setting}': {reason}"
        details = {"setting": setting, "reason": reason}
        super().__init__(message, details)

class ExternalServiceError(SongMintError):
    """Raised when external service calls fail."""

    def __init__(self, service: str, error: str, status_code: int = None):
        message = f"External service '{service}' error: {error}"
        details = {
            "service": service,
            "error": error,
            "status_code": status_code
        }
        super().__init__(message, details)

# Exception to HTTP status code mapping
STATUS_CODES = {
    InsufficientCreditsError: status.HTTP_402_PAYMENT_REQUIRED,
    InvalidCreditAmountError: status.HTTP_400_BAD_REQUEST,
    AuthenticationError: status.HTTP_401_UNAUTHORIZED,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    RateLimitExceeded: status.HTTP_429_TOO_MANY_REQUESTS,
    WebhookValidationError: status.HTTP_400_BAD_REQUEST,
    CreditOperationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ProfileUpdateError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ConfigurationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ExternalServiceError: status.HTTP_502_BAD_GATEWAY,
}

def to_http_exception(exc: SongMintError) -> HTTPException:
    """Convert a SongMintError to an HTTPException with the matching status code."""
    status_code = STATUS_CODES.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)

    headers = None
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Bearer"}

    return HTTPException(
        status_code=status_code,
        detail={
            "error": exc.__class__.__name__,
            "message": exc.message,
        },
        headers=headers,
    )

async def songmint_exception_handler(request: Request, exc: SongMintError) -> JSONResponse:
    http_exc = to_http_exception(exc)
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail}, headers=http_exc.headers)

async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    reset_at = int(time.time()) + exc.retry_after
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"error": "Rate limit exceeded", "retryAfter": exc.retry_after},
        headers={
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(reset_at),
            "Retry-After": str(exc.retry_after),
        },
    )
