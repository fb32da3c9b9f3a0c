from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """A failure a service wants rendered as an error envelope.

    Subclasses pin the HTTP ``status_code`` and the stable ``error_code``
    clients branch on; either can be overridden per instance.
    """

    status_code: int = 400
    error_code: str = "INVALID_REQUEST"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail) if detail else {}
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code


class ValidationError(ServiceError):
    status_code = 400
    error_code = "INVALID_REQUEST"


class StreamingOnlyError(ValidationError):
    """Completions are served only as event streams."""
    error_code = "STREAMING_ONLY"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "AUTHENTICATION_FAILED"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "FORBIDDEN"


class ModelNotAllowedError(ForbiddenError):
    """The caller's tier does not include the requested model."""
    error_code = "MODEL_NOT_ALLOWED"


class NotFoundError(ServiceError):
    """Missing, or owned by another account."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "CONFLICT"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "RATE_LIMITED"


class DailyLimitExceededError(RateLimitedError):
    error_code = "DAILY_LIMIT_EXCEEDED"


class MonthlyLimitExceededError(RateLimitedError):
    error_code = "MONTHLY_LIMIT_EXCEEDED"


class DatabaseOperationError(ServiceError):
    """Conversation state could not be written."""
    status_code = 500
    error_code = "DATABASE_OPERATION_FAILED"


class ProviderError(ServiceError):
    """A non-streaming provider call failed.

    ``error_code`` is the classified failure kind: AUTH_OR_CONFIG,
    MODEL_UNAVAILABLE, RATE_LIMITED or PROVIDER_ERROR.
    """
    status_code = 502
    error_code = "PROVIDER_ERROR"


class ServerError(ServiceError):
    status_code = 500
    error_code = "INTERNAL_ERROR"

__all__ = [
    "ServiceError",
    "ValidationError",
    "StreamingOnlyError",
    "AuthenticationError",
    "ForbiddenError",
    "ModelNotAllowedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "DailyLimitExceededError",
    "MonthlyLimitExceededError",
    "DatabaseOperationError",
    "ProviderError",
    "ServerError",
]
