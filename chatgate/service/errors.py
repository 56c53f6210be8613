from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code, which the API returns as ``errorType``:
    - validation_error (400)
    - attachment_error (400)
    - unauthorized (401)
    - not_found (404)
    - quota_exceeded (429)
    - rate_limited (429)
    - ai_error (500)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict | list] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail if detail is not None else {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AttachmentError(ServiceError):
    """An attachment failed validation; the whole batch is rejected (400)."""
    status_code = 400
    error_code = "attachment_error"

    def __init__(self, message: str, *, file_name: Optional[str] = None, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        if file_name is not None:
            detail = {**detail, "fileName": file_name}
        super().__init__(message, detail=detail, **kwargs)
        self.file_name = file_name


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class QuotaExceededError(ServiceError):
    """Tier message or upload limit reached (429)."""
    status_code = 429
    error_code = "quota_exceeded"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class AiError(ServiceError):
    """The completion capability failed, errored or timed out (500)."""
    status_code = 500
    error_code = "ai_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AttachmentError",
    "AuthenticationError",
    "NotFoundError",
    "QuotaExceededError",
    "RateLimitedError",
    "AiError",
    "ServerError",
]
