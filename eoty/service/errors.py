from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP status and a stable error code. The code can be
    overridden per raise when a client needs to distinguish a specific case,
    e.g. ``GOOGLE_ACCOUNT_NO_PASSWORD`` on a 401.
    """

    status_code: int = 400
    error_code: str = "validation_error"

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
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Missing or malformed input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credentials invalid, account inactive or token rejected (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. email already registered (409)."""
    status_code = 409
    error_code = "conflict"


class LockedError(ServiceError):
    """Account temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "locked"


class InternalError(ServiceError):
    status_code = 500
    error_code = "server_error"


class MailDeliveryError(Exception):
    """Raised by mail transports when a message could not be handed off."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "LockedError",
    "InternalError",
    "MailDeliveryError",
]
