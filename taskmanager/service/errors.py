from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - invalid_credentials (400)
    - account_locked (400)
    - conflict (400 for unavailable tasks)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Any] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password (400)."""
    status_code = 400
    error_code = "invalid_credentials"


class AccountLockedError(ServiceError):
    """Sign-in refused because the account is locked out (400)."""
    status_code = 400
    error_code = "account_locked"


class AuthenticationError(ServiceError):
    """Bearer token missing, malformed or expired (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient claims (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource state forbids the operation (409)."""
    status_code = 409
    error_code = "conflict"


class TaskUnavailableError(ConflictError):
    """Task exists but was soft-deleted; reported as a 400 business error."""
    status_code = 400


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class PersistenceError(ServerError):
    """A store write affected no rows, failed or timed out."""
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "TaskUnavailableError",
    "ServerError",
    "PersistenceError",
]
