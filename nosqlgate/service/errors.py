from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP ``status_code`` and a stable
    ``error_code`` used in the response envelope:
    - validation_error (400)
    - forbidden (403)
    - not_found (404)
    - conflict / batch_error (409)
    - server_error / configuration_error (500)
    - backend_unavailable (503)
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

    def with_message(self, message: str, detail: Optional[dict] = None) -> "ServiceError":
        """Return a copy of this error with a new message, keeping status and code."""
        return type(self)(
            message,
            status_code=self.status_code,
            detail=detail if detail is not None else self.detail,
            error_code=self.error_code,
        )


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class ForbiddenError(ServiceError):
    """Access denied by a server-side filter (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested table or record not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class BatchError(ConflictError):
    """Not every record of a batch could be processed (409)."""
    error_code = "batch_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Invalid server-side configuration such as a bad filter combiner (500)."""
    error_code = "configuration_error"


class DecodeError(ServerError):
    """A stored value carries a type marker but its payload is malformed."""
    pass


class BackendUnavailableError(ServiceError):
    """The backing store could not be reached (503)."""
    status_code = 503
    error_code = "backend_unavailable"

    def __init__(
        self,
        message: str,
        *,
        table: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        if table is not None:
            detail.setdefault("table", table)
        if operation is not None:
            detail.setdefault("operation", operation)
        super().__init__(message, detail=detail, **kwargs)
        self.table = detail.get("table")
        self.operation = detail.get("operation")


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "BatchError",
    "ServerError",
    "ConfigurationError",
    "DecodeError",
    "BackendUnavailableError",
]
