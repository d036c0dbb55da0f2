from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Service-layer failure that renders as an error envelope.

    ``status_code`` and ``error_code`` are class attributes so the API layer
    can map any subclass without a lookup table. ``default_message`` is the
    client-facing text used when none is given.
    """

    status_code: int = 500
    error_code: str = "server_error"
    default_message: str = "internal error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.detail = detail or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status_code={self.status_code})"


class ValidationError(ServiceError):
    """Malformed input, rejected before touching the store."""

    status_code = 400
    error_code = "validation_error"
    default_message = "validation failed"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


# Rejections a caller can see. The precise reason travels on the admin topic only.
class InvalidCredentialsError(AuthenticationError):
    default_message = "invalid credentials"


class InvalidTokenError(AuthenticationError):
    default_message = "invalid token"


class UnknownDeviceError(AuthenticationError):
    default_message = "invalid device"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class ServerError(ServiceError):
    """Backing store outage or other internal failure."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "UnknownDeviceError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
