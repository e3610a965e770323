from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:

    - validation_error (400)
    - authentication_failed (400)
    - duplicate_email (400)
    - invalid_attachment (400)
    - unauthorized / invalid_token / unknown_session (401)
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
    """Input failed field-level validation (400)."""
    status_code = 400
    error_code = "validation_error"

    @classmethod
    def for_fields(cls, fields: dict[str, str]) -> "ValidationError":
        names = ", ".join(sorted(fields))
        return cls(f"invalid fields: {names}", detail={"fields": fields})


class AuthenticationError(ServiceError):
    """Login failed; deliberately does not say which part was wrong (400)."""
    status_code = 400
    error_code = "authentication_failed"


class Unauthorized(ServiceError):
    """No credentials were presented (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidToken(Unauthorized):
    """Token is malformed, tampered with, or expired (401)."""
    error_code = "invalid_token"


class UnknownSession(Unauthorized):
    """Token is well formed but no longer in the user's session set (401)."""
    error_code = "unknown_session"


class NotFoundError(ServiceError):
    """Requested resource not found, or not owned by the caller (404)."""
    status_code = 404
    error_code = "not_found"


class DuplicateEmail(ValidationError):
    error_code = "duplicate_email"


class InvalidAttachment(ValidationError):
    error_code = "invalid_attachment"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "Unauthorized",
    "InvalidToken",
    "UnknownSession",
    "NotFoundError",
    "DuplicateEmail",
    "InvalidAttachment",
    "ServerError",
]
