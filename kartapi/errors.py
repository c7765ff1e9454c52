"""Error taxonomy shared by the domain services and the HTTP layer."""

from __future__ import annotations


class KartError(Exception):
    """Base class for errors that map onto an HTTP status code."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(KartError):
    """Raised when input is malformed or out of range."""

    status_code = 400
    default_message = "Invalid input"


class DuplicateError(KartError):
    """Raised when a write would violate a uniqueness constraint."""

    status_code = 400
    default_message = "Duplicate data found"


class DuplicateEmailError(DuplicateError):
    default_message = "Email is already in use"


class DuplicateDriverError(DuplicateError):
    default_message = "Driver already exists in this category"


class NotFoundError(KartError):
    status_code = 404
    default_message = "Resource not found"


class AuthenticationError(KartError):
    """Raised when the caller could not be identified."""

    status_code = 401
    default_message = "Authentication required"


class InvalidCredentialsError(AuthenticationError):
    # Same message for unknown email and wrong password.
    default_message = "Invalid credentials"


class AuthorizationError(KartError):
    """Raised when an authenticated caller lacks the required role."""

    status_code = 403
    default_message = "Insufficient permissions"


class InternalError(KartError):
    status_code = 500


__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "DuplicateDriverError",
    "DuplicateEmailError",
    "DuplicateError",
    "InternalError",
    "InvalidCredentialsError",
    "KartError",
    "NotFoundError",
    "ValidationError",
]
