from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class AuthError(Exception):
    """Base class for session and identity service failures.

    Each subclass carries a stable ``error_code`` so consumers can branch on
    the failure kind without parsing messages:
    - validation_error (local rejection, or 400/422 from the server)
    - invalid_credentials (login or password change rejected)
    - invalid_refresh_token (refresh token expired or revoked)
    - unauthorized (access token expired or revoked)
    - not_authenticated (no session to operate on)
    - network_error (transport failure, timeout, unreadable error body)
    - server_error (5xx or malformed response)
    - storage_unavailable (credential store failed while saving a session)
    """

    error_code: str = "auth_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail or {}


class ValidationError(AuthError):
    """Input rejected before or by the identity service."""
    error_code = "validation_error"


class InvalidCredentialsError(AuthError):
    """Username/password (or current password) rejected by the server."""
    error_code = "invalid_credentials"


class InvalidRefreshTokenError(AuthError):
    """Refresh token expired or revoked."""
    error_code = "invalid_refresh_token"


class UnauthorizedError(AuthError):
    """Access token expired or revoked."""
    error_code = "unauthorized"


class NotAuthenticatedError(AuthError):
    """No stored session to operate on."""
    error_code = "not_authenticated"


class NetworkError(AuthError):
    """Transport failure, timeout, or unreachable identity service."""
    error_code = "network_error"


class ServerError(AuthError):
    """Identity service failed (5xx) or returned a malformed response."""
    error_code = "server_error"


class SessionStorageError(AuthError):
    """Credential store could not persist the session."""
    error_code = "storage_unavailable"


@dataclass(frozen=True)
class AuthResult(Generic[T]):
    """Success or failure of a session operation, returned to consumers."""

    value: Optional[T] = None
    error: Optional[AuthError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error else None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "AuthResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AuthError) -> "AuthResult[T]":
        return cls(error=error)


__all__ = [
    "AuthError",
    "ValidationError",
    "InvalidCredentialsError",
    "InvalidRefreshTokenError",
    "UnauthorizedError",
    "NotAuthenticatedError",
    "NetworkError",
    "ServerError",
    "SessionStorageError",
    "AuthResult",
]
