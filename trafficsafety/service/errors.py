from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` rendered in the error envelope:
    - unauthorized (401)
    - forbidden (403)
    - validation_error (400)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)

    ``reason`` is the machine-readable cause placed in ``detail``; it never
    contains the failing credential.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if reason is not None:
            self.reason = reason
        self.detail = {"reason": self.reason, **(detail or {})}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    reason = "unauthenticated"


class InvalidCredentialsError(AuthenticationError):
    """Login failed; the cause (unknown email or wrong password) is not disclosed."""
    reason = "invalid_credentials"


class CredentialError(AuthenticationError):
    """Access token could not be verified."""


class ExpiredCredentialError(CredentialError):
    reason = "token_expired"


class InvalidSignatureError(CredentialError):
    reason = "token_invalid"


class MalformedCredentialError(CredentialError):
    reason = "token_malformed"


class RefreshTokenError(AuthenticationError):
    """Refresh token cannot be used."""
    reason = "refresh_token_invalid"


class UnknownTokenError(RefreshTokenError):
    reason = "refresh_token_invalid"


class TokenExpiredError(RefreshTokenError):
    reason = "refresh_token_expired"


class TokenRevokedError(RefreshTokenError):
    reason = "refresh_token_revoked"


class ReplayDetectedError(TokenRevokedError):
    """A rotated or revoked refresh token was presented again.

    Rendered exactly like ``TokenRevokedError``; only ``internal_reason``
    and the logs record the replay.
    """

    internal_reason = "replay"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    reason = "forbidden"


class AccountInactiveError(ForbiddenError):
    """User account is deactivated (403)."""
    reason = "user_inactive"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    reason = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    reason = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    reason = "internal_error"


class PersistenceTimeoutError(ServerError):
    """A store call did not complete within its timeout."""
    reason = "store_timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "CredentialError",
    "ExpiredCredentialError",
    "InvalidSignatureError",
    "MalformedCredentialError",
    "RefreshTokenError",
    "UnknownTokenError",
    "TokenExpiredError",
    "TokenRevokedError",
    "ReplayDetectedError",
    "ForbiddenError",
    "AccountInactiveError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "PersistenceTimeoutError",
]
