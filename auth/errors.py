"""
auth/errors.py -- Expected failure outcomes of the session engine.

Every class here is a user-facing 4xx (or a retryable 503) and is mapped to a
response by a single handler in api/main.py. None of them is a server error.

The four refresh-credential failures share one public code so a caller cannot
tell a reused token from an unknown or expired one. The precise reason is
logged server-side.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. status_code and code drive the HTTP error envelope."""

    status_code: int = 401
    code: str = "unauthorized"
    message: str = "Authentication required."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


class InvalidCredentials(AuthError):
    """Wrong secret or unknown identifier -- deliberately indistinguishable."""

    code = "bad_credentials"
    message = "Invalid username or password."


class AccountLocked(AuthError):
    status_code = 423
    code = "account_locked"
    message = "Account temporarily locked. Try again later."


class RateLimited(AuthError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = max(1, int(retry_after))


class AccountExists(AuthError):
    status_code = 409
    code = "user_exists"
    message = "An account with that e-mail already exists."


class TokenInvalid(AuthError):
    """Refresh credential unknown, or its account is gone or deactivated."""

    code = "invalid_refresh_token"
    message = "Refresh token is invalid or expired."


class TokenMissing(TokenInvalid):
    pass


class TokenExpired(TokenInvalid):
    pass


class TokenReusedOrRevoked(TokenInvalid):
    """Presented credential was already rotated or revoked.

    Raising this always follows a family-wide revocation.
    """


class Unauthenticated(AuthError):
    """Missing, malformed, or expired access token on a protected call."""


class AccessTokenExpired(Unauthenticated):
    pass


class StoreUnavailable(AuthError):
    """Persistence failed. The transaction was rolled back; safe to retry."""

    status_code = 503
    code = "service_unavailable"
    message = "Service temporarily unavailable."
