"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the session
service do the work; these types only own the shape.

Timestamps are timezone-aware UTC datetimes everywhere. The SQL stores convert
to and from ISO 8601 strings at the mapper boundary.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ROLES = ("cliente", "lider de obra", "admin")
DEFAULT_ROLE = "cliente"


@dataclass
class User:
    """An account in the portal's user directory.

    username is the normalized (trimmed, lower-cased) e-mail address used as
    the login identifier. Accounts are created by SessionService.register() (admin CLI,
    POST /auth/register); login and refresh only read them.
    """

    username: str
    role: str = DEFAULT_ROLE
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    last_login: str | None = None
    is_active: bool = True


@dataclass
class AttemptState:
    """Failed-login bookkeeping for one login identifier.

    lock_count survives successful logins so repeated lockouts back off
    exponentially; failed_attempts and locked_until do not.
    """

    key: str
    failed_attempts: int = 0
    last_failed_at: datetime | None = None
    locked_until: datetime | None = None
    lock_count: int = 0


@dataclass
class RefreshRecord:
    """One refresh credential in a session family.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw value only ever
    lives in the client's cookie.

    A record is live while rotated_at and revoked_at are both None. Exactly
    one record per live family is live; both fields are write-once.
    replaced_by holds the successor's token_hash after a rotation.
    """

    token_hash: str
    family_id: str
    user_id: int
    issued_at: datetime
    expires_at: datetime
    rotated_at: datetime | None = None
    revoked_at: datetime | None = None
    replaced_by: str | None = None
    last_used_at: datetime | None = None
    created_by_ip: str = ""
    user_agent: str = ""
    revoked_by_ip: str | None = None
    revoke_reason: str | None = None

    @property
    def is_live(self) -> bool:
        return self.rotated_at is None and self.revoked_at is None


@dataclass(frozen=True)
class AccessClaims:
    """Verified claims of an access token. Never persisted."""

    sub: int
    role: str
    sid: str
    iat: datetime
    exp: datetime


@dataclass(frozen=True)
class ClientContext:
    """Request metadata the session service records and rate-limits on."""

    ip: str = "unknown"
    user_agent: str = ""
    bypass_rate_limit: bool = False


@dataclass(frozen=True)
class IssuedSession:
    """Result of a successful login or refresh.

    refresh_token is the raw opaque value; the HTTP layer puts it in a cookie
    and never in a response body.
    """

    access_token: str
    expires_in: int
    refresh_token: str
    refresh_expires_at: datetime
    session_id: str
    user: User


@dataclass(frozen=True)
class RateDecision:
    """Outcome of one rate-limiter hit. retry_after is whole seconds, 0 when allowed."""

    allowed: bool
    retry_after: int
    remaining: int
