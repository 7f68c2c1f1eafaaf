"""
auth/tokens.py -- Access JWTs, opaque refresh credentials, password checks.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens carry sub (user id), role,
       sid (session family id), iat and exp. They are stateless: verification
       is signature + expiry only, with expiry checked against the injected
       Clock so boundaries are testable. Any failure raises Unauthenticated.

  Refresh tokens: secrets.token_urlsafe(48) -- 384 bits of entropy, opaque,
       not decodable. Possessing one proves nothing until the store is asked,
       which is what makes rotation, revocation and reuse detection possible.
       The store only ever sees HMAC-SHA256(SECRET_KEY, raw_token), so a
       leaked database cannot be replayed against the API.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in PasswordVerifier.verify() so response
       time does not reveal whether an identifier exists [C1].

  Cookie: the refresh credential travels only in an httpOnly, SameSite cookie
       scoped to the auth routes. It is never written to a JSON body.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Protocol

import bcrypt
from jose import JWTError, jwt

from auth.clock import Clock, SystemClock
from auth.errors import AccessTokenExpired, Unauthenticated
from auth.models import AccessClaims, User

if TYPE_CHECKING:
    from auth.store import UserStore
    from core.config import Settings

logger = logging.getLogger("sitepass.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password length at 255 characters (Pydantic field).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the store -- treat as a mismatch.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sitepass_timing_dummy")


def normalize_identifier(identifier: str) -> str:
    """Canonical form of a login identifier (e-mail): trimmed, lower-cased."""
    return identifier.strip().lower()


# ---------------------------------------------------------------------------
# Credential verification (the engine only sees the protocol)
# ---------------------------------------------------------------------------


class CredentialVerifier(Protocol):
    def verify(self, identifier: str, secret: str) -> User | None: ...


class PasswordVerifier:
    """Default CredentialVerifier backed by the local user directory.

    Always runs bcrypt whether or not the account exists:
    - Unknown identifier: bcrypt runs against _DUMMY_HASH (same cost)
    - Wrong password: bcrypt runs against the real hash (same cost)
    Deactivated accounts fail exactly like a wrong password.
    """

    def __init__(self, user_store: UserStore) -> None:
        self._users = user_store

    def verify(self, identifier: str, secret: str) -> User | None:
        user = self._users.get_by_username(normalize_identifier(identifier))
        if user is None or user.hashed_password is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            verify_password(secret, _DUMMY_HASH)
            return None
        if not verify_password(secret, user.hashed_password):
            return None
        if not user.is_active:
            return None
        return user


# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints access JWTs and refresh credentials; verifies access JWTs.

    Usage:
        issuer = TokenIssuer(secret_key, access_ttl_seconds=900, refresh_ttl=timedelta(days=30))
        token, expires_in = issuer.issue_access(user, session_id)
        claims = issuer.decode_access(token)
    """

    def __init__(
        self,
        secret_key: str,
        access_ttl_seconds: int = 900,
        refresh_ttl: timedelta = timedelta(days=30),
        issuer: str = "",
        audience: str = "",
        clock: Clock | None = None,
    ) -> None:
        if len(secret_key) < 32:
            raise ValueError("secret_key must be at least 32 characters.")
        self._secret_key = secret_key
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl = refresh_ttl
        self._issuer = issuer
        self._audience = audience
        self._clock = clock or SystemClock()

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock | None = None) -> TokenIssuer:
        return cls(
            settings.secret_key,
            access_ttl_seconds=settings.access_token_expire_seconds,
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )

    # -- access tokens ------------------------------------------------------

    def issue_access(self, user: User, session_id: str) -> tuple[str, int]:
        """Encode a signed JWT for user within session_id. Returns (token, expires_in)."""
        now = self._clock.now()
        payload = {
            "sub": str(user.id),
            "role": user.role,
            "sid": session_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.access_ttl_seconds)).timestamp()),
        }
        if self._issuer:
            payload["iss"] = self._issuer
        if self._audience:
            payload["aud"] = self._audience
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM), self.access_ttl_seconds

    def decode_access(self, token: str) -> AccessClaims:
        """Verify signature and expiry. Raises Unauthenticated on any failure.

        Expiry is compared against the injected clock rather than jose's own
        wall-clock check; a token is expired from the exp second onwards.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                audience=self._audience or None,
                issuer=self._issuer or None,
                options={"verify_exp": False, "verify_aud": bool(self._audience)},
            )
        except JWTError as exc:
            raise Unauthenticated() from exc

        try:
            exp = int(payload["exp"])
            iat = int(payload["iat"])
            claims = AccessClaims(
                sub=int(payload["sub"]),
                role=str(payload["role"]),
                sid=str(payload["sid"]),
                iat=datetime.fromtimestamp(iat, tz=timezone.utc),
                exp=datetime.fromtimestamp(exp, tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise Unauthenticated() from exc

        if self._clock.now() >= claims.exp:
            raise AccessTokenExpired()
        return claims

    # -- refresh credentials -------------------------------------------------

    def new_session_id(self) -> str:
        return uuid.uuid4().hex

    def new_refresh_token(self) -> tuple[str, str, datetime]:
        """Return (raw_token, token_hash, expires_at) for a fresh refresh credential."""
        raw = secrets.token_urlsafe(48)
        return raw, self.hash_refresh_token(raw), self._clock.now() + self.refresh_ttl

    def hash_refresh_token(self, raw_token: str) -> str:
        """HMAC-SHA256(SECRET_KEY, raw_token) as hex. Deterministic for O(1) lookup."""
        return hmac.new(
            self._secret_key.encode(),
            raw_token.encode(),
            hashlib.sha256,
        ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, settings: Settings, max_age: int) -> None:
    """Write the refresh credential as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite: "lax" by default -- not sent on cross-site POST (CSRF mitigation).
    path: scoped to the auth routes so the credential is not attached to every
        API call.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    """
    response.set_cookie(
        settings.refresh_cookie_name,
        value=token,
        max_age=max_age,
        path=settings.refresh_cookie_path,
        domain=settings.refresh_cookie_domain or None,
        secure=settings.secure_cookies,
        httponly=True,
        samesite=settings.refresh_cookie_samesite,
    )


def clear_refresh_cookie(response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        domain=settings.refresh_cookie_domain or None,
        secure=settings.secure_cookies,
        httponly=True,
        samesite=settings.refresh_cookie_samesite,
    )
