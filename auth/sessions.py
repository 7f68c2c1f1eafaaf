"""
auth/sessions.py -- Session orchestrator: login, refresh, logout, logout-all, who-am-i.

SessionService composes the rate limiter, attempt tracker, credential
verifier, token issuer and refresh chain store. It is the only component that
changes session state; collaborators receive the resulting claims and, after
the fact, SessionEvents.

Refresh-token families:
  login() starts a new family (its id is the session id carried in the access
  token's sid claim). refresh() consumes the live record of a family and
  appends its successor. Presenting any record that is no longer live -- or
  losing the rotation race for a live one -- revokes the whole family: the
  credential has been replayed, and the only safe assumption is that both the
  legitimate client and an attacker now hold members of the chain.

Failure policy:
  Expected outcomes raise the AuthError subclasses in auth/errors.py.
  Database failures are logged and re-raised as StoreUnavailable. Every store
  write is its own transaction (rotation is one transaction), so a failure
  never leaves a half-rotated record; the request simply fails closed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth import events
from auth.clock import Clock, SystemClock
from auth.errors import (
    AccountExists,
    AccountLocked,
    InvalidCredentials,
    RateLimited,
    StoreUnavailable,
    TokenExpired,
    TokenInvalid,
    TokenMissing,
    TokenReusedOrRevoked,
    Unauthenticated,
)
from auth.events import EventDispatcher, SessionEvent
from auth.lockout import AttemptStore, AttemptTracker, LockoutPolicy, is_locked
from auth.models import DEFAULT_ROLE, ROLES, AccessClaims, ClientContext, IssuedSession, RefreshRecord, User
from auth.ratelimit import MemoryRateWindowStore, RateLimiter, RateLimitRule, RateWindowStore
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import CredentialVerifier, PasswordVerifier, TokenIssuer, hash_password, normalize_identifier
from core.config import Settings

logger = logging.getLogger("sitepass.auth.sessions")


@dataclass(frozen=True)
class SessionRateRules:
    login_ip: RateLimitRule = RateLimitRule("login:ip", 10, 60)
    login_user: RateLimitRule = RateLimitRule("login:user", 5, 60)
    refresh_ip: RateLimitRule = RateLimitRule("refresh:ip", 30, 60)

    def longest_window(self) -> int:
        return max(self.login_ip.window_seconds, self.login_user.window_seconds, self.refresh_ip.window_seconds)


@contextmanager
def _store_guard(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Store failure during %s", operation)
        raise StoreUnavailable() from exc


class SessionService:
    """Session lifecycle engine.

    All collaborators are injected so tests can swap in fakes (clock, verifier,
    in-memory counter stores).
    """

    def __init__(
        self,
        *,
        users: UserStore,
        refresh_tokens: RefreshTokenStore,
        issuer: TokenIssuer,
        verifier: CredentialVerifier,
        attempts: AttemptTracker,
        limiter: RateLimiter,
        rules: SessionRateRules | None = None,
        dispatcher: EventDispatcher | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._users = users
        self._refresh = refresh_tokens
        self._issuer = issuer
        self._verifier = verifier
        self._attempts = attempts
        self._limiter = limiter
        self._rules = rules or SessionRateRules()
        self._events = dispatcher or EventDispatcher()
        self._clock = clock or SystemClock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        users: UserStore,
        refresh_tokens: RefreshTokenStore,
        attempt_store: AttemptStore,
        rate_store: RateWindowStore | None = None,
        verifier: CredentialVerifier | None = None,
        dispatcher: EventDispatcher | None = None,
        clock: Clock | None = None,
    ) -> SessionService:
        """Assemble a service whose thresholds and TTLs come from Settings."""
        clock = clock or SystemClock()
        window = settings.rate_limit_window_seconds
        overage = settings.rate_limit_overage_factor
        policy = LockoutPolicy(
            max_attempts=settings.lockout_max_attempts,
            window=timedelta(seconds=settings.lockout_window_seconds),
            base_duration=timedelta(seconds=settings.lockout_duration_seconds),
            backoff_multiplier=settings.lockout_backoff_multiplier,
            max_duration=timedelta(seconds=settings.lockout_max_duration_seconds),
        )
        rules = SessionRateRules(
            login_ip=RateLimitRule("login:ip", settings.login_ip_rate_limit, window, overage),
            login_user=RateLimitRule("login:user", settings.login_user_rate_limit, window, overage),
            refresh_ip=RateLimitRule("refresh:ip", settings.refresh_ip_rate_limit, window, overage),
        )
        return cls(
            users=users,
            refresh_tokens=refresh_tokens,
            issuer=TokenIssuer.from_settings(settings, clock),
            verifier=verifier or PasswordVerifier(users),
            attempts=AttemptTracker(attempt_store, policy, clock),
            limiter=RateLimiter(rate_store if rate_store is not None else MemoryRateWindowStore(), clock),
            rules=rules,
            dispatcher=dispatcher,
            clock=clock,
        )

    @property
    def users(self) -> UserStore:
        return self._users

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, identifier: str, secret: str, role: str = DEFAULT_ROLE) -> User:
        """Create an account. The unique username constraint is the duplicate check."""
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role!r}")
        user = User(
            username=normalize_identifier(identifier),
            role=role,
            hashed_password=hash_password(secret),
        )
        with _store_guard("register"):
            try:
                user.id = self._users.create_user(user)
            except IntegrityError:
                raise AccountExists() from None
        logger.info("Account created: id=%s role=%s", user.id, user.role)
        return user

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, identifier: str, secret: str, client: ClientContext | None = None) -> IssuedSession:
        """Authenticate and start a new session family.

        Order: rate limit (cheapest), lockout, then the verifier. A locked
        identifier never reaches the verifier, even with the right secret.
        The failure that reaches the threshold is itself answered with
        AccountLocked.
        """
        client = client or ClientContext()
        key = normalize_identifier(identifier)

        if not client.bypass_rate_limit:
            self._check_rate(self._rules.login_ip, client.ip)
            self._check_rate(self._rules.login_user, key)

        with _store_guard("login"):
            if self._attempts.locked_until(key) is not None:
                logger.info("Login short-circuited: identifier locked (ip=%s)", client.ip)
                raise AccountLocked()

            user = self._verifier.verify(key, secret)
            if user is None:
                state = self._attempts.record_failure(key)
                now = self._clock.now()
                if is_locked(state, now):
                    self._publish(events.ACCOUNT_LOCKED, client, detail={"until": state.locked_until.isoformat()})
                    raise AccountLocked()
                self._publish(events.LOGIN_FAILED, client, detail={"attempts": state.failed_attempts})
                raise InvalidCredentials()

            self._attempts.record_success(key)
            now = self._clock.now()
            self._users.update_last_login(user.id, now)
            session = self._start_family(user, client)

        self._publish(events.LOGIN_SUCCEEDED, client, user_id=user.id, session_id=session.session_id)
        return session

    def _start_family(self, user: User, client: ClientContext) -> IssuedSession:
        raw, token_hash, expires_at = self._issuer.new_refresh_token()
        family_id = self._issuer.new_session_id()
        self._refresh.create(
            RefreshRecord(
                token_hash=token_hash,
                family_id=family_id,
                user_id=user.id,
                issued_at=self._clock.now(),
                expires_at=expires_at,
                created_by_ip=client.ip,
                user_agent=client.user_agent,
            )
        )
        access, expires_in = self._issuer.issue_access(user, family_id)
        return IssuedSession(access, expires_in, raw, expires_at, family_id, user)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, presented: str | None, client: ClientContext | None = None) -> IssuedSession:
        """Rotate the presented refresh credential and mint a new access token."""
        client = client or ClientContext()
        if not presented:
            raise TokenMissing()
        if not client.bypass_rate_limit:
            self._check_rate(self._rules.refresh_ip, client.ip)

        token_hash = self._issuer.hash_refresh_token(presented)
        with _store_guard("refresh"):
            record = self._refresh.get(token_hash)
            if record is None:
                logger.info("Refresh rejected: unknown token (ip=%s)", client.ip)
                raise TokenInvalid()

            now = self._clock.now()
            if not record.is_live:
                self._revoke_replayed_family(record, client)
                raise TokenReusedOrRevoked()
            if now >= record.expires_at:
                self._refresh.revoke_family(record.family_id, now, "expired", client.ip)
                logger.info("Refresh rejected: expired token (session=%s)", record.family_id)
                raise TokenExpired()

            user = self._users.get_by_id(record.user_id)
            if user is None or not user.is_active:
                self._refresh.revoke_family(record.family_id, now, "account_inactive", client.ip)
                logger.info("Refresh rejected: account %s missing or inactive", record.user_id)
                raise TokenInvalid()

            raw, new_hash, expires_at = self._issuer.new_refresh_token()
            successor = RefreshRecord(
                token_hash=new_hash,
                family_id=record.family_id,
                user_id=record.user_id,
                issued_at=now,
                expires_at=expires_at,
                created_by_ip=client.ip,
                user_agent=client.user_agent,
            )
            if not self._refresh.rotate(token_hash, successor, now):
                # Another caller consumed this record between our read and the CAS.
                self._revoke_replayed_family(record, client)
                raise TokenReusedOrRevoked()

            access, expires_in = self._issuer.issue_access(user, record.family_id)

        self._publish(events.REFRESH_ROTATED, client, user_id=user.id, session_id=record.family_id)
        return IssuedSession(access, expires_in, raw, expires_at, record.family_id, user)

    def _revoke_replayed_family(self, record: RefreshRecord, client: ClientContext) -> None:
        now = self._clock.now()
        revoked = self._refresh.revoke_family(record.family_id, now, "reuse_detected", client.ip)
        logger.warning(
            "Refresh token reuse detected: session=%s user=%s ip=%s revoked=%d",
            record.family_id,
            record.user_id,
            client.ip,
            revoked,
        )
        self._publish(
            events.REFRESH_REUSE_DETECTED,
            client,
            user_id=record.user_id,
            session_id=record.family_id,
            detail={"revoked": revoked},
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, presented: str | None, client: ClientContext | None = None) -> None:
        """End the session the presented credential belongs to.

        The whole family is revoked, not just the presented record, in case
        the client logs out with a token that has since been rotated. A
        presented record that was already terminal (or expired) is still a
        rejection, so logging out twice answers 401 the second time.
        """
        client = client or ClientContext()
        if not presented:
            raise TokenMissing()

        token_hash = self._issuer.hash_refresh_token(presented)
        with _store_guard("logout"):
            record = self._refresh.get(token_hash)
            if record is None:
                raise TokenInvalid()
            now = self._clock.now()
            revoked = self._refresh.revoke_family(record.family_id, now, "logout", client.ip)

        if not record.is_live:
            if record.rotated_at is not None and revoked:
                logger.warning("Logout with a rotated token: session=%s revoked=%d", record.family_id, revoked)
            raise TokenReusedOrRevoked()
        if now >= record.expires_at:
            raise TokenExpired()

        self._publish(events.LOGOUT, client, user_id=record.user_id, session_id=record.family_id)

    def logout_all(self, claims: AccessClaims, client: ClientContext | None = None) -> int:
        """Revoke every live refresh record of the access token's subject.

        Access tokens already issued stay valid until they expire; they are
        stateless by construction.
        """
        client = client or ClientContext()
        with _store_guard("logout_all"):
            revoked = self._refresh.revoke_subject(claims.sub, self._clock.now(), "logout_all", client.ip)
        self._publish(events.LOGOUT_ALL, client, user_id=claims.sub, session_id=claims.sid, detail={"revoked": revoked})
        return revoked

    def revoke_all_for_user(self, user_id: int, reason: str = "admin_revoked") -> int:
        """Operator-initiated logout-all (account deactivation, support request)."""
        client = ClientContext(ip="admin")
        with _store_guard("revoke_all_for_user"):
            revoked = self._refresh.revoke_subject(user_id, self._clock.now(), reason, client.ip)
        logger.info("Revoked %d refresh records of user %s (%s)", revoked, user_id, reason)
        self._publish(events.LOGOUT_ALL, client, user_id=user_id, detail={"revoked": revoked, "reason": reason})
        return revoked

    # ------------------------------------------------------------------
    # Who am I
    # ------------------------------------------------------------------

    def who_am_i(self, access_token: str | None) -> AccessClaims:
        """Verify an access token. Signature and expiry only; no store access."""
        if not access_token:
            raise Unauthenticated()
        return self._issuer.decode_access(access_token)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def unlock(self, identifier: str) -> None:
        with _store_guard("unlock"):
            self._attempts.unlock(normalize_identifier(identifier))

    def active_sessions(self, user_id: int) -> int:
        with _store_guard("active_sessions"):
            return self._refresh.count_live(user_id, self._clock.now())

    def purge_expired(self) -> int:
        """Maintenance sweep: expired refresh records, idle attempt state, idle rate windows.

        Returns the number of refresh records removed.
        """
        with _store_guard("purge"):
            removed = self._refresh.purge_expired(self._clock.now())
            attempts = self._attempts.purge_stale()
            windows = self._limiter.sweep(self._rules.longest_window())
        if removed or attempts or windows:
            logger.info(
                "Purged %d expired refresh records, %d idle attempt keys, %d idle rate windows",
                removed,
                attempts,
                windows,
            )
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_rate(self, rule: RateLimitRule, key: str) -> None:
        with _store_guard("rate limit"):
            decision = self._limiter.hit(rule, key)
        if not decision.allowed:
            logger.info("Rate limited: scope=%s retry_after=%ds", rule.scope, decision.retry_after)
            raise RateLimited(decision.retry_after)

    def _publish(
        self,
        kind: str,
        client: ClientContext,
        *,
        user_id: int | None = None,
        session_id: str | None = None,
        detail: dict | None = None,
    ) -> None:
        self._events.publish(
            SessionEvent(
                kind=kind,
                at=self._clock.now(),
                user_id=user_id,
                session_id=session_id,
                ip=client.ip,
                detail=detail or {},
            )
        )
