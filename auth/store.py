"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore, RefreshTokenStore, SqlAttemptStore
and SqlRateWindowStore are the repositories; the _row_to_* functions are the
mappers. The session service never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity:
  RefreshTokenStore.rotate() is a compare-and-swap: a single conditional
  UPDATE that only matches a live, unexpired record, followed in the same
  transaction by the successor INSERT. Exactly one concurrent caller sees
  rowcount == 1; everyone else sees a terminal record and must take the
  reuse path.

  revoke_family() and revoke_subject() are single bulk UPDATEs. A rotation
  racing a sweep either commits first (its successor is inserted before the
  sweep runs and gets revoked with the rest) or loses its CAS.

  Every transaction opens with a write statement. SQLite serializes writers,
  and starting with a write avoids the deferred-transaction read-to-write
  upgrade that fails with SQLITE_BUSY under WAL.

Timestamps are stored as fixed-width ISO 8601 UTC strings so lexicographic
comparison in SQL matches chronological order.

DB path: auth/sitepass_auth.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TypeVar

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import AttemptState, RefreshRecord, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'sitepass_auth.db'}"

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),  # normalized e-mail
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="cliente"),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("family_id", String(32), nullable=False, index=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("rotated_at", String(32)),
    Column("revoked_at", String(32)),
    Column("replaced_by", String(64)),
    Column("last_used_at", String(32)),
    Column("created_by_ip", String(64), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("revoked_by_ip", String(64)),
    Column("revoke_reason", String(32)),
)

_login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("key", String(255), primary_key=True),  # normalized login identifier
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("last_failed_at", String(32)),
    Column("locked_until", String(32)),
    Column("lock_count", Integer, nullable=False, server_default="0"),
)

_rate_windows = Table(
    "rate_windows",
    _metadata,
    Column("key", String(320), primary_key=True),  # scope:key
    Column("hits", Text, nullable=False),  # JSON list of epoch seconds
    Column("last_hit", Float, nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str = _DEFAULT_DB_URL) -> Engine:
    """Create an Engine for db_url and make sure every auth table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


class _EngineOwner:
    """Shared constructor: use a given Engine, or own one built from db_url."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL, engine: Engine | None = None) -> None:
        self._owns_engine = engine is None
        self.engine: Engine = engine if engine is not None else create_store_engine(db_url)
        if not self._owns_engine:
            _metadata.create_all(self.engine)

    def close(self) -> None:
        if self._owns_engine:
            self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _from_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return _to_ts(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore(_EngineOwner):
    """Repository for User records (the local user directory).

    Usage:
        store = UserStore()
        store.create_user(User(username="a@x.com", hashed_password=hash_password("secret")))
        user = store.get_by_username("a@x.com")
        store.close()
    """

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact (already normalized) username."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields (role, is_active, hashed_password).

        Returns True if a row was updated, False if user_id was not found.
        """
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, user_id: int, when: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_to_ts(when)))


# ---------------------------------------------------------------------------
# Refresh chains
# ---------------------------------------------------------------------------


class RefreshTokenStore(_EngineOwner):
    """Repository for RefreshRecord rows: the refresh chain store.

    Exposes only create / get / rotate (atomic transition) / revoke_family /
    revoke_subject, plus purge_expired for maintenance and list_family for
    inspection. Records are never updated through any other path.
    """

    def create(self, record: RefreshRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(_refresh_tokens.insert().values(**_record_to_row(record)))

    def get(self, token_hash: str) -> RefreshRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def list_family(self, family_id: str) -> list[RefreshRecord]:
        """All records of one family, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.family_id == family_id)
                .order_by(_refresh_tokens.c.issued_at, _refresh_tokens.c.rotated_at.is_(None))
            ).fetchall()
        return [_row_to_refresh(r) for r in rows]

    def rotate(self, token_hash: str, successor: RefreshRecord, now: datetime) -> bool:
        """Consume token_hash and insert successor in one transaction.

        Returns True only for the caller that won the compare-and-swap. False
        means the record was already rotated, revoked, expired, or missing --
        nothing was written.
        """
        now_ts = _to_ts(now)
        t = _refresh_tokens.c
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (t.token_hash == token_hash)
                    & t.rotated_at.is_(None)
                    & t.revoked_at.is_(None)
                    & (t.expires_at > now_ts)
                )
                .values(rotated_at=now_ts, last_used_at=now_ts, replaced_by=successor.token_hash)
            )
            if result.rowcount != 1:
                return False
            conn.execute(_refresh_tokens.insert().values(**_record_to_row(successor)))
        return True

    def revoke_family(self, family_id: str, now: datetime, reason: str, ip: str | None = None) -> int:
        """Revoke every live record of one family. Returns the number revoked."""
        t = _refresh_tokens.c
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((t.family_id == family_id) & t.rotated_at.is_(None) & t.revoked_at.is_(None))
                .values(revoked_at=_to_ts(now), revoke_reason=reason, revoked_by_ip=ip)
            )
        return result.rowcount

    def revoke_subject(self, user_id: int, now: datetime, reason: str, ip: str | None = None) -> int:
        """Revoke every live record of every family owned by user_id."""
        t = _refresh_tokens.c
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((t.user_id == user_id) & t.rotated_at.is_(None) & t.revoked_at.is_(None))
                .values(revoked_at=_to_ts(now), revoke_reason=reason, revoked_by_ip=ip)
            )
        return result.rowcount

    def count_live(self, user_id: int, now: datetime) -> int:
        """Number of live, unexpired refresh records (active sessions) for user_id."""
        t = _refresh_tokens.c
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where(
                    (t.user_id == user_id)
                    & t.rotated_at.is_(None)
                    & t.revoked_at.is_(None)
                    & (t.expires_at > _to_ts(now))
                )
            ).scalar()
        return result or 0

    def purge_expired(self, now: datetime) -> int:
        """Delete records past expires_at. Returns number of rows removed.

        Reuse of a purged record reads as an unknown token, which is still a
        rejection; its successors expire no earlier than it did.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= _to_ts(now)))
        return result.rowcount


# ---------------------------------------------------------------------------
# Login attempts
# ---------------------------------------------------------------------------


class SqlAttemptStore(_EngineOwner):
    """Keyed failed-login counters shared by every process using the database."""

    def get(self, key: str) -> AttemptState:
        with self.engine.connect() as conn:
            row = conn.execute(_login_attempts.select().where(_login_attempts.c.key == key)).fetchone()
        return _row_to_attempt(row) if row is not None else AttemptState(key=key)

    def update(self, key: str, transition: Callable[[AttemptState], AttemptState]) -> AttemptState:
        """Apply transition to the key's state atomically and persist the result."""
        a = _login_attempts.c
        with self.engine.begin() as conn:
            # Write first: takes the writer lock before the read below.
            touched = conn.execute(
                _login_attempts.update().where(a.key == key).values(lock_count=a.lock_count)
            ).rowcount
            if touched == 0:
                conn.execute(_login_attempts.insert().values(key=key, failed_attempts=0, lock_count=0))
            row = conn.execute(_login_attempts.select().where(a.key == key)).fetchone()
            state = transition(_row_to_attempt(row))
            conn.execute(
                _login_attempts.update()
                .where(a.key == key)
                .values(
                    failed_attempts=state.failed_attempts,
                    last_failed_at=_to_ts(state.last_failed_at),
                    locked_until=_to_ts(state.locked_until),
                    lock_count=state.lock_count,
                )
            )
        return state

    def delete(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_login_attempts.delete().where(_login_attempts.c.key == key))

    def purge(self, now: datetime, idle: timedelta) -> int:
        """Delete unlocked rows whose last failure is at least idle old. Returns rows removed."""
        a = _login_attempts.c
        with self.engine.begin() as conn:
            result = conn.execute(
                _login_attempts.delete().where(
                    (a.locked_until.is_(None) | (a.locked_until <= _to_ts(now)))
                    & (a.last_failed_at.is_(None) | (a.last_failed_at <= _to_ts(now - idle)))
                )
            )
        return result.rowcount


# ---------------------------------------------------------------------------
# Rate windows
# ---------------------------------------------------------------------------


class SqlRateWindowStore(_EngineOwner):
    """Sliding-window hit logs shared by every process using the database.

    Each row holds one key's hit timestamps as a JSON list. apply() runs the
    limiter's function inside one transaction that opens with a write, so
    concurrent hits on a key are serialized like attempt updates.
    """

    def apply(self, key: str, fn: Callable[[list[float]], tuple[list[float], T]]) -> T:
        r = _rate_windows.c
        with self.engine.begin() as conn:
            touched = conn.execute(_rate_windows.update().where(r.key == key).values(last_hit=r.last_hit)).rowcount
            hits: list[float] = []
            if touched:
                row = conn.execute(select(r.hits).where(r.key == key)).fetchone()
                hits = json.loads(row.hits)
            hits, result = fn(hits)
            if hits:
                values = {"hits": json.dumps(hits), "last_hit": max(hits)}
                if touched:
                    conn.execute(_rate_windows.update().where(r.key == key).values(**values))
                else:
                    conn.execute(_rate_windows.insert().values(key=key, **values))
            elif touched:
                conn.execute(_rate_windows.delete().where(r.key == key))
        return result

    def __len__(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_rate_windows)).scalar() or 0

    def prune(self, cutoff: float) -> int:
        """Delete keys whose newest hit is older than cutoff (epoch seconds)."""
        with self.engine.begin() as conn:
            result = conn.execute(_rate_windows.delete().where(_rate_windows.c.last_hit < cutoff))
        return result.rowcount

    def clear(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(_rate_windows.delete())


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        role=row.role,
        created_at=row.created_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
    )


def _record_to_row(record: RefreshRecord) -> dict:
    return {
        "token_hash": record.token_hash,
        "family_id": record.family_id,
        "user_id": record.user_id,
        "issued_at": _to_ts(record.issued_at),
        "expires_at": _to_ts(record.expires_at),
        "rotated_at": _to_ts(record.rotated_at),
        "revoked_at": _to_ts(record.revoked_at),
        "replaced_by": record.replaced_by,
        "last_used_at": _to_ts(record.last_used_at),
        "created_by_ip": record.created_by_ip,
        "user_agent": record.user_agent,
        "revoked_by_ip": record.revoked_by_ip,
        "revoke_reason": record.revoke_reason,
    }


def _row_to_refresh(row) -> RefreshRecord:
    return RefreshRecord(
        token_hash=row.token_hash,
        family_id=row.family_id,
        user_id=row.user_id,
        issued_at=_from_ts(row.issued_at),
        expires_at=_from_ts(row.expires_at),
        rotated_at=_from_ts(row.rotated_at),
        revoked_at=_from_ts(row.revoked_at),
        replaced_by=row.replaced_by,
        last_used_at=_from_ts(row.last_used_at),
        created_by_ip=row.created_by_ip or "",
        user_agent=row.user_agent or "",
        revoked_by_ip=row.revoked_by_ip,
        revoke_reason=row.revoke_reason,
    )


def _row_to_attempt(row) -> AttemptState:
    return AttemptState(
        key=row.key,
        failed_attempts=row.failed_attempts or 0,
        last_failed_at=_from_ts(row.last_failed_at),
        locked_until=_from_ts(row.locked_until),
        lock_count=row.lock_count or 0,
    )
