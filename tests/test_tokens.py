"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - Access JWT round trip carries sub, role, sid and whole-second iat/exp
  - Expiry is judged by the injected clock; exp itself is already expired
  - Tampered, foreign-key and garbage tokens raise Unauthenticated
  - Refresh credentials are opaque, unique, and stored only as HMAC digests
  - PasswordVerifier rejects unknown, wrong-password and inactive accounts
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.errors import AccessTokenExpired, Unauthenticated
from auth.models import User
from auth.store import UserStore
from auth.tokens import PasswordVerifier, TokenIssuer, hash_password, normalize_identifier, verify_password
from tests.conftest import TEST_SECRET, FakeClock


@pytest.fixture
def issuer(clock: FakeClock) -> TokenIssuer:
    return TokenIssuer(TEST_SECRET, access_ttl_seconds=900, refresh_ttl=timedelta(days=30), clock=clock)


def _user() -> User:
    return User(username="ana@obra.example", role="lider de obra", id=7)


class TestAccessTokens:
    def test_round_trip_claims(self, issuer: TokenIssuer, clock: FakeClock) -> None:
        token, expires_in = issuer.issue_access(_user(), "fam1")
        claims = issuer.decode_access(token)
        assert expires_in == 900
        assert claims.sub == 7
        assert claims.role == "lider de obra"
        assert claims.sid == "fam1"
        assert claims.iat == clock.now()
        assert claims.exp == clock.now() + timedelta(seconds=900)

    def test_valid_one_second_before_exp(self, issuer: TokenIssuer, clock: FakeClock) -> None:
        token, _ = issuer.issue_access(_user(), "fam1")
        clock.advance(seconds=899)
        assert issuer.decode_access(token).sub == 7

    def test_expired_at_exp(self, issuer: TokenIssuer, clock: FakeClock) -> None:
        token, _ = issuer.issue_access(_user(), "fam1")
        clock.advance(seconds=900)
        with pytest.raises(AccessTokenExpired):
            issuer.decode_access(token)

    def test_expired_is_unauthenticated(self) -> None:
        assert issubclass(AccessTokenExpired, Unauthenticated)

    def test_tampered_token_rejected(self, issuer: TokenIssuer) -> None:
        token, _ = issuer.issue_access(_user(), "fam1")
        head, payload, sig = token.split(".")
        tampered = f"{head}.{payload}.{sig[:-2]}{'AA' if sig[-2:] != 'AA' else 'BB'}"
        with pytest.raises(Unauthenticated):
            issuer.decode_access(tampered)

    def test_token_from_other_key_rejected(self, issuer: TokenIssuer, clock: FakeClock) -> None:
        other = TokenIssuer("another-secret-key-that-is-long-enough-xyz", clock=clock)
        token, _ = other.issue_access(_user(), "fam1")
        with pytest.raises(Unauthenticated):
            issuer.decode_access(token)

    def test_garbage_rejected(self, issuer: TokenIssuer) -> None:
        with pytest.raises(Unauthenticated):
            issuer.decode_access("not-a-jwt")

    def test_audience_enforced_when_configured(self, clock: FakeClock) -> None:
        portal = TokenIssuer(TEST_SECRET, issuer="sitepass", audience="portal", clock=clock)
        mobile = TokenIssuer(TEST_SECRET, issuer="sitepass", audience="mobile", clock=clock)
        token, _ = portal.issue_access(_user(), "fam1")
        assert portal.decode_access(token).sub == 7
        with pytest.raises(Unauthenticated):
            mobile.decode_access(token)

    def test_short_secret_refused(self) -> None:
        with pytest.raises(ValueError):
            TokenIssuer("short")


class TestRefreshCredentials:
    def test_new_refresh_tokens_are_unique(self, issuer: TokenIssuer) -> None:
        raws = {issuer.new_refresh_token()[0] for _ in range(50)}
        assert len(raws) == 50

    def test_hash_is_deterministic_and_not_the_raw_value(self, issuer: TokenIssuer) -> None:
        raw, token_hash, _ = issuer.new_refresh_token()
        assert token_hash == issuer.hash_refresh_token(raw)
        assert raw not in token_hash
        assert len(token_hash) == 64

    def test_hash_depends_on_secret(self, issuer: TokenIssuer) -> None:
        other = TokenIssuer("another-secret-key-that-is-long-enough-xyz")
        assert issuer.hash_refresh_token("abc") != other.hash_refresh_token("abc")

    def test_expiry_is_ttl_from_now(self, issuer: TokenIssuer, clock: FakeClock) -> None:
        _, _, expires_at = issuer.new_refresh_token()
        assert expires_at == clock.now() + timedelta(days=30)


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("Pw#12345")
        assert verify_password("Pw#12345", hashed)
        assert not verify_password("pw#12345", hashed)

    def test_malformed_hash_is_mismatch(self) -> None:
        assert not verify_password("anything", "not-a-bcrypt-hash")

    def test_normalize_identifier(self) -> None:
        assert normalize_identifier("  Ana@Obra.Example ") == "ana@obra.example"


class TestPasswordVerifier:
    @pytest.fixture
    def users(self, engine) -> UserStore:
        store = UserStore(engine=engine)
        store.create_user(User(username="ana@obra.example", hashed_password=hash_password("Pw#12345")))
        store.create_user(
            User(username="old@obra.example", hashed_password=hash_password("Pw#12345"), is_active=False)
        )
        return store

    def test_accepts_correct_password_any_case(self, users: UserStore) -> None:
        user = PasswordVerifier(users).verify(" ANA@obra.example", "Pw#12345")
        assert user is not None
        assert user.username == "ana@obra.example"

    def test_rejects_wrong_password(self, users: UserStore) -> None:
        assert PasswordVerifier(users).verify("ana@obra.example", "wrong") is None

    def test_rejects_unknown_identifier(self, users: UserStore) -> None:
        assert PasswordVerifier(users).verify("nobody@obra.example", "Pw#12345") is None

    def test_rejects_inactive_account(self, users: UserStore) -> None:
        assert PasswordVerifier(users).verify("old@obra.example", "Pw#12345") is None
