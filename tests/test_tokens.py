"""Unit tests for auth/tokens.py and auth/passwords.py.

Covers:
- issue_pair() -> authenticate() round trip, refresh jti allow-listed
- wrong token type, tampered signature and garbage are invalid_token
- exp == now is already expired (token_expired)
- tokens minted before password_changed_at fail with password_changed
- deactivated and unknown users
- one-time token helpers
- bcrypt helpers: verify, 72-byte cap, malformed hash
- auth cookies take their Max-Age from the TokenService that minted the pair
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from starlette.responses import Response

from auth.passwords import hash_password, verify_password
from auth.tokens import (
    ACCESS,
    ACCESS_COOKIE,
    REFRESH,
    REFRESH_COOKIE,
    REFRESH_COOKIE_PATH,
    TokenService,
    generate_token,
    hash_token,
    set_auth_cookies,
)
from core.errors import ErrorKind, ServiceError


@pytest.fixture
def user(make_user):
    return make_user("alice@example.test")


class TestIssueAndAuthenticate:
    def test_round_trip(self, token_service: TokenService, user) -> None:
        pair = token_service.issue_pair(user)
        assert token_service.authenticate(pair.access_token).id == user.id
        assert pair.token_type == "bearer"

    def test_refresh_jti_is_allow_listed(self, token_service: TokenService, user_store, user) -> None:
        pair = token_service.issue_pair(user)
        record = user_store.get_refresh_token(pair.refresh_jti)
        assert record is not None
        assert record.user_id == user.id
        assert record.revoked_at is None
        claims = token_service.verify(pair.refresh_token, REFRESH)
        assert claims.jti == pair.refresh_jti

    def test_expiry_times_follow_ttls(self, token_service: TokenService, clock, user) -> None:
        pair = token_service.issue_pair(user)
        assert pair.access_expires_at == clock.now() + timedelta(seconds=token_service.access_ttl)
        assert pair.refresh_expires_at == clock.now() + timedelta(seconds=token_service.refresh_ttl)


class TestVerifyFailures:
    def test_refresh_token_is_not_an_access_token(self, token_service: TokenService, user) -> None:
        pair = token_service.issue_pair(user)
        with pytest.raises(ServiceError) as exc:
            token_service.verify(pair.refresh_token, ACCESS)
        assert exc.value.kind is ErrorKind.invalid_token

    def test_access_token_is_not_a_refresh_token(self, token_service: TokenService, user) -> None:
        pair = token_service.issue_pair(user)
        with pytest.raises(ServiceError) as exc:
            token_service.verify(pair.access_token, REFRESH)
        assert exc.value.kind is ErrorKind.invalid_token

    def test_foreign_signature_rejected(self, token_service: TokenService, user_store, clock, user) -> None:
        other = TokenService(user_store, "x" * 40, clock=clock)
        pair = other.issue_pair(user)
        with pytest.raises(ServiceError) as exc:
            token_service.verify(pair.access_token)
        assert exc.value.kind is ErrorKind.invalid_token

    @pytest.mark.parametrize("garbage", ["", "not-a-jwt", "a.b.c"])
    def test_garbage_rejected(self, token_service: TokenService, garbage: str) -> None:
        with pytest.raises(ServiceError) as exc:
            token_service.verify(garbage)
        assert exc.value.kind is ErrorKind.invalid_token

    def test_expiry_boundary_is_exclusive(self, token_service: TokenService, clock, user) -> None:
        """A token whose exp equals now is already expired."""
        pair = token_service.issue_pair(user)
        clock.advance(seconds=token_service.access_ttl - 1)
        assert token_service.authenticate(pair.access_token).id == user.id
        clock.advance(seconds=1)
        with pytest.raises(ServiceError) as exc:
            token_service.authenticate(pair.access_token)
        assert exc.value.kind is ErrorKind.token_expired


class TestUserChecks:
    def test_token_older_than_password_change(self, token_service: TokenService, user_store, clock, user) -> None:
        pair = token_service.issue_pair(user)
        clock.advance(seconds=5)
        user.password_changed_at = clock.now()
        user_store.save(user)
        with pytest.raises(ServiceError) as exc:
            token_service.authenticate(pair.access_token)
        assert exc.value.kind is ErrorKind.password_changed

    def test_token_minted_at_checkpoint_is_valid(self, token_service: TokenService, user_store, clock, user) -> None:
        user.password_changed_at = clock.now()
        user_store.save(user)
        pair = token_service.issue_pair(user, clock.now())
        assert token_service.authenticate(pair.access_token).id == user.id

    def test_inactive_user(self, token_service: TokenService, user_store, user) -> None:
        pair = token_service.issue_pair(user)
        user.is_active = False
        user_store.save(user)
        with pytest.raises(ServiceError) as exc:
            token_service.authenticate(pair.access_token)
        assert exc.value.kind is ErrorKind.inactive

    def test_unknown_user(self, token_service: TokenService, user) -> None:
        user.id = 9999
        pair = token_service.issue_pair(user)
        with pytest.raises(ServiceError) as exc:
            token_service.authenticate(pair.access_token)
        assert exc.value.kind is ErrorKind.not_found


class TestOneTimeTokens:
    def test_generate_token_is_64_hex_chars(self) -> None:
        token = generate_token()
        assert len(token) == 64
        int(token, 16)
        assert generate_token() != token

    def test_hash_token_is_stable_sha256(self) -> None:
        assert hash_token("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("s3cret-pass", rounds=4)
        assert hashed != "s3cret-pass"
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong-pass", hashed)

    def test_long_passwords_are_capped_at_72_bytes(self) -> None:
        base = "a" * 72
        hashed = hash_password(base + "tail", rounds=4)
        assert verify_password(base, hashed)

    def test_malformed_hash_is_a_failed_match(self) -> None:
        assert not verify_password("anything", "not-a-bcrypt-hash")

    def test_store_verify_unknown_user_is_false(self, user_store) -> None:
        assert user_store.verify_password(None, "whatever") is False


class TestCookies:
    def test_max_age_follows_the_issuing_service(self, user_store, clock, settings, user) -> None:
        service = TokenService(user_store, settings.secret_key, access_ttl=120, refresh_ttl=900, clock=clock)
        response = Response()
        set_auth_cookies(response, service.issue_pair(user), service, secure=True)

        headers = response.headers.getlist("set-cookie")
        access = next(h for h in headers if h.startswith(f"{ACCESS_COOKIE}="))
        refresh = next(h for h in headers if h.startswith(f"{REFRESH_COOKIE}="))
        assert "Max-Age=120" in access
        assert "Max-Age=900" in refresh
        assert f"Path={REFRESH_COOKIE_PATH}" in refresh
        assert "HttpOnly" in access
        assert "Secure" in access
