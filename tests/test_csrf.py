"""CSRF token issuance, binding and double-submit checks."""

from datetime import datetime, timedelta

import pytest

from gatekeep.service.csrf import CsrfGuard, is_safe_method
from gatekeep.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def guard(store):
    return CsrfGuard(store, "unit-test-csrf-secret", ttl_minutes=30)


class TestTokens:
    def test_token_is_256_bit_hex(self, guard):
        token = guard.generate_token()
        assert len(token) == 64
        int(token, 16)

    def test_tokens_are_unique(self, guard):
        assert guard.generate_token() != guard.generate_token()

    def test_unbound_token_validates(self, guard):
        token = guard.generate_token()
        assert guard.validate_token(token)
        assert not guard.validate_token("f" * 64)
        assert not guard.validate_token("")

    def test_bound_token_requires_matching_binding(self, guard):
        token = guard.generate_token("session-1", "user-1")
        assert guard.validate_token(token, "session-1", "user-1")
        assert not guard.validate_token(token, "session-2", "user-1")
        assert not guard.validate_token(token, "session-1", "user-2")

    def test_expired_token_is_rejected(self, guard, store):
        token = guard.generate_token()
        store.csrf_tokens[token].expires_at = datetime.utcnow() - timedelta(seconds=1)
        assert not guard.validate_token(token)
        assert guard.token_info(token)["valid"] is False

    def test_token_info(self, guard):
        token = guard.generate_token("session-1", "user-1")
        info = guard.token_info(token)
        assert info["valid"] is True
        assert info["session_id"] == "session-1"
        assert info["user_id"] == "user-1"
        assert guard.token_info("missing") is None

    def test_empty_secret_is_refused(self, store):
        with pytest.raises(ValueError):
            CsrfGuard(store, "")


class TestDoubleSubmit:
    def test_matching_pair_is_accepted(self, guard):
        token, cookie = guard.create_double_submit_cookie()
        assert cookie != token
        assert guard.validate_double_submit(token, cookie)

    def test_mismatched_cookie_is_rejected(self, guard):
        token, _ = guard.create_double_submit_cookie()
        _, other_cookie = guard.create_double_submit_cookie()
        assert not guard.validate_double_submit(token, other_cookie)

    def test_missing_cookie_or_header_is_rejected(self, guard):
        token, cookie = guard.create_double_submit_cookie()
        assert not guard.validate_double_submit(token, None)
        assert not guard.validate_double_submit(None, cookie)

    def test_cookie_equal_to_token_is_rejected(self, guard):
        # the cookie must carry the HMAC, not a copy of the header
        token, _ = guard.create_double_submit_cookie()
        assert not guard.validate_double_submit(token, token)

    def test_cookie_from_other_secret_is_rejected(self, guard, store):
        token, _ = guard.create_double_submit_cookie()
        forged = CsrfGuard(store, "attacker-secret").cookie_value(token)
        assert not guard.validate_double_submit(token, forged)

    @pytest.mark.parametrize("method", ["GET", "head", "OPTIONS"])
    def test_safe_methods(self, method):
        assert is_safe_method(method)

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
    def test_unsafe_methods(self, method):
        assert not is_safe_method(method)


class TestRevocation:
    def test_revoke_by_session_and_user(self, guard):
        a = guard.generate_token("session-1", "user-1")
        b = guard.generate_token("session-2", "user-1")
        c = guard.generate_token("session-3", "user-2")

        assert guard.revoke_session_tokens("session-1") == 1
        assert not guard.validate_token(a)
        assert guard.validate_token(b)

        assert guard.revoke_user_tokens("user-1") == 1
        assert not guard.validate_token(b)
        assert guard.validate_token(c)

    def test_cleanup_removes_only_expired(self, guard, store):
        stale = guard.generate_token()
        fresh = guard.generate_token()
        store.csrf_tokens[stale].expires_at = datetime.utcnow() - timedelta(minutes=1)

        assert guard.cleanup_expired() == 1
        assert guard.token_info(stale) is None
        assert guard.validate_token(fresh)
