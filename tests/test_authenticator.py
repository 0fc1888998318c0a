"""Credential, refresh, recovery and request-authentication flows."""

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from gatekeep.service.auth import FORGOT_PASSWORD_MESSAGE, AuthResult, MfaChallenge
from gatekeep.service.devices import ClientInfo
from gatekeep.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    RateLimitedError,
    ServerError,
    TokenExpired,
    ValidationError,
)
from gatekeep.storage.models import USER_STATUS_INACTIVE

PASSWORD = "Sturdy-Lantern-42-Quay!"
NEW_PASSWORD = "Correct-Horse-Battery-9x!"
LAPTOP = ClientInfo(ip_address="10.0.0.1", user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0")
PHONE = ClientInfo(ip_address="10.0.0.2", user_agent="Mozilla/5.0 (iPhone) Mobile Safari/604.1")


def _actions(runtime):
    return [e.action for e in runtime.store.audit_logs]


class TestSignup:
    async def test_signup_signs_in_with_default_role(self, runtime):
        result = await runtime.auth.signup("New.User@Example.com", PASSWORD, name="Grace Hopper")

        assert isinstance(result, AuthResult)
        assert result.email == "new.user@example.com"
        assert result.role == "USER"
        assert (result.first_name, result.last_name) == ("Grace", "Hopper")
        assert "USER_CREATED" in _actions(runtime)
        assert runtime.sessions.get_session(result.session_id).is_current

    async def test_trusted_caller_may_pick_role(self, runtime):
        result = await runtime.auth.signup("ops@example.com", PASSWORD, role="admin")
        assert result.role == "ADMIN"

    async def test_duplicate_email(self, runtime):
        await runtime.auth.signup("dup@example.com", PASSWORD)
        with pytest.raises(ConflictError, match="Credentials taken"):
            await runtime.auth.signup("DUP@example.com", PASSWORD)

    async def test_weak_password(self, runtime):
        with pytest.raises(ValidationError) as excinfo:
            await runtime.auth.signup("weak@example.com", "password")
        assert excinfo.value.detail["errors"]

    async def test_signup_disabled(self, runtime):
        runtime.auth.settings = runtime.settings.model_copy(update={"allow_signup": False})
        with pytest.raises(ForbiddenError) as excinfo:
            await runtime.auth.signup("late@example.com", PASSWORD)
        assert excinfo.value.reason == "SIGNUP_DISABLED"


class TestSignin:
    async def test_success(self, runtime, make_user):
        user = make_user("ada@example.com", PASSWORD)

        result = await runtime.auth.signin("ADA@example.com ", PASSWORD, LAPTOP)

        assert result.user_id == user.id
        assert runtime.store.get_user(user.id).refresh_token_digest
        assert "LOGIN_SUCCESS" in _actions(runtime)

    async def test_unknown_email_and_wrong_password_look_alike(self, runtime, make_user):
        make_user("ada@example.com", PASSWORD)

        with pytest.raises(AuthenticationError) as unknown:
            await runtime.auth.signin("nobody@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await runtime.auth.signin("ada@example.com", NEW_PASSWORD)

        assert unknown.value.message == wrong.value.message == "Credentials incorrect"

    async def test_inactive_account_fails_with_correct_password(self, runtime, make_user):
        make_user("gone@example.com", PASSWORD, status=USER_STATUS_INACTIVE)
        with pytest.raises(ForbiddenError) as excinfo:
            await runtime.auth.signin("gone@example.com", PASSWORD)
        assert excinfo.value.reason == "ACCOUNT_INACTIVE"

    async def test_lockout_after_repeated_failures(self, runtime, make_user):
        make_user("ada@example.com", PASSWORD)
        for _ in range(runtime.settings.lockout_max_attempts):
            with pytest.raises(AuthenticationError):
                await runtime.auth.signin("ada@example.com", NEW_PASSWORD)

        # even the right password is refused while locked
        with pytest.raises(RateLimitedError) as excinfo:
            await runtime.auth.signin("ada@example.com", PASSWORD)
        assert excinfo.value.reason == "ACCOUNT_LOCKED"
        assert excinfo.value.detail["retry_after"] == runtime.settings.lockout_seconds
        assert "LOGIN_LOCKED" in _actions(runtime)

    async def test_success_clears_failure_count(self, runtime, make_user):
        make_user("ada@example.com", PASSWORD)
        for _ in range(runtime.settings.lockout_max_attempts - 1):
            with pytest.raises(AuthenticationError):
                await runtime.auth.signin("ada@example.com", NEW_PASSWORD)
        await runtime.auth.signin("ada@example.com", PASSWORD)
        with pytest.raises(AuthenticationError):
            await runtime.auth.signin("ada@example.com", NEW_PASSWORD)
        # not locked: one failure since the reset
        await runtime.auth.signin("ada@example.com", PASSWORD)


class TestMfaLogin:
    def _enroll(self, runtime, user):
        setup = runtime.mfa.generate_secret(user.id)
        runtime.mfa.enable(user.id, runtime.totp.now(setup["secret"]))
        return setup["secret"]

    async def test_signin_returns_challenge_without_tokens(self, runtime, make_user):
        user = make_user("mfa@example.com", PASSWORD)
        self._enroll(runtime, user)

        outcome = await runtime.auth.signin("mfa@example.com", PASSWORD, LAPTOP)

        assert isinstance(outcome, MfaChallenge)
        assert outcome.user_id == user.id
        assert runtime.sessions.list_sessions(user.id) == []
        assert runtime.store.get_user(user.id).refresh_token_digest is None

    async def test_verify_code_completes_login(self, runtime, make_user):
        user = make_user("mfa@example.com", PASSWORD)
        secret = self._enroll(runtime, user)
        await runtime.auth.signin("mfa@example.com", PASSWORD, LAPTOP)

        result = await runtime.auth.verify_login_mfa(
            "mfa@example.com", runtime.totp.now(secret), LAPTOP
        )

        assert runtime.sessions.get_session(result.session_id).mfa_verified is True

    async def test_wrong_code(self, runtime, make_user):
        user = make_user("mfa@example.com", PASSWORD)
        self._enroll(runtime, user)
        with pytest.raises(AuthenticationError, match="Invalid MFA code"):
            await runtime.auth.verify_login_mfa("mfa@example.com", "000000")

    async def test_unknown_user_gets_same_error(self, runtime):
        with pytest.raises(AuthenticationError, match="Invalid MFA code"):
            await runtime.auth.verify_login_mfa("nobody@example.com", "123456")

    async def test_regenerating_secret_keeps_mfa_enforced(self, runtime, make_user):
        user = make_user("mfa@example.com", PASSWORD)
        secret = self._enroll(runtime, user)

        with pytest.raises(ConflictError, match="already enabled"):
            runtime.mfa.generate_secret(user.id)

        assert runtime.store.get_mfa_config(user.id).secret == secret
        outcome = await runtime.auth.signin("mfa@example.com", PASSWORD, LAPTOP)
        assert isinstance(outcome, MfaChallenge)

    async def test_inactive_account_is_audited(self, runtime, make_user):
        user = make_user("mfa@example.com", PASSWORD)
        secret = self._enroll(runtime, user)
        runtime.store.set_user_status(user.id, USER_STATUS_INACTIVE)

        with pytest.raises(ForbiddenError) as excinfo:
            await runtime.auth.verify_login_mfa("mfa@example.com", runtime.totp.now(secret))
        assert excinfo.value.reason == "ACCOUNT_INACTIVE"
        failure = runtime.store.audit_logs[-1]
        assert (failure.action, failure.user_id) == ("LOGIN_FAILURE", user.id)
        assert failure.error_message == "Account is inactive"


class TestRefresh:
    async def test_refresh_rotates_and_replay_fails(self, runtime, make_user):
        user = make_user("ada@example.com", PASSWORD)
        first = await runtime.auth.signin("ada@example.com", PASSWORD, LAPTOP)

        second = await runtime.auth.refresh(first.refresh_token, LAPTOP)
        assert second.refresh_token != first.refresh_token
        assert second.session_id == first.session_id

        with pytest.raises(AuthenticationError, match="Access denied"):
            await runtime.auth.refresh(first.refresh_token, LAPTOP)
        reuse = [e for e in runtime.store.audit_logs if e.action == "SUSPICIOUS_ACTIVITY"]
        assert reuse[-1].details["reason"] == "refresh_token_reuse"
        assert reuse[-1].user_id == user.id

    async def test_old_access_token_dies_with_rotation(self, runtime, make_user):
        make_user("ada@example.com", PASSWORD)
        first = await runtime.auth.signin("ada@example.com", PASSWORD, LAPTOP)
        second = await runtime.auth.refresh(first.refresh_token, LAPTOP)

        with pytest.raises(AuthenticationError, match="Session expired or revoked"):
            runtime.auth.authenticate(f"Bearer {first.access_token}", LAPTOP)
        ctx = runtime.auth.authenticate(f"Bearer {second.access_token}", LAPTOP)
        assert ctx.session_id == first.session_id

    async def test_missing_token(self, runtime):
        with pytest.raises(AuthenticationError, match="Refresh token not provided"):
            await runtime.auth.refresh(None)

    async def test_garbage_token(self, runtime):
        with pytest.raises(AuthenticationError, match="Invalid refresh token format"):
            await runtime.auth.refresh("not.a.jwt")

    async def test_access_token_is_not_accepted(self, runtime, make_user):
        make_user("ada@example.com", PASSWORD)
        first = await runtime.auth.signin("ada@example.com", PASSWORD)
        with pytest.raises(AuthenticationError, match="Invalid refresh token format"):
            await runtime.auth.refresh(first.access_token)

    async def test_revoked_session_cannot_refresh(self, runtime, make_user):
        user = make_user("ada@example.com", PASSWORD)
        first = await runtime.auth.signin("ada@example.com", PASSWORD)
        runtime.sessions.revoke_session(first.session_id, user.id)
        with pytest.raises(AuthenticationError, match="Session expired or invalid"):
            await runtime.auth.refresh(first.refresh_token)

    async def test_lost_race_is_rejected(self, runtime, make_user, monkeypatch):
        make_user("ada@example.com", PASSWORD)
        first = await runtime.auth.signin("ada@example.com", PASSWORD)
        monkeypatch.setattr(runtime.store, "rotate_refresh_token", lambda *a, **k: False)

        with pytest.raises(AuthenticationError, match="Access denied"):
            await runtime.auth.refresh(first.refresh_token)
        reasons = [
            e.details["reason"] for e in runtime.store.audit_logs if e.action == "SUSPICIOUS_ACTIVITY"
        ]
        assert reasons == ["concurrent_refresh"]

    async def test_inactive_account_is_audited(self, runtime, make_user):
        user = make_user("ada@example.com", PASSWORD)
        first = await runtime.auth.signin("ada@example.com", PASSWORD)
        runtime.store.set_user_status(user.id, USER_STATUS_INACTIVE)

        with pytest.raises(ForbiddenError):
            await runtime.auth.refresh(first.refresh_token)
        failure = runtime.store.audit_logs[-1]
        assert (failure.action, failure.user_id) == ("LOGIN_FAILURE", user.id)

    async def test_lost_race_records_no_refresh_activity(self, runtime, make_user, monkeypatch):
        make_user("ada@example.com", PASSWORD)
        first = await runtime.auth.signin("ada@example.com", PASSWORD, LAPTOP)
        monkeypatch.setattr(runtime.store, "rotate_refresh_token", lambda *a, **k: False)

        with pytest.raises(AuthenticationError):
            await runtime.auth.refresh(first.refresh_token, LAPTOP)
        actions = [a.action for a in runtime.sessions.session_activity(first.session_id)]
        assert "REFRESH" not in actions

    async def test_refresh_is_recorded_once(self, runtime, make_user):
        make_user("ada@example.com", PASSWORD)
        first = await runtime.auth.signin("ada@example.com", PASSWORD, LAPTOP)
        await runtime.auth.refresh(first.refresh_token, LAPTOP)
        actions = [a.action for a in runtime.sessions.session_activity(first.session_id)]
        assert actions.count("REFRESH") == 1

    async def test_concurrent_refresh_has_one_winner(self, runtime, make_user):
        make_user("ada@example.com", PASSWORD)
        first = await runtime.auth.signin("ada@example.com", PASSWORD)

        outcomes = await asyncio.gather(
            runtime.auth.refresh(first.refresh_token),
            runtime.auth.refresh(first.refresh_token),
            return_exceptions=True,
        )

        winners = [o for o in outcomes if isinstance(o, AuthResult)]
        losers = [o for o in outcomes if isinstance(o, AuthenticationError)]
        assert len(winners) == 1
        assert len(losers) == 1

    async def test_login_elsewhere_invalidates_older_refresh_token(self, runtime, make_user):
        make_user("ada@example.com", PASSWORD)
        laptop = await runtime.auth.signin("ada@example.com", PASSWORD, LAPTOP)
        await runtime.auth.signin("ada@example.com", PASSWORD, PHONE)
        with pytest.raises(AuthenticationError, match="Access denied"):
            await runtime.auth.refresh(laptop.refresh_token, LAPTOP)


class TestAuthenticate:
    async def test_resolves_context(self, runtime, make_user):
        user = make_user("auditor@example.com", PASSWORD, role="AUDITOR", permissions=["audit-log:read"])
        result = await runtime.auth.signin("auditor@example.com", PASSWORD, LAPTOP)

        ctx = runtime.auth.authenticate(f"Bearer {result.access_token}", LAPTOP)

        assert ctx.user_id == user.id
        assert ctx.role == "AUDITOR"
        assert ctx.ability.can("read", "audit-log")

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer "])
    def test_missing_credentials(self, runtime, header):
        with pytest.raises(AuthenticationError, match="Authentication required"):
            runtime.auth.authenticate(header)

    async def test_expired_access_token(self, runtime, make_user, monkeypatch):
        make_user("ada@example.com", PASSWORD)
        result = await runtime.auth.signin("ada@example.com", PASSWORD)
        original = runtime.tokens.verify

        def later(token, kind, *, now=None):
            return original(token, kind, now=time.time() + 3600 * 24)

        monkeypatch.setattr(runtime.tokens, "verify", later)
        with pytest.raises(TokenExpired):
            runtime.auth.authenticate(f"Bearer {result.access_token}")

    async def test_deactivated_user(self, runtime, make_user):
        user = make_user("ada@example.com", PASSWORD)
        result = await runtime.auth.signin("ada@example.com", PASSWORD)
        runtime.store.set_user_status(user.id, USER_STATUS_INACTIVE)
        with pytest.raises(AuthenticationError) as excinfo:
            runtime.auth.authenticate(f"Bearer {result.access_token}")
        assert excinfo.value.reason == "USER_INACTIVE"

    async def test_logout_revokes_session(self, runtime, make_user):
        user = make_user("ada@example.com", PASSWORD)
        result = await runtime.auth.signin("ada@example.com", PASSWORD)

        assert runtime.auth.logout(user.id, result.session_id) == {"message": "Logged out successfully"}

        with pytest.raises(AuthenticationError) as excinfo:
            runtime.auth.authenticate(f"Bearer {result.access_token}")
        assert excinfo.value.reason == "SESSION_INVALID"
        assert runtime.store.get_user(user.id).refresh_token_digest is None


class TestPasswordRecovery:
    def test_forgot_password_is_uniform(self, runtime, make_user, outbox):
        make_user("ada@example.com", PASSWORD)

        known = runtime.auth.forgot_password("ada@example.com")
        unknown = runtime.auth.forgot_password("nobody@example.com")

        assert known == unknown == {"message": FORGOT_PASSWORD_MESSAGE}
        assert list(outbox.otp_codes) == ["ada@example.com"]

    def test_full_reset_flow(self, runtime, make_user, outbox):
        user = make_user("ada@example.com", PASSWORD)
        runtime.sessions.create_session(user.id, "old-jti", LAPTOP)
        runtime.auth.forgot_password("ada@example.com")
        code = outbox.otp_codes["ada@example.com"]

        assert runtime.auth.verify_otp("ada@example.com", code)["verified"] is True
        assert runtime.auth.reset_password("ada@example.com", NEW_PASSWORD) == {
            "message": "Password reset successfully"
        }

        refreshed = runtime.store.get_user(user.id)
        assert runtime.hasher.verify(refreshed.password_digest, NEW_PASSWORD)
        assert runtime.sessions.list_sessions(user.id) == []
        assert "PASSWORD_RESET_COMPLETED" in _actions(runtime)

    def test_reset_requires_verified_otp(self, runtime, make_user, outbox):
        make_user("ada@example.com", PASSWORD)
        runtime.auth.forgot_password("ada@example.com")
        with pytest.raises(ValidationError, match="OTP verification required"):
            runtime.auth.reset_password("ada@example.com", NEW_PASSWORD)

    def test_wrong_otp(self, runtime, make_user, outbox):
        make_user("ada@example.com", PASSWORD)
        runtime.auth.forgot_password("ada@example.com")
        code = outbox.otp_codes["ada@example.com"]
        wrong = f"{(int(code) + 1) % 1000000:06d}"
        with pytest.raises(ValidationError, match="Invalid OTP"):
            runtime.auth.verify_otp("ada@example.com", wrong)

    def test_otp_is_single_use(self, runtime, make_user, outbox):
        make_user("ada@example.com", PASSWORD)
        runtime.auth.forgot_password("ada@example.com")
        code = outbox.otp_codes["ada@example.com"]
        runtime.auth.verify_otp("ada@example.com", code)
        with pytest.raises(ValidationError, match="No valid OTP found"):
            runtime.auth.verify_otp("ada@example.com", code)

    def test_verified_otp_allows_single_reset(self, runtime, make_user, outbox):
        make_user("ada@example.com", PASSWORD)
        runtime.auth.forgot_password("ada@example.com")
        runtime.auth.verify_otp("ada@example.com", outbox.otp_codes["ada@example.com"])
        barrier = threading.Barrier(2)

        def reset(password):
            barrier.wait()
            try:
                return runtime.auth.reset_password("ada@example.com", password)
            except ValidationError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(reset, [NEW_PASSWORD, "Another-Sturdy-Phrase-77!"]))

        assert sum(isinstance(o, dict) for o in outcomes) == 1
        assert sum(isinstance(o, ValidationError) for o in outcomes) == 1
        assert runtime.store.otps == {}

    def test_reset_cannot_be_replayed(self, runtime, make_user, outbox):
        user = make_user("ada@example.com", PASSWORD)
        runtime.auth.forgot_password("ada@example.com")
        runtime.auth.verify_otp("ada@example.com", outbox.otp_codes["ada@example.com"])
        runtime.auth.reset_password("ada@example.com", NEW_PASSWORD)

        with pytest.raises(ValidationError, match="OTP verification required"):
            runtime.auth.reset_password("ada@example.com", "Another-Sturdy-Phrase-77!")
        refreshed = runtime.store.get_user(user.id)
        assert runtime.hasher.verify(refreshed.password_digest, NEW_PASSWORD)

    def test_new_request_supersedes_old_code(self, runtime, make_user, outbox):
        make_user("ada@example.com", PASSWORD)
        runtime.auth.forgot_password("ada@example.com")
        runtime.auth.forgot_password("ada@example.com")
        assert len(runtime.store.otps) == 1

    def test_expired_otp(self, runtime, make_user, outbox):
        make_user("ada@example.com", PASSWORD)
        runtime.auth.forgot_password("ada@example.com")
        for otp in runtime.store.otps.values():
            otp.expires_at = datetime.utcnow() - timedelta(seconds=1)
        with pytest.raises(ValidationError, match="No valid OTP found"):
            runtime.auth.verify_otp("ada@example.com", outbox.otp_codes["ada@example.com"])

    def test_send_failure_rolls_back(self, runtime, make_user, outbox):
        make_user("ada@example.com", PASSWORD)
        outbox.deliver = False
        with pytest.raises(ServerError, match="Failed to send OTP email"):
            runtime.auth.forgot_password("ada@example.com")
        assert runtime.store.otps == {}


class TestAccountChanges:
    async def test_change_password_keeps_current_session(self, runtime, make_user, outbox):
        user = make_user("ada@example.com", PASSWORD)
        laptop = await runtime.auth.signin("ada@example.com", PASSWORD, LAPTOP)
        phone = await runtime.auth.signin("ada@example.com", PASSWORD, PHONE)

        result = runtime.auth.change_password(
            user.id, PASSWORD, NEW_PASSWORD, NEW_PASSWORD, session_id=phone.session_id
        )

        assert result["sessions_revoked"] == 1
        assert runtime.sessions.get_session(laptop.session_id).is_active is False
        assert runtime.sessions.get_session(phone.session_id).is_active is True
        assert any(m["subject"] == "Your password was changed" for m in outbox.sent)

    def test_change_password_checks(self, runtime, make_user, outbox):
        user = make_user("ada@example.com", PASSWORD)
        with pytest.raises(ValidationError, match="do not match"):
            runtime.auth.change_password(user.id, PASSWORD, NEW_PASSWORD, PASSWORD)
        with pytest.raises(AuthenticationError, match="Current password is incorrect"):
            runtime.auth.change_password(user.id, NEW_PASSWORD, NEW_PASSWORD, NEW_PASSWORD)
        with pytest.raises(ValidationError, match="must be different"):
            runtime.auth.change_password(user.id, PASSWORD, PASSWORD, PASSWORD)

    def test_delete_own_account(self, runtime, make_user):
        user = make_user("ada@example.com", PASSWORD)
        with pytest.raises(AuthenticationError, match="Invalid password"):
            runtime.auth.delete_own_account(user.id, NEW_PASSWORD)

        assert runtime.auth.delete_own_account(user.id, PASSWORD) == {
            "message": "Account deleted successfully"
        }
        assert runtime.store.get_user(user.id) is None
        deleted = [e for e in runtime.store.audit_logs if e.action == "USER_DELETED"]
        assert deleted[-1].status == "SUCCESS"
