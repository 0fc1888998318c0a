from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, NoReturn, Optional, Union

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service import passwords
from gatekeep.service.abilities import Ability, AbilityEngine
from gatekeep.service.audit import AuditAction, AuditTrail
from gatekeep.service.csrf import CsrfGuard
from gatekeep.service.devices import ClientInfo
from gatekeep.service.email import EmailService
from gatekeep.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    RateLimitedError,
    ServerError,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from gatekeep.service.hashing import CredentialHasher
from gatekeep.service.mfa import MfaService
from gatekeep.service.roles import RoleService
from gatekeep.service.sessions import SessionRegistry
from gatekeep.service.tokens import ACCESS, REFRESH, TokenIssuer, TokenPair
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import OTP_TYPE_PASSWORD_RESET, Otp, Session, User, new_id
from gatekeep.storage.redis_cache import Cache

logger = get_logger(__name__)

LOGIN_SCOPE = "login"
MFA_SCOPE = "mfa"

FORGOT_PASSWORD_MESSAGE = "If the email exists, an OTP has been sent"


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    user_id: str
    email: str
    role: Optional[str]
    status: str
    first_name: str
    last_name: str
    session_id: str
    refresh_expires_at: datetime


@dataclass
class MfaChallenge:
    user_id: str
    email: str
    requires_mfa: bool = True


@dataclass
class RequestContext:
    """The authenticated principal for one request."""

    user: User
    session: Session
    ability: Ability
    role: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def session_id(self) -> str:
        return self.session.id


class LocalLockout:
    """In-process failure counter used when no Redis cache is configured.

    Mirrors the cache semantics: ``max_attempts`` failures inside the lockout
    window lock the subject for ``lockout_seconds``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._attempts: dict[tuple[str, str], tuple[int, datetime]] = {}
        self._locked_until: dict[tuple[str, str], datetime] = {}

    def is_locked(self, scope: str, subject: str) -> bool:
        key = (scope, subject)
        now = datetime.utcnow()
        with self._lock:
            until = self._locked_until.get(key)
            if until and until > now:
                return True
            if until:
                self._locked_until.pop(key, None)
            return False

    def record_failure(
        self, scope: str, subject: str, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]:
        key = (scope, subject)
        now = datetime.utcnow()
        window = timedelta(seconds=lockout_seconds)
        with self._lock:
            until = self._locked_until.get(key)
            if until and until > now:
                return True, -1
            count, started = self._attempts.get(key, (0, now))
            if now - started >= window:
                count, started = 0, now
            count += 1
            if count >= max_attempts:
                self._locked_until[key] = now + window
                self._attempts.pop(key, None)
                return True, count
            self._attempts[key] = (count, started)
            return False, count

    def clear(self, scope: str, subject: str) -> None:
        with self._lock:
            self._attempts.pop((scope, subject), None)


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class Authenticator:
    """Credential, token and account-recovery flows.

    Store, session and audit calls are synchronous; the lockout counter may
    live in Redis, so the flows that touch it are coroutines.
    """

    def __init__(
        self,
        store,
        *,
        settings: Settings,
        hasher: CredentialHasher,
        tokens: TokenIssuer,
        sessions: SessionRegistry,
        csrf: CsrfGuard,
        mfa: MfaService,
        abilities: AbilityEngine,
        roles: RoleService,
        audit: AuditTrail,
        email: EmailService,
        cache: Optional[Cache] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.tokens = tokens
        self.sessions = sessions
        self.csrf = csrf
        self.mfa = mfa
        self.abilities = abilities
        self.roles = roles
        self.audit = audit
        self.email = email
        self.cache = cache
        self._local_lockout = LocalLockout()
        self._dummy_digest: Optional[str] = None
        self.logger = logger

    # lockout

    async def _is_locked(self, scope: str, subject: str) -> bool:
        if self.cache:
            return await self.cache.check_lockout(scope, subject)
        return self._local_lockout.is_locked(scope, subject)

    async def _register_failure(self, scope: str, subject: str) -> bool:
        max_attempts = self.settings.lockout_max_attempts
        lockout_seconds = self.settings.lockout_seconds
        if self.cache:
            locked, attempts = await self.cache.record_failure(
                scope, subject, max_attempts, lockout_seconds
            )
        else:
            locked, attempts = self._local_lockout.record_failure(
                scope, subject, max_attempts, lockout_seconds
            )
        if locked and attempts >= 0:
            self.logger.warning("lockout_triggered", scope=scope, attempts=attempts)
        return locked

    async def _clear_failures(self, scope: str, subject: str) -> None:
        if self.cache:
            await self.cache.clear_failures(scope, subject)
        else:
            self._local_lockout.clear(scope, subject)

    async def _reject_if_locked(self, scope: str, email: str, client: ClientInfo) -> None:
        if not await self._is_locked(scope, email):
            return
        self.audit.log_auth(
            AuditAction.LOGIN_LOCKED,
            success=False,
            error_message="Too many failed attempts",
            client=client,
            details={"scope": scope},
        )
        raise RateLimitedError(
            "Too many failed attempts. Please try again later.",
            detail={"code": "ACCOUNT_LOCKED", "retry_after": self.settings.lockout_seconds},
        )

    def _burn_hash(self, password: str) -> None:
        # unknown emails still pay for one argon2 verify
        if self._dummy_digest is None:
            self._dummy_digest = self.hasher.hash(secrets.token_urlsafe(16))
        self.hasher.verify(self._dummy_digest, password)

    # sign in

    async def signin(
        self, email: str, password: str, client: Optional[ClientInfo] = None
    ) -> Union[AuthResult, MfaChallenge]:
        client = client or ClientInfo()
        normalized = _normalize_email(email)
        await self._reject_if_locked(LOGIN_SCOPE, normalized, client)

        user = self.store.get_user_by_email(normalized)
        if not user:
            self._burn_hash(password)
        if not user or not self.hasher.verify(user.password_digest, password):
            await self._register_failure(LOGIN_SCOPE, normalized)
            self.audit.log_auth(
                AuditAction.LOGIN_FAILURE,
                success=False,
                error_message="Credentials incorrect",
                user_id=user.id if user else None,
                client=client,
            )
            raise AuthenticationError("Credentials incorrect")

        if not user.is_active:
            self._reject_inactive(user, client)

        await self._clear_failures(LOGIN_SCOPE, normalized)

        if self.mfa.is_enabled(user.id):
            self.audit.log_auth(
                AuditAction.LOGIN_SUCCESS,
                user_id=user.id,
                client=client,
                details={"mfa_required": True},
            )
            return MfaChallenge(user_id=user.id, email=user.email)

        return self._complete_login(user, client, mfa_verified=False)

    async def verify_login_mfa(
        self, email: str, code: str, client: Optional[ClientInfo] = None
    ) -> AuthResult:
        client = client or ClientInfo()
        normalized = _normalize_email(email)
        await self._reject_if_locked(MFA_SCOPE, normalized, client)

        user = self.store.get_user_by_email(normalized)
        if user and not user.is_active:
            self._reject_inactive(user, client)
        if not user or not self.mfa.verify_login_code(user.id, code):
            await self._register_failure(MFA_SCOPE, normalized)
            self.audit.log_auth(
                AuditAction.MFA_VERIFY_FAILURE,
                success=False,
                error_message="Invalid MFA code",
                user_id=user.id if user else None,
                client=client,
            )
            raise AuthenticationError("Invalid MFA code")

        await self._clear_failures(MFA_SCOPE, normalized)
        self.audit.log_auth(AuditAction.MFA_VERIFY_SUCCESS, user_id=user.id, client=client)
        return self._complete_login(user, client, mfa_verified=True)

    def _reject_inactive(self, user: User, client: ClientInfo) -> NoReturn:
        self.audit.log_auth(
            AuditAction.LOGIN_FAILURE,
            success=False,
            error_message="Account is inactive",
            user_id=user.id,
            client=client,
        )
        raise ForbiddenError(
            "Account is inactive. Please contact an administrator.",
            detail={"code": "ACCOUNT_INACTIVE"},
        )

    def _complete_login(self, user: User, client: ClientInfo, *, mfa_verified: bool) -> AuthResult:
        pair = self.tokens.issue_pair(user.id, user.email)
        session = self.sessions.create_session(
            user.id, pair.token_id, client, mfa_verified=mfa_verified
        )
        self.store.set_refresh_token_digest(user.id, self.hasher.hash(pair.refresh_token))
        self.audit.log_auth(
            AuditAction.LOGIN_SUCCESS,
            user_id=user.id,
            client=client,
            details={"session_id": session.id, "mfa_verified": mfa_verified},
        )
        self.logger.info("user_signed_in", user_id=user.id, session_id=session.id)
        return self._result(user, pair, session)

    def _result(self, user: User, pair: TokenPair, session: Session) -> AuthResult:
        role = self.store.get_role(user.role_id) if user.role_id else None
        return AuthResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            user_id=user.id,
            email=user.email,
            role=role.name if role else None,
            status=user.status,
            first_name=user.first_name,
            last_name=user.last_name,
            session_id=session.id,
            refresh_expires_at=pair.refresh_expires_at,
        )

    # sign up

    async def signup(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        role: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        """Create an account and sign it in.

        ``role`` is for trusted callers such as the bootstrap script; the HTTP
        route always signs up with the configured default role.
        """
        client = client or ClientInfo()
        if not self.settings.allow_signup:
            raise ForbiddenError("Signup is disabled", detail={"code": "SIGNUP_DISABLED"})
        errors = passwords.validate(password)
        if errors:
            raise ValidationError(errors[0], detail={"errors": errors})

        role_record = self.roles.ensure_role((role or self.settings.default_role).strip().upper())
        try:
            user = self.store.create_user(
                _normalize_email(email),
                self.hasher.hash(password),
                name=name,
                role_id=role_record.id,
            )
        except ConstraintViolation:
            raise ConflictError("Credentials taken", detail={"field": "email"})

        self.audit.log_success(
            AuditAction.USER_CREATED,
            user_id=user.id,
            resource="User",
            resource_id=user.id,
            client=client,
            details={"role": role_record.name},
        )
        return self._complete_login(user, client, mfa_verified=False)

    # refresh

    async def refresh(self, refresh_token: Optional[str], client: Optional[ClientInfo] = None) -> AuthResult:
        client = client or ClientInfo()
        if not refresh_token:
            raise AuthenticationError("Refresh token not provided")
        try:
            claims = self.tokens.verify(refresh_token, REFRESH)
        except TokenExpired:
            raise AuthenticationError("Refresh token has expired")
        except TokenInvalid:
            raise AuthenticationError("Invalid refresh token format")

        user = self.store.get_user(claims["sub"])
        if not user:
            raise AuthenticationError("Access denied")
        if not user.is_active:
            self._reject_inactive(user, client)
        stored_digest = user.refresh_token_digest
        if not stored_digest:
            raise AuthenticationError("Access denied")
        if not self.hasher.verify(stored_digest, refresh_token):
            self._flag_refresh_reuse(user.id, claims["jti"], client, "refresh_token_reuse")
            raise AuthenticationError("Access denied")

        session = self.sessions.validate_session(claims["jti"], client, record_activity=False)
        if not session or session.user_id != user.id:
            raise AuthenticationError("Session expired or invalid")

        pair = self.tokens.issue_pair(user.id, user.email)
        rotated = self.store.rotate_refresh_token(
            user.id,
            stored_digest,
            self.hasher.hash(pair.refresh_token),
            session.id,
            pair.token_id,
        )
        if not rotated:
            self._flag_refresh_reuse(user.id, claims["jti"], client, "concurrent_refresh")
            raise AuthenticationError("Access denied")

        self.sessions.record_refresh(session.id, client)
        self.sessions.detect_suspicious_activity(session.id, client)
        self.logger.info("tokens_refreshed", user_id=user.id, session_id=session.id)
        return self._result(user, pair, session)

    def _flag_refresh_reuse(self, user_id: str, jti: str, client: ClientInfo, reason: str) -> None:
        self.logger.warning("refresh_token_reuse_detected", user_id=user_id, reason=reason)
        self.audit.log_failure(
            AuditAction.SUSPICIOUS_ACTIVITY,
            "Refresh token rejected",
            user_id=user_id,
            resource="Authentication",
            client=client,
            details={"reason": reason, "token_id": jti},
        )

    # logout

    def logout(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Dict[str, str]:
        client = client or ClientInfo()
        if session_id:
            self.sessions.revoke_session(session_id, user_id, client)
            self.csrf.revoke_session_tokens(session_id)
        else:
            self.sessions.revoke_all_sessions(user_id, client)
            self.csrf.revoke_user_tokens(user_id)
        self.store.set_refresh_token_digest(user_id, None)
        self.audit.log_auth(
            AuditAction.LOGOUT,
            user_id=user_id,
            client=client,
            details={"session_id": session_id},
        )
        return {"message": "Logged out successfully"}

    # password recovery

    def forgot_password(self, email: str, client: Optional[ClientInfo] = None) -> Dict[str, str]:
        """Email a reset code; the reply never reveals whether the account exists."""
        user = self.store.get_user_by_email(_normalize_email(email))
        if not user or not user.is_active:
            self.logger.info("password_reset_unknown_account")
            return {"message": FORGOT_PASSWORD_MESSAGE}

        code = f"{secrets.randbelow(1_000_000):06d}"
        ttl_minutes = self.settings.otp_ttl_minutes
        self.store.delete_otps(user.id, OTP_TYPE_PASSWORD_RESET, unexpired_only=True)
        self.store.create_otp(
            Otp(
                id=new_id(),
                user_id=user.id,
                code_digest=self.hasher.hash(code),
                expires_at=datetime.utcnow() + timedelta(minutes=ttl_minutes),
                type=OTP_TYPE_PASSWORD_RESET,
            )
        )
        if not self.email.send_password_reset_otp(user.email, code, ttl_minutes):
            self.store.delete_otps(user.id, OTP_TYPE_PASSWORD_RESET, unexpired_only=True)
            self.audit.log_error(
                AuditAction.PASSWORD_RESET_REQUESTED,
                "Failed to send OTP email",
                user_id=user.id,
                resource="Authentication",
                client=client,
            )
            raise ServerError("Failed to send OTP email", detail={"retryable": True})

        self.audit.log_auth(AuditAction.PASSWORD_RESET_REQUESTED, user_id=user.id, client=client)
        return {"message": FORGOT_PASSWORD_MESSAGE}

    def verify_otp(self, email: str, code: str) -> Dict[str, Any]:
        user = self.store.get_user_by_email(_normalize_email(email))
        otp = (
            self.store.latest_otp(user.id, OTP_TYPE_PASSWORD_RESET, used=False)
            if user
            else None
        )
        if not otp:
            raise ValidationError("No valid OTP found or OTP has expired")
        if not self.hasher.verify(otp.code_digest, code):
            raise ValidationError("Invalid OTP")
        if not self.store.mark_otp_used(otp.id):
            raise ValidationError("No valid OTP found or OTP has expired")
        return {"message": "OTP verified successfully", "verified": True}

    def reset_password(
        self, email: str, new_password: str, client: Optional[ClientInfo] = None
    ) -> Dict[str, str]:
        client = client or ClientInfo()
        errors = passwords.validate(new_password)
        if errors:
            raise ValidationError(errors[0], detail={"errors": errors})
        user = self.store.get_user_by_email(_normalize_email(email))
        # one verified code buys exactly one reset
        if not user or not self.store.consume_verified_otp(user.id, OTP_TYPE_PASSWORD_RESET):
            raise ValidationError("OTP verification required. Please verify your OTP first.")

        self.store.set_user_password(user.id, self.hasher.hash(new_password))
        self.store.set_refresh_token_digest(user.id, None)
        self.sessions.revoke_all_sessions(user.id, client)
        self.csrf.revoke_user_tokens(user.id)
        self.audit.log_auth(AuditAction.PASSWORD_RESET_COMPLETED, user_id=user.id, client=client)
        if not self.email.send_password_reset_confirmation(user.email):
            self.logger.warning("password_reset_confirmation_failed", user_id=user.id)
        return {"message": "Password reset successfully"}

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        confirm_password: str,
        *,
        session_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Dict[str, Any]:
        client = client or ClientInfo()
        if new_password != confirm_password:
            raise ValidationError("New password and confirmation do not match")
        errors = passwords.validate(new_password)
        if errors:
            raise ValidationError(errors[0], detail={"errors": errors})
        user = self.store.get_user(user_id)
        if not user or not self.hasher.verify(user.password_digest, current_password):
            self.audit.log_failure(
                AuditAction.PASSWORD_CHANGED,
                "Current password is incorrect",
                user_id=user_id,
                resource="User",
                client=client,
            )
            raise AuthenticationError("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError("New password must be different from the current password")

        self.store.set_user_password(user.id, self.hasher.hash(new_password))
        self.store.set_refresh_token_digest(user.id, None)
        if session_id:
            revoked = self.sessions.revoke_all_other_sessions(user.id, session_id, client)
        else:
            revoked = self.sessions.revoke_all_sessions(user.id, client)
        self.audit.log_success(
            AuditAction.PASSWORD_CHANGED,
            user_id=user.id,
            resource="User",
            resource_id=user.id,
            client=client,
            details={"sessions_revoked": revoked},
        )
        if not self.email.send_password_changed(user.email):
            self.logger.warning("password_changed_notification_failed", user_id=user.id)
        return {"message": "Password changed successfully", "sessions_revoked": revoked}

    def delete_own_account(
        self, user_id: str, password: str, client: Optional[ClientInfo] = None
    ) -> Dict[str, str]:
        client = client or ClientInfo()
        user = self.store.get_user(user_id)
        if not user or not self.hasher.verify(user.password_digest, password):
            self.audit.log_failure(
                AuditAction.USER_DELETED,
                "Invalid password",
                user_id=user_id,
                resource="User",
                client=client,
            )
            raise AuthenticationError("Invalid password")
        # audit rows carry no foreign key, so this entry survives the cascade
        self.audit.log_success(
            AuditAction.USER_DELETED,
            user_id=user.id,
            resource="User",
            resource_id=user.id,
            client=client,
        )
        self.store.delete_user(user.id)
        self.logger.info("user_deleted_self", user_id=user.id)
        return {"message": "Account deleted successfully"}

    # request authentication

    def authenticate(
        self, authorization_header: Optional[str], client: Optional[ClientInfo] = None
    ) -> RequestContext:
        """Resolve a bearer access token into a live principal or raise."""
        client = client or ClientInfo()
        token = _extract_bearer(authorization_header)
        if not token:
            raise AuthenticationError("Authentication required")
        claims = self.tokens.verify(token, ACCESS)

        user = self.store.get_user(claims["sub"])
        if not user:
            raise AuthenticationError("Invalid token")
        if not user.is_active:
            raise AuthenticationError(
                "User account is inactive", detail={"code": "USER_INACTIVE"}
            )
        session = self.sessions.validate_session(claims["jti"], client, record_activity=False)
        if not session or session.user_id != user.id:
            raise AuthenticationError(
                "Session expired or revoked", detail={"code": "SESSION_INVALID"}
            )
        self.sessions.detect_suspicious_activity(session.id, client)
        return RequestContext(
            user=user,
            session=session,
            ability=self.abilities.for_user(user.id),
            role=self.abilities.role_name(user.id),
        )
