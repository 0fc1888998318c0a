from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from gatekeep.api.pipeline import (
    AUTHENTICATED,
    PUBLIC,
    RouteDescriptor,
    client_info,
    enforce_rate_limit,
    guard,
)
from gatekeep.api.schemas import (
    AssignPermissionsRequest,
    AuditLogResponse,
    AuthResponse,
    ChangePasswordRequest,
    CsrfValidateRequest,
    DeleteAccountRequest,
    Envelope,
    ExtendSessionRequest,
    ForgotPasswordRequest,
    LoginMfaRequest,
    LoginRequest,
    MfaChallengeResponse,
    MfaCodeRequest,
    MfaDisableRequest,
    PermissionCreateRequest,
    PermissionResponse,
    RefreshRequest,
    ResetPasswordRequest,
    RoleCreateRequest,
    RoleResponse,
    RoleUpdateRequest,
    SessionActivityResponse,
    SessionResponse,
    SignupRequest,
    UserProfile,
    VerifyOtpRequest,
)
from gatekeep.config import Settings
from gatekeep.logging import get_correlation_id, get_logger
from gatekeep.service.audit import AuditAction
from gatekeep.service.auth import AuthResult, MfaChallenge, RequestContext
from gatekeep.service.csrf import CSRF_COOKIE
from gatekeep.service.devices import ClientInfo
from gatekeep.service.errors import ForbiddenError, NotFoundError
from gatekeep.service.runtime import Runtime, get_runtime
from gatekeep.storage.models import AuditQuery, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refreshToken"

# route descriptors
SENSITIVE = RouteDescriptor(require_mfa=True)
OPTIONAL_AUTH = RouteDescriptor(authenticated=False, optional_auth=True)
AUDIT_READ = RouteDescriptor(required_permissions=("audit-log:read",), require_mfa=True)
ROLE_READ = RouteDescriptor(required_permissions=("role:read",), require_mfa=True)
ROLE_CREATE = RouteDescriptor(required_permissions=("role:create",), require_mfa=True)
ROLE_UPDATE = RouteDescriptor(required_permissions=("role:update",), require_mfa=True)
ROLE_DELETE = RouteDescriptor(required_permissions=("role:delete",), require_mfa=True)
PERMISSION_READ = RouteDescriptor(required_permissions=("permission:read",), require_mfa=True)
PERMISSION_CREATE = RouteDescriptor(required_permissions=("permission:create",), require_mfa=True)
PERMISSION_DELETE = RouteDescriptor(required_permissions=("permission:delete",), require_mfa=True)
ROLE_GRANT = RouteDescriptor(
    required_permissions=("role:update", "permission:read"), require_mfa=True
)


def _ok(data: Any = None) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


def _set_refresh_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _set_csrf_cookie(response: Response, value: str, settings: Settings) -> None:
    response.set_cookie(
        CSRF_COOKIE,
        value,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        max_age=settings.csrf_token_ttl_minutes * 60,
        path="/",
    )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in (REFRESH_COOKIE, CSRF_COOKIE):
        response.delete_cookie(
            name, path="/", httponly=True, secure=settings.is_production, samesite="strict"
        )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.access_token,
        user_id=result.user_id,
        email=result.email,
        role=result.role,
        status=result.status,
        first_name=result.first_name,
        last_name=result.last_name,
        session_id=result.session_id,
    )


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; align offset-aware query values with them."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _owned_session(
    runtime: Runtime, session_id: str, ctx: RequestContext, client: ClientInfo
) -> Session:
    session = runtime.sessions.get_session(session_id)
    if not session:
        raise NotFoundError("Session not found")
    if session.user_id != ctx.user_id:
        runtime.audit.log_failure(
            AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT,
            "Session belongs to another user",
            user_id=ctx.user_id,
            resource="Session",
            resource_id=session_id,
            client=client,
        )
        raise ForbiddenError(
            "You do not have access to this session",
            detail={"code": "RESOURCE_OWNERSHIP_VIOLATION"},
        )
    return session


# auth


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    _: None = Depends(guard(PUBLIC)),
):
    """Exchange email and password for tokens, or an MFA challenge.

    Raises:
        401: credentials incorrect
        403: account inactive
        429: rate limit exceeded or account locked
    """
    runtime = get_runtime()
    client = client_info(request)
    await enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        client=client,
        response=response,
    )
    outcome = await runtime.auth.signin(body.email, body.password, client)
    if isinstance(outcome, MfaChallenge):
        return _ok(MfaChallengeResponse(user_id=outcome.user_id, email=outcome.email))
    _set_refresh_cookie(response, outcome.refresh_token, runtime.settings)
    return _ok(_auth_response(outcome))


@router.post("/auth/login/verify-mfa", response_model=Envelope, tags=["auth"])
async def login_verify_mfa(
    body: LoginMfaRequest,
    request: Request,
    response: Response,
    _: None = Depends(guard(PUBLIC)),
):
    runtime = get_runtime()
    client = client_info(request)
    await enforce_rate_limit(
        runtime,
        f"login-mfa:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        client=client,
        response=response,
    )
    result = await runtime.auth.verify_login_mfa(body.email, body.code, client)
    _set_refresh_cookie(response, result.refresh_token, runtime.settings)
    return _ok(_auth_response(result))


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(
    body: SignupRequest,
    request: Request,
    response: Response,
    _: None = Depends(guard(PUBLIC)),
):
    """Create an account with the default role and sign it in."""
    runtime = get_runtime()
    client = client_info(request)
    await enforce_rate_limit(
        runtime,
        f"signup:{client.ip}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        client=client,
        response=response,
    )
    result = await runtime.auth.signup(body.email, body.password, name=body.name, client=client)
    _set_refresh_cookie(response, result.refresh_token, runtime.settings)
    return _ok(_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    _: None = Depends(guard(PUBLIC)),
):
    """Rotate the refresh token; the cookie wins over a body value."""
    runtime = get_runtime()
    client = client_info(request)
    await enforce_rate_limit(
        runtime,
        f"refresh:{client.ip}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
        client=client,
        response=response,
    )
    token = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    result = await runtime.auth.refresh(token, client)
    _set_refresh_cookie(response, result.refresh_token, runtime.settings)
    return _ok(_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    everywhere: bool = Query(False, alias="all"),
    ctx: RequestContext = Depends(guard(AUTHENTICATED)),
):
    runtime = get_runtime()
    result = runtime.auth.logout(
        ctx.user_id,
        None if everywhere else ctx.session_id,
        client_info(request),
    )
    _clear_auth_cookies(response, runtime.settings)
    return _ok(result)


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    response: Response,
    _: None = Depends(guard(PUBLIC)),
):
    runtime = get_runtime()
    client = client_info(request)
    await enforce_rate_limit(
        runtime,
        f"forgot-password:{body.email}",
        runtime.settings.reset_rate_limit_per_window,
        runtime.settings.reset_rate_limit_window_seconds,
        client=client,
        response=response,
    )
    return _ok(runtime.auth.forgot_password(body.email, client))


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(
    body: VerifyOtpRequest,
    request: Request,
    response: Response,
    _: None = Depends(guard(PUBLIC)),
):
    runtime = get_runtime()
    await enforce_rate_limit(
        runtime,
        f"verify-otp:{body.email}",
        runtime.settings.verify_otp_rate_limit_per_window,
        runtime.settings.reset_rate_limit_window_seconds,
        client=client_info(request),
        response=response,
    )
    return _ok(runtime.auth.verify_otp(body.email, body.otp))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    response: Response,
    _: None = Depends(guard(PUBLIC)),
):
    runtime = get_runtime()
    client = client_info(request)
    await enforce_rate_limit(
        runtime,
        f"reset-password:{body.email}",
        runtime.settings.reset_rate_limit_per_window,
        runtime.settings.reset_rate_limit_window_seconds,
        client=client,
        response=response,
    )
    result = runtime.auth.reset_password(body.email, body.new_password, client)
    _clear_auth_cookies(response, runtime.settings)
    return _ok(result)


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    ctx: RequestContext = Depends(guard(SENSITIVE)),
):
    runtime = get_runtime()
    result = runtime.auth.change_password(
        ctx.user_id,
        body.current_password,
        body.new_password,
        body.confirm_password,
        session_id=ctx.session_id,
        client=client_info(request),
    )
    return _ok(result)


@router.delete("/auth/account", response_model=Envelope, tags=["auth"])
async def delete_account(
    body: DeleteAccountRequest,
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(guard(SENSITIVE)),
):
    runtime = get_runtime()
    result = runtime.auth.delete_own_account(ctx.user_id, body.password, client_info(request))
    _clear_auth_cookies(response, runtime.settings)
    return _ok(result)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: RequestContext = Depends(guard(AUTHENTICATED))):
    runtime = get_runtime()
    profile = UserProfile.from_user(
        ctx.user,
        role=ctx.role,
        permissions=ctx.ability.rules,
        mfa_enabled=runtime.mfa.is_enabled(ctx.user_id),
    )
    return _ok(profile)


# csrf


def _issue_csrf(
    runtime: Runtime,
    response: Response,
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> dict:
    token, cookie_value = runtime.csrf.create_double_submit_cookie(session_id, user_id)
    _set_csrf_cookie(response, cookie_value, runtime.settings)
    return {"csrf_token": token, "expires_in": runtime.settings.csrf_token_ttl_minutes * 60}


@router.get("/auth/csrf-token", response_model=Envelope, tags=["csrf"])
async def csrf_token(
    request: Request,
    response: Response,
    _: None = Depends(guard(PUBLIC)),
):
    runtime = get_runtime()
    client = client_info(request)
    await enforce_rate_limit(
        runtime,
        f"csrf:{client.ip}",
        runtime.settings.csrf_rate_limit_per_minute,
        60,
        client=client,
        response=response,
    )
    return _ok(_issue_csrf(runtime, response))


@router.get("/auth/csrf-token/authenticated", response_model=Envelope, tags=["csrf"])
async def csrf_token_authenticated(
    response: Response,
    ctx: RequestContext = Depends(guard(AUTHENTICATED)),
):
    runtime = get_runtime()
    return _ok(_issue_csrf(runtime, response, ctx.session_id, ctx.user_id))


@router.get("/auth/csrf-token/double-submit", response_model=Envelope, tags=["csrf"])
async def csrf_token_double_submit(
    request: Request,
    response: Response,
    ctx: Optional[RequestContext] = Depends(guard(OPTIONAL_AUTH)),
):
    runtime = get_runtime()
    client = client_info(request)
    await enforce_rate_limit(
        runtime,
        f"csrf:{client.ip}",
        runtime.settings.csrf_rate_limit_per_minute,
        60,
        client=client,
        response=response,
    )
    if ctx:
        return _ok(_issue_csrf(runtime, response, ctx.session_id, ctx.user_id))
    return _ok(_issue_csrf(runtime, response))


@router.post("/auth/csrf-token/validate", response_model=Envelope, tags=["csrf"])
async def csrf_token_validate(
    body: CsrfValidateRequest,
    _: None = Depends(guard(PUBLIC)),
):
    runtime = get_runtime()
    return _ok({"valid": runtime.csrf.validate_token(body.token)})


# mfa


@router.post("/auth/mfa/generate", response_model=Envelope, tags=["mfa"])
async def mfa_generate(ctx: RequestContext = Depends(guard(SENSITIVE))):
    runtime = get_runtime()
    return _ok(runtime.mfa.generate_secret(ctx.user_id))


@router.post("/auth/mfa/enable", response_model=Envelope, tags=["mfa"])
async def mfa_enable(
    body: MfaCodeRequest,
    request: Request,
    ctx: RequestContext = Depends(guard(AUTHENTICATED)),
):
    runtime = get_runtime()
    result = runtime.mfa.enable(ctx.user_id, body.code, client_info(request))
    # the enrolling session just proved possession of the second factor
    runtime.sessions.mark_mfa_verified(ctx.session_id)
    return _ok(result)


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: MfaDisableRequest,
    request: Request,
    ctx: RequestContext = Depends(guard(SENSITIVE)),
):
    runtime = get_runtime()
    return _ok(runtime.mfa.disable(ctx.user_id, body.current_password, client_info(request)))


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(ctx: RequestContext = Depends(guard(AUTHENTICATED))):
    runtime = get_runtime()
    return _ok(runtime.mfa.status(ctx.user_id))


# sessions


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(ctx: RequestContext = Depends(guard(AUTHENTICATED))):
    runtime = get_runtime()
    sessions = runtime.sessions.list_sessions(ctx.user_id)
    return _ok([SessionResponse.from_session(s, ctx.session_id) for s in sessions])


@router.get("/auth/sessions/stats", response_model=Envelope, tags=["sessions"])
async def session_stats(ctx: RequestContext = Depends(guard(AUTHENTICATED))):
    runtime = get_runtime()
    return _ok(runtime.sessions.session_stats(ctx.user_id, ctx.session_id))


@router.get("/auth/sessions/current", response_model=Envelope, tags=["sessions"])
async def current_session(ctx: RequestContext = Depends(guard(AUTHENTICATED))):
    return _ok(SessionResponse.from_session(ctx.session, ctx.session_id))


@router.get("/auth/sessions/{session_id}/activity", response_model=Envelope, tags=["sessions"])
async def session_activity(
    session_id: str,
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    ctx: RequestContext = Depends(guard(AUTHENTICATED)),
):
    runtime = get_runtime()
    _owned_session(runtime, session_id, ctx, client_info(request))
    activity = runtime.sessions.session_activity(session_id, limit=limit)
    return _ok([SessionActivityResponse.from_activity(a) for a in activity])


@router.post("/auth/sessions/{session_id}/extend", response_model=Envelope, tags=["sessions"])
async def extend_session(
    session_id: str,
    request: Request,
    body: Optional[ExtendSessionRequest] = None,
    ctx: RequestContext = Depends(guard(AUTHENTICATED)),
):
    runtime = get_runtime()
    _owned_session(runtime, session_id, ctx, client_info(request))
    days = body.days if body else 7
    extended = runtime.sessions.extend_session(session_id, ctx.user_id, days)
    if not extended:
        raise NotFoundError("Session not found or already revoked")
    return _ok(SessionResponse.from_session(extended, ctx.session_id))


@router.delete("/auth/sessions/others", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(
    request: Request,
    ctx: RequestContext = Depends(guard(AUTHENTICATED)),
):
    runtime = get_runtime()
    client = client_info(request)
    count = runtime.sessions.revoke_all_other_sessions(ctx.user_id, ctx.session_id, client)
    runtime.audit.log_success(
        AuditAction.ALL_SESSIONS_REVOKED,
        user_id=ctx.user_id,
        resource="Session",
        client=client,
        details={"revoked_count": count, "kept_session_id": ctx.session_id},
    )
    return _ok({"message": f"Revoked {count} other session(s)", "revoked_count": count})


@router.delete("/auth/sessions/all", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(guard(AUTHENTICATED)),
):
    runtime = get_runtime()
    client = client_info(request)
    count = runtime.sessions.revoke_all_sessions(ctx.user_id, client)
    runtime.csrf.revoke_user_tokens(ctx.user_id)
    runtime.store.set_refresh_token_digest(ctx.user_id, None)
    runtime.audit.log_success(
        AuditAction.ALL_SESSIONS_REVOKED,
        user_id=ctx.user_id,
        resource="Session",
        client=client,
        details={"revoked_count": count},
    )
    _clear_auth_cookies(response, runtime.settings)
    return _ok({"message": f"Revoked {count} session(s)", "revoked_count": count})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str,
    request: Request,
    ctx: RequestContext = Depends(guard(AUTHENTICATED)),
):
    runtime = get_runtime()
    client = client_info(request)
    if not runtime.sessions.revoke_session(session_id, ctx.user_id, client):
        raise NotFoundError("Session not found or already revoked")
    runtime.csrf.revoke_session_tokens(session_id)
    runtime.audit.log_success(
        AuditAction.SESSION_REVOKED,
        user_id=ctx.user_id,
        resource="Session",
        resource_id=session_id,
        client=client,
    )
    return _ok({"message": "Session revoked successfully", "session_id": session_id})


# audit


@router.get("/audit-logs", response_model=Envelope, tags=["audit"])
async def list_audit_logs(
    user_id: Optional[str] = Query(None, max_length=64),
    action: Optional[str] = Query(None, max_length=100),
    resource: Optional[str] = Query(None, max_length=100),
    status: Optional[str] = Query(None, pattern="^(SUCCESS|FAILURE|ERROR)$"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    ctx: RequestContext = Depends(guard(AUDIT_READ)),
):
    runtime = get_runtime()
    filters = AuditQuery(
        user_id=user_id,
        action=action,
        resource=resource,
        status=status,
        start_date=_naive_utc(start_date),
        end_date=_naive_utc(end_date),
    )
    page = runtime.audit.query(filters, limit=limit, offset=offset)
    return _ok(
        {
            "logs": [AuditLogResponse.from_entry(e) for e in page["data"]],
            "meta": page["meta"],
        }
    )


@router.get("/audit-logs/security-events", response_model=Envelope, tags=["audit"])
async def security_events(
    since: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    ctx: RequestContext = Depends(guard(AUDIT_READ)),
):
    runtime = get_runtime()
    events = runtime.audit.security_events(_naive_utc(since), limit)
    return _ok([AuditLogResponse.from_entry(e) for e in events])


@router.get("/audit-logs/statistics", response_model=Envelope, tags=["audit"])
async def audit_statistics(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    ctx: RequestContext = Depends(guard(AUDIT_READ)),
):
    runtime = get_runtime()
    return _ok(runtime.audit.statistics(_naive_utc(start_date), _naive_utc(end_date)))


# roles and permissions


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(
    body: RoleCreateRequest,
    request: Request,
    ctx: RequestContext = Depends(guard(ROLE_CREATE)),
):
    runtime = get_runtime()
    role = runtime.roles.create_role(
        body.name, body.description, actor_id=ctx.user_id, client=client_info(request)
    )
    return _ok(RoleResponse.from_role(role))


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(ctx: RequestContext = Depends(guard(ROLE_READ))):
    runtime = get_runtime()
    return _ok([RoleResponse.from_described(d) for d in runtime.roles.list_roles()])


@router.get("/roles/permissions", response_model=Envelope, tags=["roles"])
async def list_permissions(ctx: RequestContext = Depends(guard(PERMISSION_READ))):
    runtime = get_runtime()
    return _ok([PermissionResponse.from_permission(p) for p in runtime.roles.list_permissions()])


@router.post("/roles/permissions", response_model=Envelope, status_code=201, tags=["roles"])
async def create_permission(
    body: PermissionCreateRequest,
    request: Request,
    ctx: RequestContext = Depends(guard(PERMISSION_CREATE)),
):
    runtime = get_runtime()
    permission = runtime.roles.create_permission(
        body.name,
        body.resource,
        body.action,
        body.description,
        actor_id=ctx.user_id,
        client=client_info(request),
    )
    return _ok(PermissionResponse.from_permission(permission))


@router.get("/roles/permissions/{permission_id}", response_model=Envelope, tags=["roles"])
async def get_permission(
    permission_id: str,
    ctx: RequestContext = Depends(guard(PERMISSION_READ)),
):
    runtime = get_runtime()
    return _ok(PermissionResponse.from_permission(runtime.roles.get_permission(permission_id)))


@router.delete("/roles/permissions/{permission_id}", response_model=Envelope, tags=["roles"])
async def delete_permission(
    permission_id: str,
    request: Request,
    ctx: RequestContext = Depends(guard(PERMISSION_DELETE)),
):
    runtime = get_runtime()
    runtime.roles.delete_permission(
        permission_id, actor_id=ctx.user_id, client=client_info(request)
    )
    return _ok({"message": "Permission deleted successfully"})


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(role_id: str, ctx: RequestContext = Depends(guard(ROLE_READ))):
    runtime = get_runtime()
    return _ok(RoleResponse.from_described(runtime.roles.get_role(role_id)))


@router.patch("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    role_id: str,
    body: RoleUpdateRequest,
    request: Request,
    ctx: RequestContext = Depends(guard(ROLE_UPDATE)),
):
    runtime = get_runtime()
    runtime.roles.update_role(
        role_id,
        name=body.name,
        description=body.description,
        actor_id=ctx.user_id,
        client=client_info(request),
    )
    return _ok(RoleResponse.from_described(runtime.roles.get_role(role_id)))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(
    role_id: str,
    request: Request,
    ctx: RequestContext = Depends(guard(ROLE_DELETE)),
):
    runtime = get_runtime()
    runtime.roles.delete_role(role_id, actor_id=ctx.user_id, client=client_info(request))
    return _ok({"message": "Role deleted successfully"})


@router.post("/roles/{role_id}/permissions", response_model=Envelope, tags=["roles"])
async def assign_permissions(
    role_id: str,
    body: AssignPermissionsRequest,
    request: Request,
    ctx: RequestContext = Depends(guard(ROLE_GRANT)),
):
    runtime = get_runtime()
    described = runtime.roles.assign_permissions(
        role_id, body.permission_ids, actor_id=ctx.user_id, client=client_info(request)
    )
    return _ok(RoleResponse.from_described(described))
