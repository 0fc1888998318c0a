from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Request, Response

from gatekeep.logging import get_logger
from gatekeep.service.audit import AuditAction
from gatekeep.service.auth import RequestContext
from gatekeep.service.csrf import CSRF_COOKIE, CSRF_HEADER, is_safe_method
from gatekeep.service.devices import ClientInfo
from gatekeep.service.errors import AuthenticationError, ForbiddenError, RateLimitedError
from gatekeep.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)


@dataclass(frozen=True)
class RouteDescriptor:
    """Guards a route opts into; nothing is applied implicitly.

    ``authenticated`` demands a bearer token; ``optional_auth`` resolves one
    when present. ``required_permissions`` are ``resource:action`` strings.
    ``require_mfa`` rejects sessions that skipped the second factor for
    users who have it enabled.
    """

    csrf_exempt: bool = False
    authenticated: bool = True
    optional_auth: bool = False
    required_role: Optional[str] = None
    required_permissions: Tuple[str, ...] = ()
    require_mfa: bool = False


PUBLIC = RouteDescriptor(csrf_exempt=True, authenticated=False)
AUTHENTICATED = RouteDescriptor()


def client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _check_csrf(runtime: Runtime, request: Request, client: ClientInfo) -> Optional[str]:
    """Return the validated header token, or None when the route is not guarded."""
    header_token = request.headers.get(CSRF_HEADER)
    cookie_value = request.cookies.get(CSRF_COOKIE)
    if not header_token or not cookie_value:
        _csrf_failure(runtime, request, client, "CSRF token missing")
    if not runtime.csrf.validate_double_submit(header_token, cookie_value):
        _csrf_failure(runtime, request, client, "Invalid CSRF token")
    return header_token


def _csrf_failure(
    runtime: Runtime,
    request: Request,
    client: ClientInfo,
    message: str,
    user_id: Optional[str] = None,
) -> None:
    runtime.audit.log_failure(
        AuditAction.CSRF_TOKEN_VALIDATION_FAILED,
        message,
        user_id=user_id,
        resource="Security",
        client=client,
        details={"method": request.method, "path": request.url.path},
    )
    raise ForbiddenError(message, detail={"code": "CSRF_INVALID"})


def _authorize(
    runtime: Runtime,
    descriptor: RouteDescriptor,
    ctx: RequestContext,
    client: ClientInfo,
    path: str,
) -> None:
    if (
        descriptor.require_mfa
        and not ctx.session.mfa_verified
        and runtime.mfa.is_enabled(ctx.user_id)
    ):
        raise ForbiddenError(
            "Multi-factor authentication required", detail={"code": "MFA_REQUIRED"}
        )
    if descriptor.required_role and (ctx.role or "").upper() != descriptor.required_role.upper():
        runtime.audit.log_failure(
            AuditAction.ACCESS_DENIED,
            "Insufficient role",
            user_id=ctx.user_id,
            resource="Security",
            client=client,
            details={"path": path, "required_role": descriptor.required_role},
        )
        raise ForbiddenError(
            f"Insufficient role. Required: {descriptor.required_role}",
            detail={"code": "INSUFFICIENT_ROLE"},
        )
    missing = ctx.ability.missing(descriptor.required_permissions)
    if missing:
        runtime.audit.log_failure(
            AuditAction.ACCESS_DENIED,
            "Insufficient permissions",
            user_id=ctx.user_id,
            resource="Security",
            client=client,
            details={"path": path, "missing": missing},
        )
        raise ForbiddenError(
            f"Insufficient permissions. Required: {', '.join(missing)}",
            detail={"code": "INSUFFICIENT_PERMISSIONS", "missing": missing},
        )


def guard(descriptor: RouteDescriptor):
    """Build the dependency that runs CSRF, then authentication, then authorization."""

    async def dependency(request: Request) -> Optional[RequestContext]:
        runtime = get_runtime()
        client = client_info(request)

        csrf_token = None
        if not descriptor.csrf_exempt and not is_safe_method(request.method):
            csrf_token = _check_csrf(runtime, request, client)

        authorization = request.headers.get("authorization")
        if not descriptor.authenticated and not (descriptor.optional_auth and authorization):
            return None
        try:
            ctx = runtime.auth.authenticate(authorization, client)
        except AuthenticationError:
            if descriptor.optional_auth and not descriptor.authenticated:
                return None
            raise

        # bound tokens must belong to the caller
        if csrf_token and not runtime.csrf.validate_token(csrf_token, ctx.session_id, ctx.user_id):
            _csrf_failure(runtime, request, client, "Invalid CSRF token", ctx.user_id)

        _authorize(runtime, descriptor, ctx, client, request.url.path)
        return ctx

    return dependency


async def enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    client: ClientInfo,
    response: Optional[Response] = None,
) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)
    if allowed:
        return
    bucket = key.split(":", 1)[0]
    runtime.audit.log_failure(
        AuditAction.RATE_LIMIT_EXCEEDED,
        "Rate limit exceeded",
        resource="Security",
        client=client,
        details={"bucket": bucket, "limit": limit, "window_seconds": window_seconds},
    )
    logger.warning("rate_limit_exceeded", bucket=bucket, limit=limit)
    raise RateLimitedError(
        "Too many requests. Please try again later.",
        detail={"retry_after": max(1, reset_seconds or window_seconds)},
    )
