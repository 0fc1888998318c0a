from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from gatekeep.config import get_settings, reset_settings_cache
from gatekeep.logging import get_logger
from gatekeep.service.abilities import AbilityEngine
from gatekeep.service.audit import AuditTrail
from gatekeep.service.auth import Authenticator
from gatekeep.service.csrf import CsrfGuard
from gatekeep.service.email import EmailService
from gatekeep.service.hashing import CredentialHasher
from gatekeep.service.mfa import MfaService
from gatekeep.service.roles import RoleService
from gatekeep.service.sessions import SessionRegistry
from gatekeep.service.tokens import TokenIssuer
from gatekeep.service.totp import TotpEngine
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.postgres import PostgresStore
from gatekeep.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=settings.shared_fs_root,
                    mfa_encryption_key=settings.mfa_secret_key,
                )
                if settings.use_memory_store
                else PostgresStore(
                    settings.database_url,
                    fs_root=settings.shared_fs_root,
                    mfa_encryption_key=settings.mfa_secret_key,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                # sync client in test mode so per-test event loops never own the pool
                cache = (
                    SyncRedisCache(settings.redis_url)
                    if settings.test_mode
                    else RedisCache(settings.redis_url)
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and login lockouts; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and "
                    "lockouts are per-process only."
                ),
                mode=fallback_mode,
            )

        self.hasher = CredentialHasher()
        self.audit = AuditTrail(self.store)
        self.tokens = TokenIssuer(
            settings.jwt_secret,
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
        )
        self.sessions = SessionRegistry(self.store, ttl_days=settings.session_ttl_days)
        self.csrf = CsrfGuard(
            self.store,
            settings.effective_csrf_secret,
            ttl_minutes=settings.csrf_token_ttl_minutes,
        )
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )
        self.totp = TotpEngine()
        self.mfa = MfaService(
            self.store,
            totp=self.totp,
            hasher=self.hasher,
            audit=self.audit,
            email=self.email,
            app_name=settings.mfa_app_name,
            issuer=settings.mfa_issuer,
        )
        self.abilities = AbilityEngine(self.store)
        self.roles = RoleService(self.store, self.audit)
        self.auth = Authenticator(
            self.store,
            settings=settings,
            hasher=self.hasher,
            tokens=self.tokens,
            sessions=self.sessions,
            csrf=self.csrf,
            mfa=self.mfa,
            abilities=self.abilities,
            roles=self.roles,
            audit=self.audit,
            email=self.email,
            cache=self.cache,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            environment=settings.environment.value,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache_quietly(cache) -> None:
    if isinstance(cache, SyncRedisCache):
        cache._sync_client.close()
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache_quietly(runtime.cache)
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit, in Redis when available and in-process otherwise.

    Returns ``allowed``, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.utcnow()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
