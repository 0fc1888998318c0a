from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from gatekeep.logging import get_logger
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import CsrfToken

logger = get_logger(__name__)

CSRF_HEADER = "x-csrf-token"
CSRF_COOKIE = "csrf-token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class CsrfGuard:
    """Anti-forgery tokens with an HMAC double-submit cookie.

    A token is 256 random bits, persisted with an expiry and optionally bound
    to a session and user. The cookie carries ``HMAC(secret, token)`` rather
    than the token itself, so a header value lifted from a page cannot be
    paired with a forged cookie.
    """

    def __init__(self, store, secret: str, *, ttl_minutes: int = 30) -> None:
        if not secret:
            raise ValueError("CSRF secret must be configured")
        self.store = store
        self._secret = secret.encode()
        self.ttl = timedelta(minutes=ttl_minutes)

    def generate_token(
        self, session_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> str:
        for _ in range(3):
            token = secrets.token_hex(32)
            record = CsrfToken(
                token=token,
                expires_at=datetime.utcnow() + self.ttl,
                session_id=session_id,
                user_id=user_id,
            )
            try:
                self.store.save_csrf_token(record)
            except ConstraintViolation:
                continue
            return token
        raise RuntimeError("unable to allocate a unique CSRF token")

    def validate_token(
        self,
        token: Optional[str],
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        if not token:
            return False
        record = self.store.get_csrf_token(token)
        if not record or record.is_expired():
            return False
        # bindings are only enforced when the caller knows them
        if session_id is not None and record.session_id and record.session_id != session_id:
            return False
        if user_id is not None and record.user_id and record.user_id != user_id:
            return False
        return True

    def cookie_value(self, token: str) -> str:
        return hmac.new(self._secret, token.encode(), hashlib.sha256).hexdigest()

    def create_double_submit_cookie(
        self, session_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> Tuple[str, str]:
        token = self.generate_token(session_id, user_id)
        return token, self.cookie_value(token)

    def validate_double_submit(
        self,
        token: Optional[str],
        cookie_value: Optional[str],
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        if not token or not cookie_value:
            return False
        if not self.validate_token(token, session_id, user_id):
            return False
        return hmac.compare_digest(self.cookie_value(token), cookie_value)

    def token_info(self, token: str) -> Optional[Dict[str, Any]]:
        record = self.store.get_csrf_token(token)
        if not record:
            return None
        return {
            "valid": not record.is_expired(),
            "expires_at": record.expires_at,
            "session_id": record.session_id,
            "user_id": record.user_id,
        }

    def revoke_session_tokens(self, session_id: str) -> int:
        return self.store.delete_csrf_tokens(session_id=session_id)

    def revoke_user_tokens(self, user_id: str) -> int:
        return self.store.delete_csrf_tokens(user_id=user_id)

    def cleanup_expired(self) -> int:
        count = self.store.delete_expired_csrf_tokens(datetime.utcnow())
        if count:
            logger.info("csrf_tokens_expired_swept", count=count)
        return count


def is_safe_method(method: str) -> bool:
    return method.upper() in SAFE_METHODS
