from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from gatekeep.logging import get_logger
from gatekeep.service.errors import TokenExpired, TokenInvalid

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    token_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Mints and verifies HS256 access and refresh tokens.

    Access and refresh tokens are signed with independent secrets and carry a
    ``typ`` claim, so a token of one kind never verifies as the other. Both
    tokens of a pair share the ``jti`` that names the session record.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        leeway_seconds: int = 0,
    ) -> None:
        if access_secret == refresh_secret:
            logger.warning("jwt_secrets_shared")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway_seconds = leeway_seconds

    def issue_pair(self, user_id: str, email: str, *, token_id: Optional[str] = None) -> TokenPair:
        jti = token_id or str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        base = {
            "sub": user_id,
            "email": email,
            "jti": jti,
            "iat": int(now.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        access = self._encode({**base, "exp": int(access_exp.timestamp()), "typ": ACCESS}, ACCESS)
        refresh = self._encode({**base, "exp": int(refresh_exp.timestamp()), "typ": REFRESH}, REFRESH)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            token_id=jti,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify(self, token: str, kind: str, *, now: Optional[float] = None) -> dict[str, Any]:
        """Return the claims of ``token`` or raise.

        Raises:
            TokenExpired: signature is valid but ``exp`` has passed.
            TokenInvalid: anything else wrong with the token.
        """
        if kind not in self._secrets:
            raise ValueError(f"unknown token kind: {kind}")
        if not token or not isinstance(token, str):
            raise TokenInvalid("Invalid token format")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("Invalid token format")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("Invalid token format")
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalid("Invalid token")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalid("Invalid token")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("Invalid token format")
        if not isinstance(payload, dict):
            raise TokenInvalid("Invalid token format")
        if payload.get("typ") != kind:
            raise TokenInvalid("Invalid token")
        if payload.get("iss") != self.issuer:
            raise TokenInvalid("Invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalid("Invalid token")
        if not payload.get("sub") or not payload.get("jti"):
            raise TokenInvalid("Invalid token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("Invalid token")
        current = time.time() if now is None else now
        if exp_ts <= current - self.leeway_seconds:
            raise TokenExpired("Token has expired")
        return payload

    def _encode(self, payload: dict[str, Any], kind: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"
