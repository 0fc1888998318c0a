from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from typing import Optional
from urllib.parse import quote, urlencode

from gatekeep.logging import get_logger

logger = get_logger(__name__)


class TotpEngine:
    """RFC 6238 time-based one-time passwords.

    HMAC-SHA1 with 30 second steps and 6 digits, which is what every
    mainstream authenticator app assumes for ``otpauth://totp`` URIs.
    """

    def __init__(self, *, interval: int = 30, digits: int = 6, default_window: int = 2) -> None:
        self.interval = interval
        self.digits = digits
        self.default_window = default_window

    @staticmethod
    def generate_secret(num_bytes: int = 20) -> str:
        """Random 160-bit secret, base32 without padding."""
        return base64.b32encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")

    def code_at(self, secret: str, timestamp: float) -> str:
        normalized = secret.replace(" ", "").upper()
        padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def now(self, secret: str) -> str:
        return self.code_at(secret, time.time())

    def verify(
        self,
        secret: str,
        code: str,
        *,
        window: Optional[int] = None,
        at: Optional[float] = None,
    ) -> bool:
        """Accept ``code`` if it matches any step within +/- ``window`` of ``at``."""
        if not secret or not code:
            return False
        candidate = str(code).strip()
        if len(candidate) != self.digits or not candidate.isdigit():
            return False
        steps = self.default_window if window is None else window
        timestamp = time.time() if at is None else at
        matched = False
        for offset in range(-steps, steps + 1):
            generated = self.code_at(secret, timestamp + offset * self.interval)
            # keep scanning after a hit so timing does not leak the offset
            if generated and hmac.compare_digest(generated, candidate):
                matched = True
        return matched

    def provisioning_uri(self, secret: str, account: str, issuer: str) -> str:
        label = quote(f"{issuer}:{account}", safe="")
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{label}?{params}"
