from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeep.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """argon2id wrapper used for passwords, refresh tokens and OTP codes.

    ``verify`` never raises: a mismatch, a malformed digest or an empty digest
    all come back as ``False``.
    """

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, digest: str | None, plaintext: str | None) -> bool:
        if not digest or plaintext is None:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_digest_invalid")
            return False
