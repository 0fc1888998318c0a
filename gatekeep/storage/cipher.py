from __future__ import annotations

import base64
import hashlib
import os
import secrets
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from gatekeep.logging import get_logger

logger = get_logger(__name__)


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: str | None, fs_root: Path) -> Fernet:
    """Return the Fernet cipher that protects TOTP secrets at rest.

    Key material comes from the argument, then ``MFA_SECRET_KEY``, then
    ``JWT_SECRET``. With none set a random key is generated once and kept in
    ``fs_root/.mfa_key``.
    """
    material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
    if not material:
        key_path = fs_root / ".mfa_key"
        try:
            material = key_path.read_text().strip()
        except FileNotFoundError:
            material = secrets.token_urlsafe(64)
            try:
                key_path.parent.mkdir(parents=True, exist_ok=True)
                key_path.write_text(material)
                os.chmod(key_path, 0o600)
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
    return Fernet(_derive_cipher_key(material))


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        # rows written before encryption was enabled hold plaintext
        logger.warning("mfa_secret_decrypt_failed")
        return secret
