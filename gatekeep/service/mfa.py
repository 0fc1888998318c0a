from __future__ import annotations

import base64
import io
from typing import Any, Dict, Optional

import qrcode

from gatekeep.logging import get_logger
from gatekeep.service.audit import AuditAction, AuditTrail
from gatekeep.service.devices import ClientInfo
from gatekeep.service.email import EmailService
from gatekeep.service.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from gatekeep.service.hashing import CredentialHasher
from gatekeep.service.totp import TotpEngine

logger = get_logger(__name__)


def render_qr_data_uri(payload: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


class MfaService:
    """TOTP enrollment and login-code checks.

    A generated secret stays unconfirmed until ``enable`` sees a valid code
    for it, so a half-finished setup never locks the user out.
    """

    def __init__(
        self,
        store,
        *,
        totp: TotpEngine,
        hasher: CredentialHasher,
        audit: AuditTrail,
        email: Optional[EmailService] = None,
        app_name: str = "Gatekeep",
        issuer: str = "Gatekeep",
        window: int = 2,
    ) -> None:
        self.store = store
        self.totp = totp
        self.hasher = hasher
        self.audit = audit
        self.email = email
        self.app_name = app_name
        self.issuer = issuer
        self.window = window

    def _require_user(self, user_id: str):
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def generate_secret(self, user_id: str) -> Dict[str, str]:
        user = self._require_user(user_id)
        cfg = self.store.get_mfa_config(user_id)
        if cfg and cfg.enabled:
            raise ConflictError("MFA is already enabled. Disable it before generating a new secret.")
        secret = self.totp.generate_secret()
        self.store.set_mfa_secret(user_id, secret, enabled=False)
        account = f"{self.app_name} ({user.email})"
        otpauth_url = self.totp.provisioning_uri(secret, account, self.issuer)
        logger.info("mfa_secret_generated", user_id=user_id)
        return {
            "secret": secret,
            "otpauth_url": otpauth_url,
            "qr_code": render_qr_data_uri(otpauth_url),
        }

    def enable(self, user_id: str, code: str, client: Optional[ClientInfo] = None) -> Dict[str, Any]:
        user = self._require_user(user_id)
        cfg = self.store.get_mfa_config(user_id)
        if not cfg or not cfg.secret:
            raise ValidationError("MFA secret not generated. Please generate a secret first.")
        if not self.totp.verify(cfg.secret, code, window=self.window):
            self.audit.log_failure(
                AuditAction.MFA_VERIFY_FAILURE,
                "Invalid verification code",
                user_id=user_id,
                resource="MFA",
                client=client,
            )
            raise ValidationError("Invalid verification code")
        self.store.set_mfa_enabled(user_id, True)
        self.audit.log_success(AuditAction.MFA_ENABLED, user_id=user_id, resource="MFA", client=client)
        self._notify(self.email.send_mfa_enabled if self.email else None, user.email, "mfa_enabled")
        return {"message": "MFA enabled successfully", "mfa_enabled": True}

    def verify_login_code(self, user_id: str, code: str) -> bool:
        cfg = self.store.get_mfa_config(user_id)
        if not cfg or not cfg.enabled or not cfg.secret:
            return False
        return self.totp.verify(cfg.secret, code, window=self.window)

    def disable(
        self, user_id: str, current_password: str, client: Optional[ClientInfo] = None
    ) -> Dict[str, Any]:
        user = self._require_user(user_id)
        if not self.hasher.verify(user.password_digest, current_password):
            self.audit.log_failure(
                AuditAction.MFA_DISABLED,
                "Invalid password",
                user_id=user_id,
                resource="MFA",
                client=client,
            )
            raise ForbiddenError("Invalid password")
        self.store.delete_mfa_config(user_id)
        self.audit.log_success(AuditAction.MFA_DISABLED, user_id=user_id, resource="MFA", client=client)
        self._notify(self.email.send_mfa_disabled if self.email else None, user.email, "mfa_disabled")
        return {"message": "MFA disabled successfully", "mfa_enabled": False}

    def is_enabled(self, user_id: str) -> bool:
        cfg = self.store.get_mfa_config(user_id)
        return bool(cfg and cfg.enabled)

    def status(self, user_id: str) -> Dict[str, bool]:
        cfg = self.store.get_mfa_config(user_id)
        return {
            "mfa_enabled": bool(cfg and cfg.enabled),
            "mfa_secret_generated": bool(cfg and cfg.secret),
        }

    @staticmethod
    def _notify(sender, to_email: str, kind: str) -> None:
        if sender is None:
            return
        if not sender(to_email):
            # state change already committed; notification is best effort
            logger.warning("mfa_notification_failed", kind=kind)
