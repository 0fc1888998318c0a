from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeep.service.devices import DeviceDetector
from gatekeep.storage.models import (
    AuditLogEntry,
    Permission,
    Role,
    Session,
    SessionActivity,
    User,
)

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code`` value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_OTP_PATTERN = re.compile(r"^\d{6}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_six_digits(value: str) -> str:
    value = value.strip()
    if not _OTP_PATTERN.match(value):
        raise ValueError("code must be 6 digits")
    return value


class _EmailPayload(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


# auth requests


class LoginRequest(_EmailPayload):
    password: str = Field(..., min_length=1, max_length=128)


class LoginMfaRequest(_EmailPayload):
    code: str

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        return _validate_six_digits(value)


class SignupRequest(_EmailPayload):
    password: str = Field(..., max_length=128)
    name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("name")
    @classmethod
    def _clean_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = _normalize_unicode(value).strip()
        return cleaned or None


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ForgotPasswordRequest(_EmailPayload):
    pass


class VerifyOtpRequest(_EmailPayload):
    otp: str

    @field_validator("otp")
    @classmethod
    def _check_otp(cls, value: str) -> str:
        return _validate_six_digits(value)


class ResetPasswordRequest(_EmailPayload):
    new_password: str = Field(..., max_length=128)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., max_length=128)
    confirm_password: str = Field(..., max_length=128)


class DeleteAccountRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class MfaCodeRequest(BaseModel):
    code: str

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        return _validate_six_digits(value)


class MfaDisableRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)


class CsrfValidateRequest(BaseModel):
    token: str = Field(..., max_length=256)


class ExtendSessionRequest(BaseModel):
    days: int = Field(default=7, ge=1, le=30)


# role / permission requests


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def _upper_name(cls, value: str) -> str:
        return value.strip().upper()


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def _upper_name(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().upper() if value is not None else None


class PermissionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    resource: str = Field(..., min_length=1, max_length=64)
    action: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=500)


class AssignPermissionsRequest(BaseModel):
    permission_ids: List[str] = Field(default_factory=list, max_length=500)


# responses


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    email: str
    role: Optional[str] = None
    status: str
    first_name: str = ""
    last_name: str = ""
    session_id: str


class MfaChallengeResponse(BaseModel):
    requires_mfa: bool = True
    user_id: str
    email: str


class UserProfile(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    status: str
    role: Optional[str] = None
    permissions: List[Dict[str, str]] = Field(default_factory=list)
    mfa_enabled: bool = False
    created_at: datetime

    @classmethod
    def from_user(
        cls,
        user: User,
        *,
        role: Optional[str],
        permissions: List[Dict[str, str]],
        mfa_enabled: bool,
    ) -> "UserProfile":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            first_name=user.first_name,
            last_name=user.last_name,
            status=user.status,
            role=role,
            permissions=permissions,
            mfa_enabled=mfa_enabled,
            created_at=user.created_at,
        )


class SessionResponse(BaseModel):
    id: str
    device: str
    device_info: Dict[str, str]
    ip_address: str
    user_agent: str
    created_at: datetime
    last_used: datetime
    expires_at: datetime
    is_current: bool
    mfa_verified: bool

    @classmethod
    def from_session(cls, session: Session, current_session_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            device=DeviceDetector.describe(session.device_info),
            device_info=session.device_info.to_dict(),
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            created_at=session.created_at,
            last_used=session.last_used,
            expires_at=session.expires_at,
            # the caller's own session is "current" regardless of login order
            is_current=(session.id == current_session_id)
            if current_session_id
            else session.is_current,
            mfa_verified=session.mfa_verified,
        )


class SessionActivityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    action: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    @classmethod
    def from_activity(cls, activity: SessionActivity) -> "SessionActivityResponse":
        return cls.model_validate(activity)


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    action: str
    resource: str
    status: str
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditLogResponse":
        return cls.model_validate(entry)


class PermissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls.model_validate(permission)


class RoleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    permissions: List[PermissionResponse] = Field(default_factory=list)
    user_count: int = 0
    created_at: datetime

    @classmethod
    def from_role(
        cls,
        role: Role,
        permissions: Optional[List[Permission]] = None,
        user_count: int = 0,
    ) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            permissions=[PermissionResponse.from_permission(p) for p in permissions or []],
            user_count=user_count,
            created_at=role.created_at,
        )

    @classmethod
    def from_described(cls, described: Dict[str, Any]) -> "RoleResponse":
        return cls.from_role(
            described["role"], described["permissions"], described["user_count"]
        )
