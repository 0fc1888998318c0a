from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

USER_STATUS_ACTIVE = "ACTIVE"
USER_STATUS_INACTIVE = "INACTIVE"

OTP_TYPE_PASSWORD_RESET = "PASSWORD_RESET"

SESSION_ACTION_LOGIN = "LOGIN"
SESSION_ACTION_REFRESH = "REFRESH"
SESSION_ACTION_LOGOUT = "LOGOUT"
SESSION_ACTION_SUSPICIOUS = "SUSPICIOUS_ACTIVITY"

AUDIT_SUCCESS = "SUCCESS"
AUDIT_FAILURE = "FAILURE"
AUDIT_ERROR = "ERROR"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    password_digest: str
    name: Optional[str] = None
    status: str = USER_STATUS_ACTIVE
    role_id: Optional[str] = None
    refresh_token_digest: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == USER_STATUS_ACTIVE

    @property
    def first_name(self) -> str:
        return (self.name or "").split(" ", 1)[0]

    @property
    def last_name(self) -> str:
        parts = (self.name or "").split(" ", 1)
        return parts[1] if len(parts) > 1 else ""


@dataclass
class UserMFAConfig:
    user_id: str
    secret: str
    enabled: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Permission:
    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class DeviceInfo:
    browser: str = "Unknown"
    os: str = "Unknown"
    device: str = "Desktop"
    platform: str = "Unknown"
    version: str = "Unknown"

    def to_dict(self) -> Dict[str, str]:
        return {
            "browser": self.browser,
            "os": self.os,
            "device": self.device,
            "platform": self.platform,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "DeviceInfo":
        data = data or {}
        return cls(
            browser=data.get("browser", "Unknown"),
            os=data.get("os", "Unknown"),
            device=data.get("device", "Desktop"),
            platform=data.get("platform", "Unknown"),
            version=data.get("version", "Unknown"),
        )


@dataclass
class Session:
    id: str
    user_id: str
    token_id: str
    created_at: datetime
    expires_at: datetime
    last_used: datetime
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    ip_address: str = "unknown"
    user_agent: str = "Unknown"
    is_active: bool = True
    is_current: bool = True
    mfa_verified: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_id: str,
        ttl_days: int = 7,
        *,
        device_info: DeviceInfo | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        mfa_verified: bool = False,
    ) -> "Session":
        now = datetime.utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            token_id=token_id,
            created_at=now,
            expires_at=now + timedelta(days=ttl_days),
            last_used=now,
            device_info=device_info or DeviceInfo(),
            ip_address=ip_address or "unknown",
            user_agent=user_agent or "Unknown",
            mfa_verified=mfa_verified,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or datetime.utcnow())

    @property
    def is_usable(self) -> bool:
        return self.is_active and not self.is_expired()


@dataclass
class SessionActivity:
    id: str
    session_id: str
    action: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class CsrfToken:
    token: str
    expires_at: datetime
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or datetime.utcnow())


@dataclass
class Otp:
    id: str
    user_id: str
    code_digest: str
    expires_at: datetime
    type: str = OTP_TYPE_PASSWORD_RESET
    is_used: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or datetime.utcnow())


@dataclass
class AuditLogEntry:
    id: str
    action: str
    resource: str
    status: str = AUDIT_SUCCESS
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict | None = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class AuditQuery:
    """Filters accepted by ``list_audit_logs``; unset fields match everything."""

    user_id: Optional[str] = None
    action: Optional[str] = None
    resource: Optional[str] = None
    status: Optional[str] = None
    actions: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.user_id and entry.user_id != self.user_id:
            return False
        if self.action and entry.action != self.action:
            return False
        if self.actions is not None and entry.action not in self.actions:
            return False
        if self.resource and entry.resource != self.resource:
            return False
        if self.status and entry.status != self.status:
            return False
        if self.start_date and entry.created_at < self.start_date:
            return False
        if self.end_date and entry.created_at > self.end_date:
            return False
        return True
