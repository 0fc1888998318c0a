from __future__ import annotations

from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from gatekeep.logging import get_logger, sanitize_message, sanitize_object
from gatekeep.service.devices import ClientInfo
from gatekeep.storage.models import (
    AUDIT_ERROR,
    AUDIT_FAILURE,
    AUDIT_SUCCESS,
    AuditLogEntry,
    AuditQuery,
    new_id,
)

logger = get_logger(__name__)


class AuditAction(str, Enum):
    # authentication
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGIN_LOCKED = "LOGIN_LOCKED"
    LOGOUT = "LOGOUT"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_VERIFY_SUCCESS = "MFA_VERIFY_SUCCESS"
    MFA_VERIFY_FAILURE = "MFA_VERIFY_FAILURE"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    EMAIL_CHANGED = "EMAIL_CHANGED"
    # users
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"
    USER_STATUS_CHANGED = "USER_STATUS_CHANGED"
    USER_ROLE_CHANGED = "USER_ROLE_CHANGED"
    PROFILE_UPDATED = "PROFILE_UPDATED"
    # sessions
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    ALL_SESSIONS_REVOKED = "ALL_SESSIONS_REVOKED"
    # access control
    PERMISSION_GRANTED = "PERMISSION_GRANTED"
    PERMISSION_REVOKED = "PERMISSION_REVOKED"
    ACCESS_DENIED = "ACCESS_DENIED"
    UNAUTHORIZED_ACCESS_ATTEMPT = "UNAUTHORIZED_ACCESS_ATTEMPT"
    # resources
    RESOURCE_CREATED = "RESOURCE_CREATED"
    RESOURCE_UPDATED = "RESOURCE_UPDATED"
    RESOURCE_DELETED = "RESOURCE_DELETED"
    RESOURCE_ACCESSED = "RESOURCE_ACCESSED"
    # security
    CSRF_TOKEN_VALIDATION_FAILED = "CSRF_TOKEN_VALIDATION_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"


SECURITY_EVENT_ACTIONS = [
    AuditAction.LOGIN_FAILURE.value,
    AuditAction.LOGIN_LOCKED.value,
    AuditAction.MFA_VERIFY_FAILURE.value,
    AuditAction.ACCESS_DENIED.value,
    AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT.value,
    AuditAction.CSRF_TOKEN_VALIDATION_FAILED.value,
    AuditAction.RATE_LIMIT_EXCEEDED.value,
    AuditAction.SUSPICIOUS_ACTIVITY.value,
]

_FIELD_LIMITS = {
    "action": 100,
    "resource": 100,
    "ip_address": 45,
    "user_agent": 200,
    "error_message": 500,
}


def _clip(value: Optional[str], field: str) -> Optional[str]:
    if value is None:
        return None
    limit = _FIELD_LIMITS[field]
    cleaned = sanitize_message(value, max_length=limit)
    # sanitize_message appends a marker when truncating; the column cap is hard
    return cleaned[:limit]


class AuditTrail:
    """Append-only security event log.

    Writes are best effort: a failing store is logged and swallowed so that an
    audit outage can never turn a successful login into an error. Every
    user-controlled field is scrubbed before it is stored.
    """

    def __init__(self, store) -> None:
        self.store = store

    def log(
        self,
        action: Union[AuditAction, str],
        *,
        user_id: Optional[str] = None,
        resource: str = "System",
        resource_id: Optional[Any] = None,
        status: str = AUDIT_SUCCESS,
        client: Optional[ClientInfo] = None,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        action_value = action.value if isinstance(action, AuditAction) else str(action)
        try:
            entry = AuditLogEntry(
                id=new_id(),
                action=_clip(action_value, "action") or "UNKNOWN",
                resource=_clip(resource, "resource") or "System",
                status=status,
                user_id=user_id,
                resource_id=str(resource_id) if resource_id is not None else None,
                ip_address=_clip(client.ip_address, "ip_address") if client else None,
                user_agent=_clip(client.user_agent, "user_agent") if client else None,
                details=sanitize_object(details, max_depth=3) if details else None,
                error_message=_clip(error_message, "error_message"),
            )
            self.store.append_audit_log(entry)
        except Exception as exc:  # the audit sink must never fail the caller
            logger.error(
                "audit_write_failed",
                action=action_value,
                user_id=user_id,
                error=sanitize_message(str(exc), max_length=200),
            )
            return None
        return entry

    def log_success(self, action: Union[AuditAction, str], **kwargs: Any) -> Optional[AuditLogEntry]:
        return self.log(action, status=AUDIT_SUCCESS, **kwargs)

    def log_failure(
        self,
        action: Union[AuditAction, str],
        error_message: Optional[str] = None,
        **kwargs: Any,
    ) -> Optional[AuditLogEntry]:
        return self.log(action, status=AUDIT_FAILURE, error_message=error_message, **kwargs)

    def log_error(
        self,
        action: Union[AuditAction, str],
        error_message: Optional[str] = None,
        **kwargs: Any,
    ) -> Optional[AuditLogEntry]:
        return self.log(action, status=AUDIT_ERROR, error_message=error_message, **kwargs)

    def log_auth(
        self,
        action: Union[AuditAction, str],
        *,
        success: bool = True,
        error_message: Optional[str] = None,
        **kwargs: Any,
    ) -> Optional[AuditLogEntry]:
        kwargs.setdefault("resource", "Authentication")
        status = AUDIT_SUCCESS if success else AUDIT_FAILURE
        return self.log(action, status=status, error_message=error_message, **kwargs)

    # reads

    def query(
        self,
        filters: Optional[AuditQuery] = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> Dict[str, Any]:
        limit = max(1, min(limit, 500))
        offset = max(0, offset)
        rows, total = self.store.list_audit_logs(filters or AuditQuery(), limit=limit, offset=offset)
        return {
            "data": rows,
            "meta": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(rows) < total,
            },
        }

    def user_logs(self, user_id: str, limit: int = 50) -> List[AuditLogEntry]:
        rows, _ = self.store.list_audit_logs(AuditQuery(user_id=user_id), limit=limit)
        return rows

    def security_events(
        self, since: Optional[datetime] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        rows, _ = self.store.list_audit_logs(
            AuditQuery(actions=SECURITY_EVENT_ACTIONS, start_date=since), limit=limit
        )
        return rows

    def statistics(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Dict[str, Any]:
        rows, total = self.store.list_audit_logs(AuditQuery(start_date=start, end_date=end))
        by_status = Counter(r.status for r in rows)
        top_actions = Counter(r.action for r in rows).most_common(10)
        return {
            "total_logs": total,
            "success_count": by_status.get(AUDIT_SUCCESS, 0),
            "failure_count": by_status.get(AUDIT_FAILURE, 0),
            "error_count": by_status.get(AUDIT_ERROR, 0),
            "unique_users": len({r.user_id for r in rows if r.user_id}),
            "top_actions": [{"action": a, "count": c} for a, c in top_actions],
        }
