from __future__ import annotations

import json
import threading
from dataclasses import fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from gatekeep.logging import get_logger
from gatekeep.storage.cipher import build_mfa_cipher, decrypt_secret, encrypt_secret
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import (
    AuditLogEntry,
    AuditQuery,
    CsrfToken,
    DeviceInfo,
    Otp,
    Permission,
    Role,
    Session,
    SessionActivity,
    User,
    UserMFAConfig,
    USER_STATUS_ACTIVE,
    new_id,
)

_DATETIME_FIELDS = frozenset(
    {"created_at", "expires_at", "last_used", "revoked_at", "password_changed_at"}
)


class MemoryStore:
    """Thread-safe in-process store with an optional JSON snapshot on disk.

    Every public method takes ``_data_lock`` so multi-step operations such as
    refresh-token rotation and session creation are atomic with respect to
    each other. The snapshot lets a dev server survive restarts.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/gatekeep",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Dict[str, set[str]] = {}
        self.mfa_configs: Dict[str, UserMFAConfig] = {}
        self.sessions: Dict[str, Session] = {}
        self.session_activity: List[SessionActivity] = []
        self.csrf_tokens: Dict[str, CsrfToken] = {}
        self.otps: Dict[str, Otp] = {}
        self.audit_logs: List[AuditLogEntry] = []
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._persist_enabled = persist
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)
        if persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> bool:
        return True

    # user / auth

    def create_user(
        self,
        email: str,
        password_digest: str,
        *,
        name: Optional[str] = None,
        role_id: Optional[str] = None,
        status: str = USER_STATUS_ACTIVE,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if role_id and role_id not in self.roles:
                raise ConstraintViolation("role not found", {"field": "role_id"})
            user = User(
                id=new_id(),
                email=normalized,
                password_digest=password_digest,
                name=name,
                status=status,
                role_id=role_id,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return replace(user)
            return None

    def set_user_password(self, user_id: str, password_digest: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_digest = password_digest
            user.password_changed_at = datetime.utcnow()
            self._persist_state()
            return True

    def set_user_status(self, user_id: str, status: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.status = status
            self._persist_state()
            return True

    def set_user_role(self, user_id: str, role_id: Optional[str]) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            if role_id and role_id not in self.roles:
                raise ConstraintViolation("role not found", {"field": "role_id"})
            user.role_id = role_id
            self._persist_state()
            return True

    def set_refresh_token_digest(self, user_id: str, digest: Optional[str]) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.refresh_token_digest = digest
            self._persist_state()
            return True

    def rotate_refresh_token(
        self,
        user_id: str,
        expected_digest: str,
        new_digest: str,
        session_id: str,
        new_token_id: str,
    ) -> bool:
        """Swap the stored refresh digest and session jti only if nobody beat us."""
        with self._data_lock:
            user = self.users.get(user_id)
            session = self.sessions.get(session_id)
            if not user or user.refresh_token_digest != expected_digest:
                return False
            if not session or not session.is_active:
                return False
            user.refresh_token_digest = new_digest
            session.token_id = new_token_id
            session.last_used = datetime.utcnow()
            self._persist_state()
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            session_ids = {s.id for s in self.sessions.values() if s.user_id == user_id}
            self.sessions = {
                sid: s for sid, s in self.sessions.items() if sid not in session_ids
            }
            self.session_activity = [
                a for a in self.session_activity if a.session_id not in session_ids
            ]
            self.otps = {oid: o for oid, o in self.otps.items() if o.user_id != user_id}
            self.csrf_tokens = {
                t: rec
                for t, rec in self.csrf_tokens.items()
                if rec.user_id != user_id and rec.session_id not in session_ids
            }
            self.mfa_configs.pop(user_id, None)
            self._persist_state()
            return True

    # mfa

    def set_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            record = UserMFAConfig(
                user_id=user_id,
                secret=encrypt_secret(self._mfa_cipher, secret),
                enabled=enabled,
            )
            self.mfa_configs[user_id] = record
            self._persist_state()
            return replace(record, secret=secret)

    def get_mfa_config(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._data_lock:
            cfg = self.mfa_configs.get(user_id)
            if not cfg:
                return None
            return replace(cfg, secret=decrypt_secret(self._mfa_cipher, cfg.secret))

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> bool:
        with self._data_lock:
            cfg = self.mfa_configs.get(user_id)
            if not cfg:
                return False
            cfg.enabled = enabled
            self._persist_state()
            return True

    def delete_mfa_config(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.mfa_configs.pop(user_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    # roles / permissions

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role = Role(id=new_id(), name=name, description=description)
            self.roles[role.id] = role
            self.role_permissions[role.id] = set()
            self._persist_state()
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            for role in self.roles.values():
                if role.name == name:
                    return replace(role)
            return None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted((replace(r) for r in self.roles.values()), key=lambda r: r.name)

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if name and name != role.name:
                if any(r.name == name for r in self.roles.values()):
                    raise ConstraintViolation(
                        "role name already exists", {"field": "name"}
                    )
                role.name = name
            if description is not None:
                role.description = description
            self._persist_state()
            return replace(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if role_id not in self.roles:
                return False
            if any(u.role_id == role_id for u in self.users.values()):
                raise ConstraintViolation("role is assigned to users", {"field": "role_id"})
            del self.roles[role_id]
            self.role_permissions.pop(role_id, None)
            self._persist_state()
            return True

    def count_users_with_role(self, role_id: str) -> int:
        with self._data_lock:
            return sum(1 for u in self.users.values() if u.role_id == role_id)

    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        with self._data_lock:
            for existing in self.permissions.values():
                if existing.name == name:
                    raise ConstraintViolation(
                        "permission name already exists", {"field": "name"}
                    )
                if existing.resource == resource and existing.action == action:
                    raise ConstraintViolation(
                        "permission resource/action already exists",
                        {"field": "resource_action"},
                    )
            perm = Permission(
                id=new_id(),
                name=name,
                resource=resource,
                action=action,
                description=description,
            )
            self.permissions[perm.id] = perm
            self._persist_state()
            return replace(perm)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            perm = self.permissions.get(permission_id)
            return replace(perm) if perm else None

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(
                (replace(p) for p in self.permissions.values()),
                key=lambda p: (p.resource, p.action),
            )

    def delete_permission(self, permission_id: str) -> bool:
        with self._data_lock:
            if self.permissions.pop(permission_id, None) is None:
                return False
            for granted in self.role_permissions.values():
                granted.discard(permission_id)
            self._persist_state()
            return True

    def set_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> None:
        ids = set(permission_ids)
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role not found", {"field": "role_id"})
            missing = ids - set(self.permissions)
            if missing:
                raise ConstraintViolation(
                    "permission not found", {"field": "permission_ids", "missing": sorted(missing)}
                )
            self.role_permissions[role_id] = ids
            self._persist_state()

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        with self._data_lock:
            granted = self.role_permissions.get(role_id, set())
            return [replace(self.permissions[pid]) for pid in granted if pid in self.permissions]

    # sessions

    def create_session(self, session: Session) -> Session:
        """Insert ``session`` as the user's only current session."""
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user not found for session", {"field": "user_id"})
            for other in self.sessions.values():
                if other.user_id == session.user_id and other.is_active:
                    other.is_current = False
            stored = replace(session, is_current=True, is_active=True)
            self.sessions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_token_id(self, token_id: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.token_id == token_id:
                    return replace(sess)
            return None

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            return [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (s.is_active or not active_only)
            ]

    def touch_session(self, session_id: str, when: Optional[datetime] = None) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.last_used = when or datetime.utcnow()
            self._persist_state()
            return True

    def set_session_expiry(self, session_id: str, expires_at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.expires_at = expires_at
            self._persist_state()
            return True

    def mark_session_mfa_verified(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.mfa_verified = True
            self._persist_state()
            return True

    def deactivate_session(self, session_id: str, *, user_id: Optional[str] = None) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            if user_id is not None and sess.user_id != user_id:
                return False
            sess.is_active = False
            sess.is_current = False
            sess.revoked_at = datetime.utcnow()
            self._persist_state()
            return True

    def deactivate_user_sessions(
        self, user_id: str, *, exclude_session_id: Optional[str] = None
    ) -> List[str]:
        now = datetime.utcnow()
        revoked: List[str] = []
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if exclude_session_id and sess.id == exclude_session_id:
                    continue
                sess.is_active = False
                sess.is_current = False
                sess.revoked_at = now
                revoked.append(sess.id)
            if revoked:
                self._persist_state()
            return revoked

    def deactivate_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        count = 0
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.is_active and sess.expires_at <= now:
                    sess.is_active = False
                    sess.is_current = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def append_session_activity(self, activity: SessionActivity) -> None:
        with self._data_lock:
            if activity.session_id not in self.sessions:
                raise ConstraintViolation("session not found", {"field": "session_id"})
            self.session_activity.append(replace(activity))
            self._persist_state()

    def list_session_activity(self, session_id: str, limit: int = 50) -> List[SessionActivity]:
        with self._data_lock:
            rows = [a for a in self.session_activity if a.session_id == session_id]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        return [replace(a) for a in rows[:limit]]

    # csrf

    def save_csrf_token(self, record: CsrfToken) -> None:
        with self._data_lock:
            if record.token in self.csrf_tokens:
                raise ConstraintViolation("csrf token collision", {"field": "token"})
            self.csrf_tokens[record.token] = replace(record)
            self._persist_state()

    def get_csrf_token(self, token: str) -> Optional[CsrfToken]:
        with self._data_lock:
            rec = self.csrf_tokens.get(token)
            return replace(rec) if rec else None

    def delete_csrf_tokens(
        self, *, session_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> int:
        if session_id is None and user_id is None:
            return 0
        with self._data_lock:
            doomed = [
                token
                for token, rec in self.csrf_tokens.items()
                if (session_id is not None and rec.session_id == session_id)
                or (user_id is not None and rec.user_id == user_id)
            ]
            for token in doomed:
                del self.csrf_tokens[token]
            if doomed:
                self._persist_state()
            return len(doomed)

    def delete_expired_csrf_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        with self._data_lock:
            doomed = [t for t, rec in self.csrf_tokens.items() if rec.expires_at <= now]
            for token in doomed:
                del self.csrf_tokens[token]
            if doomed:
                self._persist_state()
            return len(doomed)

    # otp

    def create_otp(self, otp: Otp) -> Otp:
        with self._data_lock:
            if otp.user_id not in self.users:
                raise ConstraintViolation("user not found for otp", {"field": "user_id"})
            self.otps[otp.id] = replace(otp)
            self._persist_state()
            return replace(otp)

    def latest_otp(
        self, user_id: str, otp_type: str, *, used: bool, now: Optional[datetime] = None
    ) -> Optional[Otp]:
        now = now or datetime.utcnow()
        with self._data_lock:
            candidates = [
                o
                for o in self.otps.values()
                if o.user_id == user_id
                and o.type == otp_type
                and o.is_used == used
                and o.expires_at > now
            ]
            if not candidates:
                return None
            newest = max(candidates, key=lambda o: o.created_at)
            return replace(newest)

    def mark_otp_used(self, otp_id: str) -> bool:
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if not otp or otp.is_used:
                return False
            otp.is_used = True
            self._persist_state()
            return True

    def consume_verified_otp(self, user_id: str, otp_type: str) -> bool:
        """Delete every OTP of ``otp_type`` once a used, unexpired one exists."""
        now = datetime.utcnow()
        with self._data_lock:
            mine = [
                oid
                for oid, o in self.otps.items()
                if o.user_id == user_id and o.type == otp_type
            ]
            if not any(
                self.otps[oid].is_used and self.otps[oid].expires_at > now for oid in mine
            ):
                return False
            for oid in mine:
                del self.otps[oid]
            self._persist_state()
            return True

    def delete_otps(
        self, user_id: str, otp_type: str, *, unexpired_only: bool = False
    ) -> int:
        now = datetime.utcnow()
        with self._data_lock:
            doomed = [
                oid
                for oid, o in self.otps.items()
                if o.user_id == user_id
                and o.type == otp_type
                and (not unexpired_only or o.expires_at > now)
            ]
            for oid in doomed:
                del self.otps[oid]
            if doomed:
                self._persist_state()
            return len(doomed)

    def delete_expired_otps(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        with self._data_lock:
            doomed = [oid for oid, o in self.otps.items() if o.expires_at <= now]
            for oid in doomed:
                del self.otps[oid]
            if doomed:
                self._persist_state()
            return len(doomed)

    # audit

    def append_audit_log(self, entry: AuditLogEntry) -> None:
        with self._data_lock:
            self.audit_logs.append(replace(entry))
            self._persist_state()

    def list_audit_logs(
        self, query: AuditQuery, *, limit: Optional[int] = None, offset: int = 0
    ) -> Tuple[List[AuditLogEntry], int]:
        with self._data_lock:
            matching = [e for e in self.audit_logs if query.matches(e)]
        matching.sort(key=lambda e: e.created_at, reverse=True)
        total = len(matching)
        window = matching[offset:] if limit is None else matching[offset : offset + limit]
        return [replace(e) for e in window], total

    # persistence

    def _persist_state(self) -> None:
        if not self._persist_enabled:
            return
        state = {
            "users": [_serialize_record(u) for u in self.users.values()],
            "roles": [_serialize_record(r) for r in self.roles.values()],
            "permissions": [_serialize_record(p) for p in self.permissions.values()],
            "role_permissions": {
                role_id: sorted(ids) for role_id, ids in self.role_permissions.items()
            },
            "mfa_configs": [_serialize_record(c) for c in self.mfa_configs.values()],
            "sessions": [_serialize_record(s) for s in self.sessions.values()],
            "session_activity": [_serialize_record(a) for a in self.session_activity],
            "csrf_tokens": [_serialize_record(t) for t in self.csrf_tokens.values()],
            "otps": [_serialize_record(o) for o in self.otps.values()],
            "audit_logs": [_serialize_record(e) for e in self.audit_logs],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {
            u["id"]: _deserialize_record(User, u) for u in data.get("users", [])
        }
        self.roles = {
            r["id"]: _deserialize_record(Role, r) for r in data.get("roles", [])
        }
        self.permissions = {
            p["id"]: _deserialize_record(Permission, p)
            for p in data.get("permissions", [])
        }
        self.role_permissions = {
            role_id: set(ids) for role_id, ids in data.get("role_permissions", {}).items()
        }
        self.mfa_configs = {
            c["user_id"]: _deserialize_record(UserMFAConfig, c)
            for c in data.get("mfa_configs", [])
        }
        self.sessions = {
            s["id"]: _deserialize_record(Session, s) for s in data.get("sessions", [])
        }
        self.session_activity = [
            _deserialize_record(SessionActivity, a)
            for a in data.get("session_activity", [])
        ]
        self.csrf_tokens = {
            t["token"]: _deserialize_record(CsrfToken, t)
            for t in data.get("csrf_tokens", [])
        }
        self.otps = {
            o["id"]: _deserialize_record(Otp, o) for o in data.get("otps", [])
        }
        self.audit_logs = [
            _deserialize_record(AuditLogEntry, e) for e in data.get("audit_logs", [])
        ]
        return True


def _serialize_record(record: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, DeviceInfo):
            value = value.to_dict()
        payload[f.name] = value
    return payload


def _deserialize_record(cls: type, data: Dict[str, Any]) -> Any:
    known = {f.name for f in fields(cls)}
    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            continue
        if key in _DATETIME_FIELDS and isinstance(value, str):
            value = datetime.fromisoformat(value)
        elif key == "device_info":
            value = DeviceInfo.from_dict(value)
        kwargs[key] = value
    return cls(**kwargs)
