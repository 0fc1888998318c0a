from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatekeep.logging import get_logger
from gatekeep.storage.cipher import build_mfa_cipher, decrypt_secret, encrypt_secret
from gatekeep.storage.errors import ConstraintViolation, StoreUnavailable
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

_REQUIRED_TABLES = [
    "app_role",
    "permission",
    "role_permission",
    "app_user",
    "user_mfa_config",
    "auth_session",
    "session_activity",
    "csrf_token",
    "otp",
    "audit_log",
]


class PostgresStore:
    """Postgres-backed store.

    Columns hold naive UTC timestamps to match the in-memory models. Multi-row
    invariants (single current session, refresh rotation) run inside one
    transaction with the user row locked.
    """

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Fail fast when the schema from scripts/schema.sql has not been applied."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise StoreUnavailable(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # user / auth

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_digest=row["password_digest"],
            name=row.get("name"),
            status=row.get("status", USER_STATUS_ACTIVE),
            role_id=str(row["role_id"]) if row.get("role_id") else None,
            refresh_token_digest=row.get("refresh_token_digest"),
            password_changed_at=row.get("password_changed_at"),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    def create_user(
        self,
        email: str,
        password_digest: str,
        *,
        name: Optional[str] = None,
        role_id: Optional[str] = None,
        status: str = USER_STATUS_ACTIVE,
    ) -> User:
        user = User(
            id=new_id(),
            email=email.strip().lower(),
            password_digest=password_digest,
            name=name,
            status=status,
            role_id=role_id,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, password_digest, status, role_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.password_digest,
                        user.status,
                        user.role_id,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role not found", {"field": "role_id"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_password(self, user_id: str, password_digest: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET password_digest = %s, password_changed_at = %s WHERE id = %s",
                (password_digest, datetime.utcnow(), user_id),
            )
            return result.rowcount > 0

    def set_user_status(self, user_id: str, status: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s", (status, user_id)
            )
            return result.rowcount > 0

    def set_user_role(self, user_id: str, role_id: Optional[str]) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    "UPDATE app_user SET role_id = %s WHERE id = %s", (role_id, user_id)
                )
                return result.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role not found", {"field": "role_id"})

    def set_refresh_token_digest(self, user_id: str, digest: Optional[str]) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET refresh_token_digest = %s WHERE id = %s",
                (digest, user_id),
            )
            return result.rowcount > 0

    def rotate_refresh_token(
        self,
        user_id: str,
        expected_digest: str,
        new_digest: str,
        session_id: str,
        new_token_id: str,
    ) -> bool:
        try:
            with self._connect() as conn, conn.transaction():
                swapped = conn.execute(
                    """
                    UPDATE app_user SET refresh_token_digest = %s
                    WHERE id = %s AND refresh_token_digest = %s
                    """,
                    (new_digest, user_id, expected_digest),
                )
                if swapped.rowcount != 1:
                    return False
                moved = conn.execute(
                    """
                    UPDATE auth_session SET token_id = %s, last_used = %s
                    WHERE id = %s AND user_id = %s AND is_active
                    """,
                    (new_token_id, datetime.utcnow(), session_id, user_id),
                )
                if moved.rowcount != 1:
                    # rolls back the digest swap
                    raise _RotationAborted()
        except _RotationAborted:
            return False
        return True

    def delete_user(self, user_id: str) -> bool:
        # session, activity, otp, csrf and mfa rows cascade via foreign keys
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # mfa

    def set_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        record = UserMFAConfig(user_id=user_id, secret=secret, enabled=enabled)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_mfa_config (user_id, secret, enabled, created_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret, enabled = EXCLUDED.enabled,
                        created_at = EXCLUDED.created_at
                    """,
                    (
                        user_id,
                        encrypt_secret(self._mfa_cipher, secret),
                        enabled,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return record

    def get_mfa_config(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_mfa_config WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return UserMFAConfig(
            user_id=str(row["user_id"]),
            secret=decrypt_secret(self._mfa_cipher, row["secret"]),
            enabled=bool(row.get("enabled", False)),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_mfa_config SET enabled = %s WHERE user_id = %s",
                (enabled, user_id),
            )
            return result.rowcount > 0

    def delete_mfa_config(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_mfa_config WHERE user_id = %s", (user_id,)
            )
            return result.rowcount > 0

    # roles / permissions

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=str(row["id"]),
            name=row["name"],
            resource=row["resource"],
            action=row["action"],
            description=row.get("description"),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        role = Role(id=new_id(), name=name, description=description)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_role (id, name, description, created_at) VALUES (%s, %s, %s, %s)",
                    (role.id, role.name, role.description, role.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_role WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM app_role ORDER BY name").fetchall()
        return [self._role_from_row(r) for r in rows]

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_role
                    SET name = COALESCE(%s, name), description = COALESCE(%s, description)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, description, role_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row) if row else None

    def delete_role(self, role_id: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute("DELETE FROM app_role WHERE id = %s", (role_id,))
                return result.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role is assigned to users", {"field": "role_id"})

    def count_users_with_role(self, role_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM app_user WHERE role_id = %s", (role_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        perm = Permission(
            id=new_id(), name=name, resource=resource, action=action, description=description
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO permission (id, name, resource, action, description, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (perm.id, name, resource, action, description, perm.created_at),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
            field = "resource_action" if "resource" in constraint else "name"
            raise ConstraintViolation("permission already exists", {"field": field})
        return perm

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission ORDER BY resource, action"
            ).fetchall()
        return [self._permission_from_row(r) for r in rows]

    def delete_permission(self, permission_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM permission WHERE id = %s", (permission_id,))
            return result.rowcount > 0

    def set_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> None:
        ids = sorted(set(permission_ids))
        with self._connect() as conn, conn.transaction():
            if not conn.execute("SELECT 1 FROM app_role WHERE id = %s", (role_id,)).fetchone():
                raise ConstraintViolation("role not found", {"field": "role_id"})
            if ids:
                rows = conn.execute(
                    "SELECT id FROM permission WHERE id = ANY(%s)", (ids,)
                ).fetchall()
                missing = set(ids) - {str(r["id"]) for r in rows}
                if missing:
                    raise ConstraintViolation(
                        "permission not found",
                        {"field": "permission_ids", "missing": sorted(missing)},
                    )
            conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
            for pid in ids:
                conn.execute(
                    "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                    (role_id, pid),
                )

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM permission p
                JOIN role_permission rp ON rp.permission_id = p.id
                WHERE rp.role_id = %s
                """,
                (role_id,),
            ).fetchall()
        return [self._permission_from_row(r) for r in rows]

    # sessions

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        device = row.get("device_info")
        if isinstance(device, str):
            device = json.loads(device)
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_id=row["token_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_used=row.get("last_used") or row["created_at"],
            device_info=DeviceInfo.from_dict(device),
            ip_address=row.get("ip_address") or "unknown",
            user_agent=row.get("user_agent") or "Unknown",
            is_active=bool(row.get("is_active")),
            is_current=bool(row.get("is_current")),
            mfa_verified=bool(row.get("mfa_verified")),
            revoked_at=row.get("revoked_at"),
        )

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn, conn.transaction():
                locked = conn.execute(
                    "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (session.user_id,)
                ).fetchone()
                if not locked:
                    raise ConstraintViolation(
                        "user not found for session", {"field": "user_id"}
                    )
                conn.execute(
                    "UPDATE auth_session SET is_current = FALSE WHERE user_id = %s AND is_active",
                    (session.user_id,),
                )
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, token_id, device_info, ip_address, user_agent,
                        is_active, is_current, mfa_verified, last_used, expires_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, TRUE, TRUE, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_id,
                        json.dumps(session.device_info.to_dict()),
                        session.ip_address,
                        session.user_agent,
                        session.mfa_verified,
                        session.last_used,
                        session.expires_at,
                        session.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("session token id already exists", {"field": "token_id"})
        session.is_active = True
        session.is_current = True
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_token_id(self, token_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token_id = %s", (token_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._session_from_row(r) for r in rows]

    def touch_session(self, session_id: str, when: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET last_used = %s WHERE id = %s",
                (when or datetime.utcnow(), session_id),
            )
            return result.rowcount > 0

    def set_session_expiry(self, session_id: str, expires_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET expires_at = %s WHERE id = %s AND is_active",
                (expires_at, session_id),
            )
            return result.rowcount > 0

    def mark_session_mfa_verified(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET mfa_verified = TRUE WHERE id = %s", (session_id,)
            )
            return result.rowcount > 0

    def deactivate_session(self, session_id: str, *, user_id: Optional[str] = None) -> bool:
        query = """
            UPDATE auth_session
            SET is_active = FALSE, is_current = FALSE, revoked_at = %s
            WHERE id = %s AND is_active
        """
        params: List[Any] = [datetime.utcnow(), session_id]
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            result = conn.execute(query, tuple(params))
            return result.rowcount > 0

    def deactivate_user_sessions(
        self, user_id: str, *, exclude_session_id: Optional[str] = None
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session
                SET is_active = FALSE, is_current = FALSE, revoked_at = %s
                WHERE user_id = %s AND is_active AND (%s::text IS NULL OR id <> %s)
                RETURNING id
                """,
                (datetime.utcnow(), user_id, exclude_session_id, exclude_session_id),
            ).fetchall()
        return [str(r["id"]) for r in rows]

    def deactivate_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, is_current = FALSE
                WHERE is_active AND expires_at <= %s
                """,
                (now or datetime.utcnow(),),
            )
            return result.rowcount

    def append_session_activity(self, activity: SessionActivity) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO session_activity (id, session_id, action, ip_address, user_agent, details, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        activity.id,
                        activity.session_id,
                        activity.action,
                        activity.ip_address,
                        activity.user_agent,
                        json.dumps(activity.details) if activity.details else None,
                        activity.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session not found", {"field": "session_id"})

    def list_session_activity(self, session_id: str, limit: int = 50) -> List[SessionActivity]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM session_activity WHERE session_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (session_id, limit),
            ).fetchall()
        return [
            SessionActivity(
                id=str(r["id"]),
                session_id=str(r["session_id"]),
                action=r["action"],
                ip_address=r.get("ip_address"),
                user_agent=r.get("user_agent"),
                details=r.get("details"),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # csrf

    def save_csrf_token(self, record: CsrfToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO csrf_token (token, session_id, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.token,
                        record.session_id,
                        record.user_id,
                        record.expires_at,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("csrf token collision", {"field": "token"})

    def get_csrf_token(self, token: str) -> Optional[CsrfToken]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM csrf_token WHERE token = %s", (token,)).fetchone()
        if not row:
            return None
        return CsrfToken(
            token=row["token"],
            expires_at=row["expires_at"],
            session_id=str(row["session_id"]) if row.get("session_id") else None,
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            created_at=row["created_at"],
        )

    def delete_csrf_tokens(
        self, *, session_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> int:
        if session_id is None and user_id is None:
            return 0
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM csrf_token
                WHERE (%s::text IS NOT NULL AND session_id = %s)
                   OR (%s::text IS NOT NULL AND user_id = %s)
                """,
                (session_id, session_id, user_id, user_id),
            )
            return result.rowcount

    def delete_expired_csrf_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM csrf_token WHERE expires_at <= %s", (now or datetime.utcnow(),)
            )
            return result.rowcount

    # otp

    @staticmethod
    def _otp_from_row(row: Dict[str, Any]) -> Otp:
        return Otp(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            code_digest=row["code_digest"],
            expires_at=row["expires_at"],
            type=row["type"],
            is_used=bool(row["is_used"]),
            created_at=row["created_at"],
        )

    def create_otp(self, otp: Otp) -> Otp:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO otp (id, user_id, code_digest, type, expires_at, is_used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        otp.id,
                        otp.user_id,
                        otp.code_digest,
                        otp.type,
                        otp.expires_at,
                        otp.is_used,
                        otp.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for otp", {"field": "user_id"})
        return otp

    def latest_otp(
        self, user_id: str, otp_type: str, *, used: bool, now: Optional[datetime] = None
    ) -> Optional[Otp]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp
                WHERE user_id = %s AND type = %s AND is_used = %s AND expires_at > %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (user_id, otp_type, used, now or datetime.utcnow()),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def mark_otp_used(self, otp_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE otp SET is_used = TRUE WHERE id = %s AND NOT is_used", (otp_id,)
            )
            return result.rowcount > 0

    def consume_verified_otp(self, user_id: str, otp_type: str) -> bool:
        # row locks make a concurrent consumer see zero rows once this commits
        with self._connect() as conn, conn.transaction():
            consumed = conn.execute(
                """
                DELETE FROM otp
                WHERE user_id = %s AND type = %s AND is_used AND expires_at > %s
                RETURNING id
                """,
                (user_id, otp_type, datetime.utcnow()),
            ).fetchall()
            if not consumed:
                return False
            conn.execute(
                "DELETE FROM otp WHERE user_id = %s AND type = %s", (user_id, otp_type)
            )
            return True

    def delete_otps(
        self, user_id: str, otp_type: str, *, unexpired_only: bool = False
    ) -> int:
        query = "DELETE FROM otp WHERE user_id = %s AND type = %s"
        params: List[Any] = [user_id, otp_type]
        if unexpired_only:
            query += " AND expires_at > %s"
            params.append(datetime.utcnow())
        with self._connect() as conn:
            return conn.execute(query, tuple(params)).rowcount

    def delete_expired_otps(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM otp WHERE expires_at <= %s", (now or datetime.utcnow(),)
            )
            return result.rowcount

    # audit

    def append_audit_log(self, entry: AuditLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    id, user_id, action, resource, resource_id, status,
                    ip_address, user_agent, details, error_message, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action,
                    entry.resource,
                    entry.resource_id,
                    entry.status,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(entry.details) if entry.details else None,
                    entry.error_message,
                    entry.created_at,
                ),
            )

    def list_audit_logs(
        self, query: AuditQuery, *, limit: Optional[int] = None, offset: int = 0
    ) -> Tuple[List[AuditLogEntry], int]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("user_id", query.user_id),
            ("action", query.action),
            ("resource", query.resource),
            ("status", query.status),
        ):
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        if query.actions is not None:
            clauses.append("action = ANY(%s)")
            params.append(list(query.actions))
        if query.start_date:
            clauses.append("created_at >= %s")
            params.append(query.start_date)
        if query.end_date:
            clauses.append("created_at <= %s")
            params.append(query.end_date)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        page = "" if limit is None else " LIMIT %s OFFSET %s"
        page_params = [] if limit is None else [limit, offset]
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS n FROM audit_log {where}", tuple(params)
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC{page}",
                tuple(params + page_params),
            ).fetchall()
        if limit is None and offset:
            rows = rows[offset:]
        entries = [
            AuditLogEntry(
                id=str(r["id"]),
                action=r["action"],
                resource=r["resource"],
                status=r["status"],
                user_id=str(r["user_id"]) if r.get("user_id") else None,
                resource_id=r.get("resource_id"),
                ip_address=r.get("ip_address"),
                user_agent=r.get("user_agent"),
                details=r.get("details"),
                error_message=r.get("error_message"),
                created_at=r["created_at"],
            )
            for r in rows
        ]
        return entries, int(total_row["n"]) if total_row else 0


class _RotationAborted(Exception):
    pass
