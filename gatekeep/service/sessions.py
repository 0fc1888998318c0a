from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from gatekeep.logging import get_logger
from gatekeep.service.devices import ClientInfo, DeviceDetector
from gatekeep.storage.models import (
    SESSION_ACTION_LOGIN,
    SESSION_ACTION_LOGOUT,
    SESSION_ACTION_REFRESH,
    SESSION_ACTION_SUSPICIOUS,
    Session,
    SessionActivity,
    new_id,
)

logger = get_logger(__name__)


class SessionRegistry:
    """Per-device session records keyed by the token ``jti``.

    A session moves ACTIVE(current) -> ACTIVE(not current) -> REVOKED or
    EXPIRED. Records are deactivated, never deleted, so their activity trail
    stays queryable.
    """

    def __init__(
        self,
        store,
        *,
        ttl_days: int = 7,
        detector: Optional[DeviceDetector] = None,
    ) -> None:
        self.store = store
        self.ttl_days = ttl_days
        self.detector = detector or DeviceDetector()

    def create_session(
        self,
        user_id: str,
        token_id: str,
        client: Optional[ClientInfo] = None,
        *,
        mfa_verified: bool = False,
    ) -> Session:
        client = client or ClientInfo()
        session = Session.new(
            user_id,
            token_id,
            ttl_days=self.ttl_days,
            device_info=self.detector.parse(client.user_agent),
            ip_address=client.ip,
            user_agent=client.agent,
            mfa_verified=mfa_verified,
        )
        created = self.store.create_session(session)
        self._record(created.id, SESSION_ACTION_LOGIN, client)
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=created.id,
            device=self.detector.describe(created.device_info),
        )
        return created

    def validate_session(
        self,
        token_id: str,
        client: Optional[ClientInfo] = None,
        *,
        record_activity: bool = True,
    ) -> Optional[Session]:
        """Return the live session for ``token_id`` and mark it used.

        Inactive or expired sessions yield ``None``. An expired session that
        is still flagged active is deactivated on the spot.
        """
        session = self.store.get_session_by_token_id(token_id)
        if not session or not session.is_active:
            return None
        now = datetime.utcnow()
        if session.is_expired(now):
            self.store.deactivate_session(session.id)
            logger.info("session_expired_on_use", session_id=session.id)
            return None
        self.store.touch_session(session.id, now)
        session.last_used = now
        if record_activity:
            self.record_refresh(session.id, client)
        return session

    def record_refresh(self, session_id: str, client: Optional[ClientInfo] = None) -> None:
        self._record(session_id, SESSION_ACTION_REFRESH, client or ClientInfo())

    def detect_suspicious_activity(self, session_id: str, client: ClientInfo) -> bool:
        """Flag IP or user-agent drift. Advisory only: never blocks the caller."""
        session = self.store.get_session(session_id)
        if not session:
            return False
        reasons: List[str] = []
        details: Dict[str, Any] = {}
        if client.ip_address and session.ip_address not in ("unknown", client.ip_address):
            reasons.append("IP_ADDRESS_CHANGE")
            details["old_ip"] = session.ip_address
            details["new_ip"] = client.ip_address
        if client.user_agent and session.user_agent not in ("Unknown", client.user_agent):
            reasons.append("USER_AGENT_CHANGE")
        if not reasons:
            return False
        details["reasons"] = reasons
        self._record(session_id, SESSION_ACTION_SUSPICIOUS, client, details)
        logger.warning(
            "session_suspicious_activity",
            session_id=session_id,
            user_id=session.user_id,
            reasons=reasons,
        )
        return True

    def get_session(self, session_id: str, user_id: Optional[str] = None) -> Optional[Session]:
        session = self.store.get_session(session_id)
        if session and user_id is not None and session.user_id != user_id:
            return None
        return session

    def get_session_by_token_id(self, token_id: str) -> Optional[Session]:
        return self.store.get_session_by_token_id(token_id)

    def is_session_valid(self, session_id: str) -> bool:
        session = self.store.get_session(session_id)
        return bool(session and session.is_usable)

    def list_sessions(self, user_id: str) -> List[Session]:
        """Active sessions, one per browser/os/ip, most recently used first."""
        now = datetime.utcnow()
        live = [
            s for s in self.store.list_user_sessions(user_id) if s.is_active and not s.is_expired(now)
        ]
        live.sort(key=lambda s: s.last_used, reverse=True)
        seen: set[str] = set()
        unique: List[Session] = []
        for sess in live:
            key = f"{sess.device_info.browser}-{sess.device_info.os}-{sess.ip_address}"
            if key in seen:
                continue
            seen.add(key)
            unique.append(sess)
        return unique

    def session_stats(self, user_id: str, current_session_id: Optional[str] = None) -> Dict[str, Any]:
        every = self.store.list_user_sessions(user_id, active_only=False)
        now = datetime.utcnow()
        active = [s for s in every if s.is_active and not s.is_expired(now)]
        current = current_session_id
        if current is None:
            current = next((s.id for s in active if s.is_current), None)
        return {
            "total_sessions": len(every),
            "active_sessions": len(active),
            "current_session": current,
        }

    def session_activity(self, session_id: str, limit: int = 50) -> List[SessionActivity]:
        return self.store.list_session_activity(session_id, limit=limit)

    def extend_session(self, session_id: str, user_id: str, days: int = 7) -> Optional[Session]:
        session = self.get_session(session_id, user_id)
        if not session or not session.is_usable:
            return None
        new_expiry = datetime.utcnow() + timedelta(days=days)
        if not self.store.set_session_expiry(session_id, new_expiry):
            return None
        session.expires_at = new_expiry
        return session

    def mark_mfa_verified(self, session_id: str) -> bool:
        return self.store.mark_session_mfa_verified(session_id)

    def revoke_session(
        self, session_id: str, user_id: str, client: Optional[ClientInfo] = None
    ) -> bool:
        if not self.store.deactivate_session(session_id, user_id=user_id):
            return False
        self._record(session_id, SESSION_ACTION_LOGOUT, client or ClientInfo())
        logger.info("session_revoked", session_id=session_id, user_id=user_id)
        return True

    def revoke_all_other_sessions(
        self, user_id: str, keep_session_id: str, client: Optional[ClientInfo] = None
    ) -> int:
        revoked = self.store.deactivate_user_sessions(user_id, exclude_session_id=keep_session_id)
        for sid in revoked:
            self._record(sid, SESSION_ACTION_LOGOUT, client or ClientInfo(), {"reason": "revoke_others"})
        logger.info("sessions_revoked_others", user_id=user_id, count=len(revoked))
        return len(revoked)

    def revoke_all_sessions(self, user_id: str, client: Optional[ClientInfo] = None) -> int:
        revoked = self.store.deactivate_user_sessions(user_id)
        for sid in revoked:
            self._record(sid, SESSION_ACTION_LOGOUT, client or ClientInfo(), {"reason": "revoke_all"})
        logger.info("sessions_revoked_all", user_id=user_id, count=len(revoked))
        return len(revoked)

    def cleanup_expired(self) -> int:
        count = self.store.deactivate_expired_sessions(datetime.utcnow())
        if count:
            logger.info("sessions_expired_swept", count=count)
        return count

    def _record(
        self,
        session_id: str,
        action: str,
        client: ClientInfo,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        activity = SessionActivity(
            id=new_id(),
            session_id=session_id,
            action=action,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            details=details,
        )
        try:
            self.store.append_session_activity(activity)
        except Exception as exc:  # activity trail is best effort
            logger.warning(
                "session_activity_write_failed",
                session_id=session_id,
                action=action,
                error=str(exc),
            )
