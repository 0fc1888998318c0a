"""Session registry lifecycle, device detection and activity trail."""

from datetime import datetime, timedelta

import pytest

from gatekeep.service import devices
from gatekeep.service.devices import ClientInfo, DeviceDetector
from gatekeep.service.sessions import SessionRegistry
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.models import DeviceInfo

CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
EDGE_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.2210.91"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)
FIREFOX_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) FxiOS/120.0 Mobile/15E148 Safari/605.1.15"
)
SAFARI_IPAD = (
    "Mozilla/5.0 (iPad; CPU OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)

D1 = ClientInfo(ip_address="10.0.0.1", user_agent=CHROME_MAC)
D2 = ClientInfo(ip_address="10.0.0.2", user_agent=SAFARI_IPHONE)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def registry(store):
    return SessionRegistry(store, ttl_days=7)


@pytest.fixture
def user(store):
    return store.create_user("device@example.com", "digest")


class TestDeviceDetector:
    @pytest.mark.parametrize(
        "ua, browser, os_name, device",
        [
            (CHROME_MAC, "Chrome", "macOS", "Desktop"),
            (EDGE_WINDOWS, "Edge", "Windows 10", "Desktop"),
            (SAFARI_IPHONE, "Safari", "iOS", "Mobile"),
            (
                "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
                "Firefox",
                "Linux",
                "Desktop",
            ),
        ],
    )
    def test_parse(self, ua, browser, os_name, device):
        info = DeviceDetector().parse(ua)
        assert (info.browser, info.os, info.device) == (browser, os_name, device)

    def test_browser_version_comes_from_the_browser_token(self):
        assert DeviceDetector().parse(CHROME_MAC).version.startswith("120.")
        assert DeviceDetector().parse(SAFARI_IPHONE).version.startswith("17.1")

    def test_firefox_on_ios_is_firefox(self):
        info = DeviceDetector().parse(FIREFOX_IPHONE)
        assert (info.browser, info.os, info.device) == ("Firefox", "iOS", "Mobile")

    def test_ipad_is_a_tablet(self):
        info = DeviceDetector().parse(SAFARI_IPAD)
        assert (info.os, info.device) == ("iOS", "Tablet")

    def test_unrecognised_agent(self):
        info = DeviceDetector().parse("not a browser")
        assert info.browser == "Unknown"

    def test_parser_failure_falls_back_to_unknown(self, monkeypatch):
        def explode(ua):
            raise ValueError("bad agent")

        monkeypatch.setattr(devices, "parse_user_agent", explode)
        assert DeviceDetector().parse(CHROME_MAC) == DeviceInfo()

    def test_missing_user_agent(self):
        info = DeviceDetector().parse(None)
        assert DeviceDetector.describe(info) == "Unknown Device"

    def test_describe(self):
        assert DeviceDetector.describe(DeviceDetector().parse(SAFARI_IPHONE)) == "Safari on iOS (Mobile)"
        assert DeviceDetector.describe(DeviceDetector().parse(CHROME_MAC)) == "Chrome on macOS"


class TestSessionLifecycle:
    def test_second_login_takes_over_current_flag(self, registry, user):
        s1 = registry.create_session(user.id, "jti-1", D1)
        s2 = registry.create_session(user.id, "jti-2", D2)

        s1_now = registry.get_session(s1.id)
        s2_now = registry.get_session(s2.id)
        assert s1_now.is_current is False
        assert s2_now.is_current is True
        assert s1_now.is_active and s2_now.is_active

    def test_revoke_others_keeps_only_caller(self, registry, user):
        s1 = registry.create_session(user.id, "jti-1", D1)
        s2 = registry.create_session(user.id, "jti-2", D2)

        revoked = registry.revoke_all_other_sessions(user.id, s2.id, D2)

        assert revoked == 1
        assert [s.id for s in registry.list_sessions(user.id)] == [s2.id]
        assert registry.get_session(s1.id).is_active is False

    def test_revoke_session_is_single_shot(self, registry, user):
        session = registry.create_session(user.id, "jti-1", D1)
        assert registry.revoke_session(session.id, user.id, D1) is True
        assert registry.revoke_session(session.id, user.id, D1) is False

    def test_cannot_revoke_someone_elses_session(self, registry, store, user):
        other = store.create_user("other@example.com", "digest")
        session = registry.create_session(user.id, "jti-1", D1)
        assert registry.revoke_session(session.id, other.id) is False
        assert registry.get_session(session.id).is_active

    def test_revoke_all(self, registry, user):
        registry.create_session(user.id, "jti-1", D1)
        registry.create_session(user.id, "jti-2", D2)
        assert registry.revoke_all_sessions(user.id) == 2
        assert registry.list_sessions(user.id) == []

    def test_validate_returns_live_session(self, registry, user):
        session = registry.create_session(user.id, "jti-1", D1)
        found = registry.validate_session("jti-1", D1)
        assert found.id == session.id
        assert registry.validate_session("unknown-jti") is None

    def test_validate_deactivates_expired_session(self, registry, store, user):
        session = registry.create_session(user.id, "jti-1", D1)
        store.sessions[session.id].expires_at = datetime.utcnow() - timedelta(seconds=1)

        assert registry.validate_session("jti-1", D1) is None
        assert store.get_session(session.id).is_active is False

    def test_validate_ignores_revoked_session(self, registry, user):
        session = registry.create_session(user.id, "jti-1", D1)
        registry.revoke_session(session.id, user.id)
        assert registry.validate_session("jti-1") is None

    def test_extend_pushes_expiry(self, registry, user):
        session = registry.create_session(user.id, "jti-1", D1)
        extended = registry.extend_session(session.id, user.id, days=30)
        assert extended.expires_at > session.expires_at + timedelta(days=20)

    def test_extend_requires_owner_and_live_session(self, registry, store, user):
        other = store.create_user("other@example.com", "digest")
        session = registry.create_session(user.id, "jti-1", D1)
        assert registry.extend_session(session.id, other.id) is None
        registry.revoke_session(session.id, user.id)
        assert registry.extend_session(session.id, user.id) is None

    def test_list_collapses_same_device(self, registry, user):
        registry.create_session(user.id, "jti-1", D1)
        registry.create_session(user.id, "jti-2", D1)
        phone = registry.create_session(user.id, "jti-3", D2)

        listed = registry.list_sessions(user.id)

        assert len(listed) == 2
        assert phone.id in {s.id for s in listed}

    def test_stats(self, registry, user):
        s1 = registry.create_session(user.id, "jti-1", D1)
        s2 = registry.create_session(user.id, "jti-2", D2)
        registry.revoke_session(s1.id, user.id)

        stats = registry.session_stats(user.id)

        assert stats == {"total_sessions": 2, "active_sessions": 1, "current_session": s2.id}

    def test_cleanup_expired(self, registry, store, user):
        session = registry.create_session(user.id, "jti-1", D1)
        store.sessions[session.id].expires_at = datetime.utcnow() - timedelta(minutes=1)
        assert registry.cleanup_expired() == 1
        assert store.get_session(session.id).is_active is False


class TestActivityTrail:
    def test_login_refresh_logout_are_recorded(self, registry, user):
        session = registry.create_session(user.id, "jti-1", D1)
        registry.validate_session("jti-1", D1)
        registry.revoke_session(session.id, user.id, D1)

        actions = [a.action for a in registry.session_activity(session.id)]
        assert sorted(actions) == ["LOGIN", "LOGOUT", "REFRESH"]

    def test_ip_change_is_flagged_without_blocking(self, registry, user):
        session = registry.create_session(user.id, "jti-1", D1)
        moved = ClientInfo(ip_address="203.0.113.9", user_agent=CHROME_MAC)

        assert registry.detect_suspicious_activity(session.id, moved) is True
        flagged = [
            a for a in registry.session_activity(session.id) if a.action == "SUSPICIOUS_ACTIVITY"
        ]
        assert flagged[0].details["reasons"] == ["IP_ADDRESS_CHANGE"]
        assert registry.is_session_valid(session.id)

    def test_same_client_is_not_flagged(self, registry, user):
        session = registry.create_session(user.id, "jti-1", D1)
        assert registry.detect_suspicious_activity(session.id, D1) is False
