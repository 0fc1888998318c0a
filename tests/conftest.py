import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before anything imports gatekeep.config
_test_tmp_dir = tempfile.mkdtemp(prefix="gatekeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ["TEST_MODE"] = "true"
os.environ["USE_MEMORY_STORE"] = "true"
os.environ["ALLOW_REDIS_FALLBACK_DEV"] = "true"
os.environ["CLEANUP_ENABLED"] = "false"
# in-process rate limits and lockouts keep tests independent of a shared Redis
os.environ["REDIS_URL"] = ""
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret-for-automation-only-5555555555")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gatekeep.service.email import EmailService  # noqa: E402
from gatekeep.service.runtime import reset_runtime_for_tests  # noqa: E402

STRONG_PASSWORD = "Sturdy-Lantern-42-Quay!"
OTHER_PASSWORD = "Correct-Horse-Battery-9x!"


class CapturingEmail(EmailService):
    """Records outgoing mail instead of talking to SMTP."""

    def __init__(self, deliver: bool = True) -> None:
        super().__init__()
        self.deliver = deliver
        self.sent = []
        self.otp_codes = {}

    def _send_email(self, to_email, subject, html_body, text_body=None):
        self.sent.append({"to": to_email, "subject": subject, "text": text_body})
        return self.deliver

    def send_password_reset_otp(self, to_email, code, ttl_minutes=10):
        self.otp_codes[to_email] = code
        return super().send_password_reset_otp(to_email, code, ttl_minutes)


@pytest.fixture(autouse=True)
def runtime(tmp_path, monkeypatch):
    """Fresh runtime over an isolated memory store for every test."""
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "fs"))
    yield reset_runtime_for_tests()


@pytest.fixture
def outbox(runtime):
    email = CapturingEmail()
    runtime.email = email
    runtime.auth.email = email
    runtime.mfa.email = email
    return email


@pytest.fixture
def make_user(runtime):
    """Create a user directly in the store, optionally with role grants."""

    def _make(
        email="user@example.com",
        password=STRONG_PASSWORD,
        *,
        role="USER",
        permissions=(),
        name="Ada Lovelace",
        status="ACTIVE",
    ):
        role_record = runtime.roles.ensure_role(role)
        if permissions:
            existing = {f"{p.resource}:{p.action}": p for p in runtime.roles.list_permissions()}
            ids = [p.id for p in runtime.store.list_role_permissions(role_record.id)]
            for perm in permissions:
                record = existing.get(perm)
                if record is None:
                    resource, _, action = perm.partition(":")
                    record = runtime.roles.create_permission(
                        f"{resource}_{action}".replace("*", "all"), resource, action
                    )
                    existing[perm] = record
                ids.append(record.id)
            runtime.roles.assign_permissions(role_record.id, ids)
        return runtime.store.create_user(
            email,
            runtime.hasher.hash(password),
            name=name,
            role_id=role_record.id,
            status=status,
        )

    return _make


@pytest.fixture
def client(runtime):
    from fastapi.testclient import TestClient

    from gatekeep.app import create_app

    with TestClient(create_app()) as test_client:
        yield test_client


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
