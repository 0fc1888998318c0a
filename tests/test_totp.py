"""Tests for TOTP codes and the MFA enrollment service."""

from urllib.parse import parse_qs, urlparse

import pytest

from gatekeep.service.errors import ForbiddenError, ValidationError
from gatekeep.service.totp import TotpEngine

# RFC 6238 appendix B seed ("12345678901234567890") in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
PASSWORD = "Sturdy-Lantern-42-Quay!"


class TestTotpEngine:
    def test_rfc6238_vectors(self):
        engine = TotpEngine()
        # last six digits of the published SHA1 eight-digit codes
        assert engine.code_at(RFC_SECRET, 59) == "287082"
        assert engine.code_at(RFC_SECRET, 1111111109) == "081804"
        assert engine.code_at(RFC_SECRET, 1234567890) == "005924"

    def test_generated_secret_is_base32(self):
        secret = TotpEngine.generate_secret()
        assert len(secret) == 32
        assert set(secret) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

    def test_code_within_window_is_accepted(self):
        engine = TotpEngine()
        code = engine.code_at(RFC_SECRET, 1_000_000)
        assert engine.verify(RFC_SECRET, code, window=1, at=1_000_000 + 30)
        assert engine.verify(RFC_SECRET, code, window=1, at=1_000_000 - 30)

    def test_code_outside_window_is_rejected(self):
        engine = TotpEngine()
        code = engine.code_at(RFC_SECRET, 1_000_000)
        assert not engine.verify(RFC_SECRET, code, window=1, at=1_000_000 + 90)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
    def test_malformed_codes_are_rejected(self, code):
        assert not TotpEngine().verify(RFC_SECRET, code)

    def test_invalid_secret_yields_no_code(self):
        assert TotpEngine().code_at("not base32 !!", 59) == ""
        assert not TotpEngine().verify("not base32 !!", "123456")

    def test_provisioning_uri(self):
        uri = TotpEngine().provisioning_uri(RFC_SECRET, "Gatekeep (a@example.com)", "Gatekeep")
        parsed = urlparse(uri)
        params = parse_qs(parsed.query)
        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert params["secret"] == [RFC_SECRET]
        assert params["issuer"] == ["Gatekeep"]
        assert params["digits"] == ["6"]
        assert params["period"] == ["30"]


class TestMfaService:
    def test_generate_then_enable(self, runtime, make_user, outbox):
        user = make_user("mfa@example.com", PASSWORD)

        setup = runtime.mfa.generate_secret(user.id)
        assert setup["otpauth_url"].startswith("otpauth://totp/")
        assert setup["qr_code"].startswith("data:image/png;base64,")
        assert runtime.mfa.status(user.id) == {
            "mfa_enabled": False,
            "mfa_secret_generated": True,
        }

        result = runtime.mfa.enable(user.id, runtime.totp.now(setup["secret"]))

        assert result["mfa_enabled"] is True
        assert runtime.mfa.is_enabled(user.id)
        assert any(m["subject"] == "Two-factor authentication enabled" for m in outbox.sent)

    def test_secret_is_encrypted_at_rest(self, runtime, make_user):
        user = make_user("mfa@example.com", PASSWORD)
        setup = runtime.mfa.generate_secret(user.id)
        raw = runtime.store.mfa_configs[user.id]
        assert raw.secret != setup["secret"]
        assert runtime.store.get_mfa_config(user.id).secret == setup["secret"]

    def test_enable_without_secret(self, runtime, make_user):
        user = make_user("mfa@example.com", PASSWORD)
        with pytest.raises(ValidationError, match="generate a secret first"):
            runtime.mfa.enable(user.id, "123456")

    def test_enable_with_wrong_code(self, runtime, make_user):
        user = make_user("mfa@example.com", PASSWORD)
        setup = runtime.mfa.generate_secret(user.id)
        good = runtime.totp.now(setup["secret"])
        bad = f"{(int(good) + 500000) % 1000000:06d}"

        with pytest.raises(ValidationError, match="Invalid verification code"):
            runtime.mfa.enable(user.id, bad)
        assert not runtime.mfa.is_enabled(user.id)

    def test_disable_requires_password(self, runtime, make_user, outbox):
        user = make_user("mfa@example.com", PASSWORD)
        setup = runtime.mfa.generate_secret(user.id)
        runtime.mfa.enable(user.id, runtime.totp.now(setup["secret"]))

        with pytest.raises(ForbiddenError):
            runtime.mfa.disable(user.id, "Wrong-Password-123!")
        assert runtime.mfa.is_enabled(user.id)

        runtime.mfa.disable(user.id, PASSWORD)
        assert runtime.mfa.status(user.id) == {
            "mfa_enabled": False,
            "mfa_secret_generated": False,
        }

    def test_login_code_needs_enabled_config(self, runtime, make_user):
        user = make_user("mfa@example.com", PASSWORD)
        setup = runtime.mfa.generate_secret(user.id)
        code = runtime.totp.now(setup["secret"])
        # generated but not confirmed
        assert not runtime.mfa.verify_login_code(user.id, code)
        runtime.mfa.enable(user.id, code)
        assert runtime.mfa.verify_login_code(user.id, code)
