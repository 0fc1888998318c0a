"""Tests for HS256 token minting and verification."""

import base64
import json
import time
from datetime import timedelta

import pytest

from gatekeep.service.errors import TokenExpired, TokenInvalid
from gatekeep.service.tokens import ACCESS, REFRESH, TokenIssuer


@pytest.fixture
def issuer():
    return TokenIssuer(
        "access-secret-for-unit-tests-0123456789",
        "refresh-secret-for-unit-tests-9876543210",
        issuer="gatekeep",
        audience="gatekeep-clients",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
    )


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestIssuePair:
    def test_pair_shares_token_id(self, issuer):
        pair = issuer.issue_pair("user-1", "a@example.com")

        access = issuer.verify(pair.access_token, ACCESS)
        refresh = issuer.verify(pair.refresh_token, REFRESH)

        assert access["jti"] == refresh["jti"] == pair.token_id
        assert access["sub"] == "user-1"
        assert access["email"] == "a@example.com"
        assert access["typ"] == ACCESS
        assert refresh["typ"] == REFRESH

    def test_explicit_token_id_is_used(self, issuer):
        pair = issuer.issue_pair("user-1", "a@example.com", token_id="fixed-jti")
        assert issuer.verify(pair.access_token, ACCESS)["jti"] == "fixed-jti"

    def test_expiries_follow_ttls(self, issuer):
        pair = issuer.issue_pair("user-1", "a@example.com")
        delta = pair.refresh_expires_at - pair.access_expires_at
        assert delta > timedelta(days=6)

    def test_each_pair_gets_fresh_token_id(self, issuer):
        first = issuer.issue_pair("user-1", "a@example.com")
        second = issuer.issue_pair("user-1", "a@example.com")
        assert first.token_id != second.token_id


class TestVerify:
    def test_access_token_is_not_a_refresh_token(self, issuer):
        pair = issuer.issue_pair("user-1", "a@example.com")
        with pytest.raises(TokenInvalid):
            issuer.verify(pair.access_token, REFRESH)
        with pytest.raises(TokenInvalid):
            issuer.verify(pair.refresh_token, ACCESS)

    def test_expired_token_raises_token_expired(self, issuer):
        pair = issuer.issue_pair("user-1", "a@example.com")
        later = time.time() + timedelta(minutes=16).total_seconds()
        with pytest.raises(TokenExpired):
            issuer.verify(pair.access_token, ACCESS, now=later)
        # refresh token is still inside its own ttl
        assert issuer.verify(pair.refresh_token, REFRESH, now=later)["sub"] == "user-1"

    def test_tampered_payload_is_rejected(self, issuer):
        pair = issuer.issue_pair("user-1", "a@example.com")
        header, payload, signature = pair.access_token.split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        claims["sub"] = "someone-else"
        forged = ".".join([header, _b64(claims), signature])
        with pytest.raises(TokenInvalid):
            issuer.verify(forged, ACCESS)

    def test_alg_none_is_rejected(self, issuer):
        pair = issuer.issue_pair("user-1", "a@example.com")
        _, payload, _ = pair.access_token.split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."
        with pytest.raises(TokenInvalid):
            issuer.verify(forged, ACCESS)

    def test_wrong_audience_is_rejected(self, issuer):
        other = TokenIssuer(
            "access-secret-for-unit-tests-0123456789",
            "refresh-secret-for-unit-tests-9876543210",
            issuer="gatekeep",
            audience="someone-else",
        )
        pair = other.issue_pair("user-1", "a@example.com")
        with pytest.raises(TokenInvalid):
            issuer.verify(pair.access_token, ACCESS)

    def test_wrong_issuer_is_rejected(self, issuer):
        other = TokenIssuer(
            "access-secret-for-unit-tests-0123456789",
            "refresh-secret-for-unit-tests-9876543210",
            issuer="impostor",
            audience="gatekeep-clients",
        )
        pair = other.issue_pair("user-1", "a@example.com")
        with pytest.raises(TokenInvalid):
            issuer.verify(pair.access_token, ACCESS)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.###.$$$"])
    def test_malformed_tokens(self, issuer, token):
        with pytest.raises(TokenInvalid):
            issuer.verify(token, ACCESS)

    def test_unknown_kind_is_a_programming_error(self, issuer):
        pair = issuer.issue_pair("user-1", "a@example.com")
        with pytest.raises(ValueError):
            issuer.verify(pair.access_token, "id")

    def test_expired_is_a_kind_of_invalid(self):
        # callers that only care about "usable or not" can catch TokenInvalid
        assert issubclass(TokenExpired, TokenInvalid)
