"""Password policy and argon2 credential hashing."""

import pytest

from gatekeep.service import passwords
from gatekeep.service.hashing import CredentialHasher


@pytest.fixture(scope="module")
def hasher():
    return CredentialHasher()


class TestCredentialHasher:
    def test_hash_round_trip(self, hasher):
        digest = hasher.hash("Sturdy-Lantern-42-Quay!")
        assert digest.startswith("$argon2id$")
        assert hasher.verify(digest, "Sturdy-Lantern-42-Quay!")
        assert not hasher.verify(digest, "sturdy-lantern-42-quay!")

    def test_hashes_are_salted(self, hasher):
        assert hasher.hash("same input") != hasher.hash("same input")

    @pytest.mark.parametrize("digest", [None, "", "not-an-argon2-hash", "$argon2id$broken"])
    def test_bad_digests_never_raise(self, hasher, digest):
        assert hasher.verify(digest, "anything") is False

    def test_missing_plaintext(self, hasher):
        assert hasher.verify(hasher.hash("x"), None) is False


class TestPasswordPolicy:
    def test_strong_password_passes(self):
        assert passwords.validate("Sturdy-Lantern-42-Quay!") == []
        assert passwords.is_valid("Correct-Horse-Battery-9x!")

    def test_empty_password(self):
        assert passwords.validate("") == ["Password is required"]

    @pytest.mark.parametrize(
        "candidate, fragment",
        [
            ("Sh0rt!pw", "at least 12 characters"),
            ("alllowercase-123!", "uppercase"),
            ("ALLUPPERCASE-123!", "lowercase"),
            ("No-Digits-Here-Ok!", "number"),
            ("NoSpecials12345abc", "special character"),
        ],
    )
    def test_each_rule_reports(self, candidate, fragment):
        errors = passwords.validate(candidate)
        assert any(fragment in e for e in errors)

    def test_too_long(self):
        errors = passwords.validate("Aa1!" * 40)
        assert any("must not exceed 128" in e for e in errors)

    def test_common_substring_rejected_when_short(self):
        errors = passwords.validate("MyPassword12!")
        assert any("common patterns" in e for e in errors)

    def test_common_substring_allowed_when_long(self):
        # long passphrases may contain a dictionary word
        assert passwords.validate("Correct-Password-Horse-7!") == []

    def test_reports_every_violation(self):
        assert len(passwords.validate("abc")) >= 4

    def test_strength_labels(self):
        weak = passwords.strength("abc")
        assert weak["meets_requirements"] is False

        strong = passwords.strength("Correct-Horse-Battery-Staple-9x!")
        assert strong["meets_requirements"] is True
        assert strong["label"] == "Strong"
