"""
Tests for password hashing and credential rules.
"""

import pytest

from ossmanager.api.auth.passwords import (
    hash_password,
    password_strength_error,
    username_error,
    verify_password,
)


class TestHashing:
    """Tests for bcrypt hashing."""

    def test_verify_round_trip(self):
        hashed = hash_password("Correct-Horse-1")
        assert hashed != "Correct-Horse-1"
        assert verify_password("Correct-Horse-1", hashed)
        assert not verify_password("correct-horse-1", hashed)

    def test_hashes_are_salted(self):
        assert hash_password("Same-Password-1") != hash_password("Same-Password-1")

    def test_missing_hash_never_verifies(self):
        assert not verify_password("anything", None)

    def test_corrupt_hash_does_not_raise(self):
        assert not verify_password("anything", "not-a-bcrypt-hash")


class TestStrength:
    """Tests for the password strength policy."""

    @pytest.mark.parametrize(
        "password",
        [
            "Abcdefgh12",        # three classes, ten characters
            "abcdefgh1!",        # lower, digit, symbol
            "Abcdefg1!xyz",      # four classes, twelve characters
        ],
    )
    def test_accepted(self, password):
        assert password_strength_error(password) is None

    @pytest.mark.parametrize(
        "password",
        [
            "Ab1!",              # too short
            "abcdefghijkl",      # one class
            "abcdefghij12",      # two classes
            "Abcdefg1!",         # four classes but nine characters
        ],
    )
    def test_rejected(self, password):
        assert password_strength_error(password) is not None

    def test_longer_than_bcrypt_limit_rejected(self):
        assert password_strength_error("Aa1!" * 19) is not None


class TestUsername:
    """Tests for username syntax."""

    @pytest.mark.parametrize("username", ["bob", "ops_team-2", "A" * 100])
    def test_accepted(self, username):
        assert username_error(username) is None

    @pytest.mark.parametrize("username", ["ab", "has space", "dot.name", "A" * 101, ""])
    def test_rejected(self, username):
        assert username_error(username) is not None
