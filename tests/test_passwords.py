"""Unit tests for password hashing and the password policy."""

import pytest

from authkernel.service.errors import BadRequestError
from authkernel.service.passwords import (
    PASSWORD_ALGO,
    PasswordHasher,
    check_strength,
    generate_random_password,
    passwords_match,
)


@pytest.fixture
def hasher():
    return PasswordHasher(cost=1, memory_kib=1024)


class TestPasswordHasher:
    """Tests for argon2id hashing."""

    def test_hash_is_not_plaintext(self, hasher):
        """The stored hash never contains the plaintext."""
        hashed = hasher.hash("Abcdef1!")

        assert hashed != "Abcdef1!"
        assert "Abcdef1!" not in hashed
        assert hashed.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, hasher):
        """Hashes are salted."""
        assert hasher.hash("Abcdef1!") != hasher.hash("Abcdef1!")

    def test_verify_accepts_matching_password(self, hasher):
        hashed = hasher.hash("Abcdef1!")

        assert hasher.verify("Abcdef1!", hashed) is True

    def test_verify_rejects_wrong_password(self, hasher):
        hashed = hasher.hash("Abcdef1!")

        assert hasher.verify("abcdef1!", hashed) is False

    def test_verify_rejects_garbage_hash(self, hasher):
        """An unreadable stored hash is a mismatch, not an exception."""
        assert hasher.verify("Abcdef1!", "not-a-hash") is False
        assert hasher.verify("Abcdef1!", "") is False

    def test_needs_rehash_when_cost_grows(self, hasher):
        """Raising the work factor flags older hashes for rehash on login."""
        hashed = hasher.hash("Abcdef1!")
        stronger = PasswordHasher(cost=2, memory_kib=1024)

        assert hasher.needs_rehash(hashed) is False
        assert stronger.needs_rehash(hashed) is True

    def test_algo_label(self, hasher):
        assert hasher.algo == PASSWORD_ALGO == "argon2id"


class TestPasswordPolicy:
    """Tests for check_strength."""

    def test_strong_password_passes(self):
        result = check_strength("Abcdef1!")

        assert result.valid is True
        assert result.errors == []

    def test_weak_password_lists_every_failed_rule(self):
        """'abc' fails length, uppercase, digit and special character rules."""
        result = check_strength("abc")

        assert result.valid is False
        assert len(result.errors) == 4
        assert any("at least 8" in e for e in result.errors)
        assert any("uppercase" in e for e in result.errors)
        assert any("number" in e for e in result.errors)
        assert any("special" in e for e in result.errors)

    def test_missing_lowercase(self):
        result = check_strength("ABCDEF1!")

        assert result.errors == ["password must contain at least one lowercase letter"]

    def test_too_long_password_rejected(self):
        result = check_strength("Aa1!" * 40)

        assert result.valid is False
        assert any("at most 128" in e for e in result.errors)

    def test_empty_password(self):
        result = check_strength("")

        assert result.valid is False
        assert len(result.errors) == 5


class TestHelpers:
    def test_generated_password_satisfies_policy(self):
        """Generated passwords always pass the policy."""
        for _ in range(25):
            password = generate_random_password(12)
            assert len(password) == 12
            assert check_strength(password).valid

    def test_generated_password_minimum_length(self):
        assert len(generate_random_password(4)) == 8

    def test_passwords_match_accepts_equal(self):
        passwords_match("Abcdef1!", "Abcdef1!")

    def test_passwords_match_rejects_mismatch(self):
        with pytest.raises(BadRequestError) as exc_info:
            passwords_match("Abcdef1!", "Abcdef1?")

        assert exc_info.value.status_code == 400
        assert "do not match" in exc_info.value.message
