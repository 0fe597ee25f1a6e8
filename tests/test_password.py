"""
Tests for password policy validation, generation and hashing.
"""

import string

import pytest

from services.password import (
    DEFAULT_PASSWORD_POLICY,
    GENERATOR_SPECIAL_CHARS,
    PasswordPolicy,
    burn_password_check,
    generate_secure_password,
    get_password_strength_label,
    hash_password,
    validate_password,
    verify_password,
)


class TestValidatePassword:
    """Policy rules and the 0-5 strength score."""

    def test_strong_password_is_valid(self):
        result = validate_password("Blue-Harbor-Kite-42")
        assert result.is_valid
        assert result.errors == []
        assert result.score == 5

    def test_short_password_fails_length(self):
        result = validate_password("Ab1!xyz")
        assert not result.is_valid
        assert any("at least 12 characters" in e for e in result.errors)

    def test_each_missing_class_is_reported(self):
        result = validate_password("abcdefghijkl")
        assert not result.is_valid
        assert "Password must contain at least one uppercase letter" in result.errors
        assert "Password must contain at least one number" in result.errors
        assert "Password must contain at least one special character" in result.errors
        assert "Password must contain at least one lowercase letter" not in result.errors

    def test_common_password_is_rejected_regardless_of_case(self):
        result = validate_password("PASSWORD123")
        assert not result.is_valid
        assert "This password is too common. Choose a more secure one" in result.errors

    def test_repeated_characters_rejected(self):
        result = validate_password("Goood-Password-42")
        assert not result.is_valid
        assert "Password must not contain 3 or more repeated characters in a row" in result.errors

    def test_two_repeats_are_allowed(self):
        assert validate_password("Good-Harbor-Kite-42").is_valid

    def test_score_is_clamped(self):
        assert validate_password("").score == 0
        assert 0 <= validate_password("aaa").score <= 5

    def test_empty_password_never_raises(self):
        result = validate_password("")
        assert not result.is_valid
        assert len(result.errors) == 5

    def test_custom_policy_relaxes_rules(self):
        policy = PasswordPolicy(min_length=4, require_special_chars=False, require_uppercase=False)
        assert validate_password("abc1", policy).is_valid
        assert not validate_password("abc1", DEFAULT_PASSWORD_POLICY).is_valid


class TestGenerateSecurePassword:
    def test_contains_every_class(self):
        for _ in range(50):
            password = generate_secure_password()
            assert len(password) == 16
            assert any(c in string.ascii_uppercase for c in password)
            assert any(c in string.ascii_lowercase for c in password)
            assert any(c in string.digits for c in password)
            assert any(c in GENERATOR_SPECIAL_CHARS for c in password)

    def test_custom_length(self):
        assert len(generate_secure_password(32)) == 32

    def test_too_short_raises(self):
        with pytest.raises(ValueError):
            generate_secure_password(3)

    def test_passwords_differ(self):
        assert len({generate_secure_password() for _ in range(20)}) == 20


class TestStrengthLabel:
    def test_labels(self):
        assert get_password_strength_label(5) != get_password_strength_label(0)
        assert get_password_strength_label(99) == "Unknown"


class TestHashing:
    def test_hash_and_verify(self):
        hashed = hash_password("Blue-Harbor-Kite-42")
        assert hashed.startswith("$2")
        assert verify_password("Blue-Harbor-Kite-42", hashed)
        assert not verify_password("Blue-Harbor-Kite-43", hashed)

    def test_long_passwords_stay_significant(self):
        base = "x" * 100
        hashed = hash_password(base + "A")
        assert not verify_password(base + "B", hashed)

    def test_malformed_hash_returns_false(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_burn_check_does_not_raise(self):
        burn_password_check("whatever")
