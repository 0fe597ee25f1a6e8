"""Password policy validation, generation and hashing."""

import base64
import hashlib
import logging
import re
import secrets
import string
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List

import bcrypt

from config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 12
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True
    prevent_common_passwords: bool = True


DEFAULT_PASSWORD_POLICY = PasswordPolicy()

COMMON_PASSWORDS = frozenset(
    {
        "password", "password123", "123456", "12345678", "qwerty", "abc123",
        "monkey", "1234567", "letmein", "trustno1", "dragon", "baseball",
        "iloveyou", "master", "sunshine", "ashley", "bailey", "passw0rd",
        "shadow", "123123", "654321", "superman", "qazwsx", "admin",
    }
)

_UPPERCASE_RE = re.compile(r"[A-Z]")
_LOWERCASE_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"\d")
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_REPEATED_RE = re.compile(r"(.)\1{2,}")

GENERATOR_SPECIAL_CHARS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

MAX_SCORE = 5
STRONG_LENGTH = 16

_STRENGTH_LABELS = {
    0: "Very weak",
    1: "Weak",
    2: "Fair",
    3: "Good",
    4: "Strong",
    5: "Very strong",
}


@dataclass
class PasswordValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    score: int = 0


def validate_password(
    password: str, policy: PasswordPolicy = DEFAULT_PASSWORD_POLICY
) -> PasswordValidationResult:
    """
    Check a password against the policy and compute a 0-5 strength score.

    Never raises; every failed rule is reported in ``errors``.
    """
    errors: List[str] = []
    score = 0

    if len(password) < policy.min_length:
        errors.append(f"Password must be at least {policy.min_length} characters long")
    else:
        score += 1

    class_rules = (
        (policy.require_uppercase, _UPPERCASE_RE, "Password must contain at least one uppercase letter"),
        (policy.require_lowercase, _LOWERCASE_RE, "Password must contain at least one lowercase letter"),
        (policy.require_numbers, _DIGIT_RE, "Password must contain at least one number"),
        (policy.require_special_chars, _SPECIAL_RE, "Password must contain at least one special character"),
    )
    for required, pattern, message in class_rules:
        if not required:
            continue
        if pattern.search(password):
            score += 1
        else:
            errors.append(message)

    if policy.prevent_common_passwords and password.lower() in COMMON_PASSWORDS:
        errors.append("This password is too common. Choose a more secure one")
        score = max(0, score - 2)

    if len(password) >= STRONG_LENGTH:
        score = min(MAX_SCORE, score + 1)

    if _REPEATED_RE.search(password):
        errors.append("Password must not contain 3 or more repeated characters in a row")
        score = max(0, score - 1)

    return PasswordValidationResult(
        is_valid=not errors,
        errors=errors,
        score=min(MAX_SCORE, max(0, score)),
    )


def generate_secure_password(length: int = 16) -> str:
    """Random password with at least one character from each of the four classes."""
    pools = (
        string.ascii_uppercase,
        string.ascii_lowercase,
        string.digits,
        GENERATOR_SPECIAL_CHARS,
    )
    if length < len(pools):
        raise ValueError(f"length must be at least {len(pools)}")

    all_chars = "".join(pools)
    chars = [secrets.choice(pool) for pool in pools]
    chars.extend(secrets.choice(all_chars) for _ in range(length - len(pools)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def get_password_strength_label(score: int) -> str:
    return _STRENGTH_LABELS.get(score, "Unknown")


def _prehash(password: str) -> bytes:
    # bcrypt only reads the first 72 bytes; digest first so long passphrases
    # stay fully significant.
    digest = hashlib.sha256(password.encode("utf-8")).digest()
    return base64.b64encode(digest)


def hash_password(password: str) -> str:
    """bcrypt hash (cost from PASSWORD_HASH_ROUNDS). CPU bound; call off the event loop."""
    rounds = get_settings().PASSWORD_HASH_ROUNDS
    return bcrypt.hashpw(_prehash(password), bcrypt.gensalt(rounds=rounds)).decode("ascii")


@lru_cache(maxsize=1)
def _dummy_hash() -> bytes:
    return hash_password(secrets.token_hex(16)).encode("ascii")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_prehash(password), hashed.encode("ascii"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


def burn_password_check(password: str) -> None:
    """
    Spend the same work as a real verification.

    Used when the identity does not exist so response timing does not reveal
    which emails are registered.
    """
    bcrypt.checkpw(_prehash(password), _dummy_hash())
