"""Shared Pydantic validators.

Keep these small and dependency-free so schema modules can reuse them without
introducing import cycles.
"""

import re
import unicodedata

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def strip_invisible_edges(value: str) -> str:
    """
    Strip leading/trailing whitespace and Unicode format characters (Cf).

    "\\u200badmin@example.com" must not register as a second account next to
    "admin@example.com".
    """
    if not isinstance(value, str):
        return value
    start = 0
    end = len(value)
    while start < end and (
        value[start].isspace() or unicodedata.category(value[start]) == "Cf"
    ):
        start += 1
    while end > start and (
        value[end - 1].isspace() or unicodedata.category(value[end - 1]) == "Cf"
    ):
        end -= 1
    return value[start:end]


def ensure_utf8_encodable(value: str) -> str:
    """Reject unpaired surrogates (they crash hashing and JSON encoding later)."""
    if not isinstance(value, str):
        return value
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise ValueError("Text contains invalid Unicode characters")
    return value


def normalize_email(value: str) -> str:
    """Lower-cased, trimmed address; lockout and uniqueness both key on this form."""
    if not isinstance(value, str):
        return value
    normalized = strip_invisible_edges(ensure_utf8_encodable(value)).lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError("Invalid email address")
    return normalized


def normalize_code(value: str) -> str:
    """Trim an MFA code as typed (spaces inside TOTP codes are common)."""
    if not isinstance(value, str):
        return value
    return re.sub(r"\s+", "", value)
