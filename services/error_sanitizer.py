"""Scrubbing of exception text before it leaves the process.

Messages derived from ``str(exc)`` may carry SQL, connection strings,
secrets or file paths. They are stored in the audit log and occasionally
echoed to clients, so anything that looks internal is replaced wholesale.
"""

import re
from typing import Optional

_INTERNAL_DETAIL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"traceback", re.IGNORECASE),
    re.compile(r"\bfile\s+\".*?\.py\"", re.IGNORECASE),
    re.compile(r"sqlalchemy|sqlite3|aiosqlite|asyncpg|psycopg", re.IGNORECASE),
    re.compile(r"\b(operational|integrity|programming|staledata)error\b", re.IGNORECASE),
    re.compile(r"\[sql:|\bselect\b.+\bfrom\b|\binsert\s+into\b|\bupdate\b.+\bset\b", re.IGNORECASE),
    re.compile(r"\bredis(error)?\b|\bconnectionerror\b|\btimeouterror\b", re.IGNORECASE),
    re.compile(r"\b(postgres(ql)?|redis|sqlite)(\+\w+)?://", re.IGNORECASE),
    re.compile(r"\b(password|secret|token|otpauth)\s*[=:]", re.IGNORECASE),
    re.compile(r"/home/|/root/|/usr/|/var/|[a-z]:\\", re.IGNORECASE),
)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def sanitize_public_error_message(
    message: Optional[str],
    *,
    fallback: str = "Internal error",
    max_chars: int = 240,
) -> Optional[str]:
    """
    Return a version of ``message`` safe for logs shown to operators and
    for API responses, or ``fallback`` when it reveals internals.

    Empty input yields None.
    """
    if not message:
        return None

    safe = message.encode("utf-8", errors="replace").decode("utf-8")
    safe = _CONTROL_CHARS.sub(" ", safe)
    safe = re.sub(r"\s+", " ", safe).strip()
    if not safe:
        return None

    if any(p.search(safe) for p in _INTERNAL_DETAIL_PATTERNS):
        return fallback

    if len(safe) > max_chars:
        return safe[:max_chars] + "..."
    return safe
