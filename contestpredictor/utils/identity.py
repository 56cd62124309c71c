"""
Identity Helpers.

Pure functions shared by the coordinator and the OTP store for turning
an email address into the keys the two credential stores use.
"""

from __future__ import annotations

import re

__all__ = [
    "normalize_email",
    "sanitize_email_key",
    "username_from_email",
]

_KEY_UNSAFE_RE: re.Pattern[str] = re.compile(r"[^A-Za-z0-9_]")


def normalize_email(email: str) -> str:
    """Normalise an email address: strip whitespace and lowercase."""
    return email.strip().lower()


def username_from_email(identifier: str) -> str:
    """Return the part of *identifier* before ``@``.

    Identifiers without ``@`` are returned stripped but otherwise
    unchanged, so the function is safe to call on a plain username.

    >>> username_from_email("alice@example.com")
    'alice'
    >>> username_from_email("alice")
    'alice'
    """
    identifier = identifier.strip()
    if "@" not in identifier:
        return identifier
    return identifier.split("@", 1)[0]


def sanitize_email_key(email: str) -> str:
    """Turn *email* into a key usable as a document path segment.

    ``@`` becomes ``_at_`` and ``.`` becomes ``_dot_``; any other
    character outside ``[A-Za-z0-9_]`` becomes ``_``.

    >>> sanitize_email_key("a.b@c.com")
    'a_dot_b_at_c_dot_com'
    """
    key = email.strip().replace("@", "_at_").replace(".", "_dot_")
    return _KEY_UNSAFE_RE.sub("_", key)
