"""
Field-level validation shared by the input schemas.

Strings are sanitized (markup characters stripped, whitespace trimmed,
length capped) before pattern checks; empty results collapse to ``None``.
"""

from __future__ import annotations

import re
from typing import Optional

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^[\d\s()+-]+$")
SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

EMAIL_MAX_LENGTH = 255
PHONE_MAX_LENGTH = 20

_UNSAFE_CHARS = re.compile(r"[<>\"'`]")


def sanitize_string(value: Optional[str], max_length: int = 200) -> Optional[str]:
    """Strip markup characters and surrounding whitespace, then truncate.

    Returns ``None`` for missing or blank input.
    """
    if value is None:
        return None
    cleaned = _UNSAFE_CHARS.sub("", str(value)).strip()
    if not cleaned:
        return None
    return cleaned[:max_length]


def validate_email(value: Optional[str]) -> Optional[str]:
    """Return the normalized (lower-cased) email, or raise ``ValueError``."""
    if value is None:
        return None
    value = value.strip()
    if len(value) > EMAIL_MAX_LENGTH:
        raise ValueError("Email too long")
    if not EMAIL_PATTERN.match(value):
        raise ValueError(f"Invalid email format: '{value}'")
    return value.lower()


def validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if len(value) > PHONE_MAX_LENGTH:
        raise ValueError("Phone number too long")
    if not PHONE_PATTERN.match(value):
        raise ValueError(f"Invalid phone number format: '{value}'")
    return value


def validate_slug(value: str) -> str:
    if not SLUG_PATTERN.match(value):
        raise ValueError(
            f"Organization id '{value}' must be lowercase letters, digits and single hyphens."
        )
    return value
