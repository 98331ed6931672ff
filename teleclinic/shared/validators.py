"""Shared validation utilities"""

import re
import uuid

EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_uuid(value: str) -> bool:
    """Validate UUID format"""
    try:
        uuid.UUID(value)
        return True
    except (ValueError, AttributeError, TypeError):
        return False


def normalize_email(email: str) -> str:
    """
    Trim and lower-case an email address.

    Raises:
        ValueError: If the address is not shaped like an email
    """
    normalized = (email or "").strip().lower()
    if not EMAIL_REGEX.match(normalized):
        raise ValueError("Invalid email address")
    return normalized
