"""Opaque pagination cursors: base64url-encoded JSON objects"""

import base64
import binascii
import json
from typing import Any


class InvalidCursorError(ValueError):
    pass


def encode_cursor(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(cursor: str) -> dict[str, Any]:
    padding = "=" * (-len(cursor) % 4)
    try:
        decoded = json.loads(base64.urlsafe_b64decode(cursor + padding))
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        raise InvalidCursorError("Invalid cursor") from e
    if not isinstance(decoded, dict):
        raise InvalidCursorError("Invalid cursor")
    return decoded
