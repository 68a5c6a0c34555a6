"""
Compact three-segment token parsing.
"""

import binascii
import json
from typing import Any, Dict, Tuple

from jwt.utils import base64url_decode


class TokenFormatError(ValueError):
    """Raised when a token does not have three non-empty segments."""


class TokenEncodingError(ValueError):
    """Raised when a segment is not valid base64url JSON."""


def strip_bearer(raw_token: str) -> str:
    token = raw_token.strip()
    if token[:7].lower() == "bearer ":
        token = token[7:].strip()
    return token


def split_token(raw_token: str) -> Tuple[str, str, str]:
    parts = strip_bearer(raw_token).split(".")
    if len(parts) != 3 or not all(parts):
        raise TokenFormatError(f"expected 3 non-empty segments, got {len(parts)}")
    return parts[0], parts[1], parts[2]


def decode_json_segment(segment: str) -> Dict[str, Any]:
    """Decode one base64url segment (padding optional) into a JSON object."""
    try:
        data = base64url_decode(segment)
    except (binascii.Error, TypeError, UnicodeEncodeError) as exc:
        raise TokenEncodingError(f"invalid base64url segment: {exc}") from exc
    try:
        value = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise TokenEncodingError(f"segment is not UTF-8 JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise TokenEncodingError("segment is not a JSON object")
    return value
