"""
Request hygiene for Mindprint: identifier checks, client identification for
rate limits, and masking of credentials before they reach a log.
"""

import re
from typing import Any, Dict, Iterable, Mapping, Optional

from .errors import ValidationError
from .util import is_integer

CERTIFICATE_ID_STRIP = re.compile(r"[^A-Za-z0-9_-]")
SESSION_ID_PATTERN = re.compile(r"^sess-[0-9a-f]{32}$")
MAX_ID_LENGTH = 64

MASKED_FIELDS = frozenset({
    "sessionToken", "session_token", "token", "secret", "signature",
    "nonce", "api_key", "password",
})


def validate_positive_int(value: Any, field_name: str, max_value: Optional[int] = None) -> int:
    """
    Return ``value`` as a positive int.

    JSON clients may send integral floats (3.0), so those pass; strings and
    booleans do not.

    Raises:
        ValidationError: naming ``field_name``
    """
    if not is_integer(value):
        raise ValidationError(field_name, "must be an integer")
    number = int(value)
    if number < 1:
        raise ValidationError(field_name, "must be positive")
    if max_value is not None and number > max_value:
        raise ValidationError(field_name, f"must not exceed {max_value}")
    return number


def sanitize_certificate_id(value: Any) -> Optional[str]:
    """Strip everything outside [A-Za-z0-9_-] and cap at 64 chars; None if empty."""
    if not isinstance(value, str):
        return None
    return CERTIFICATE_ID_STRIP.sub("", value)[:MAX_ID_LENGTH] or None


def is_session_id(value: Any) -> bool:
    return isinstance(value, str) and SESSION_ID_PATTERN.match(value) is not None


def extract_client_id(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """
    Rate limit key for a request: API key prefix, first forwarded address,
    peer address, in that order.
    """
    api_key = headers.get("x-api-key")
    if api_key:
        return "api:" + api_key[:8]
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return "ip:" + forwarded.split(",", 1)[0].strip()
    return f"ip:{peer}" if peer else "anonymous"


def _mask(value: Any) -> str:
    if isinstance(value, str) and len(value) > 8:
        return f"{value[:4]}...{value[-4:]}"
    return "[REDACTED]"


def sanitize_for_logging(data: Mapping[str, Any], masked: Iterable[str] = MASKED_FIELDS) -> Dict[str, Any]:
    """
    Copy ``data`` with credential fields masked, descending into nested
    mappings and lists of mappings.
    """
    masked = frozenset(masked)
    clean: Dict[str, Any] = {}
    for key, value in data.items():
        if key in masked:
            clean[key] = _mask(value)
        elif isinstance(value, Mapping):
            clean[key] = sanitize_for_logging(value, masked)
        elif isinstance(value, list):
            clean[key] = [
                sanitize_for_logging(item, masked) if isinstance(item, Mapping) else item
                for item in value
            ]
        else:
            clean[key] = value
    return clean
