"""
Utility functions for Mindprint.

Provides encoding, time, identifier and numeric helpers shared by the
session protocol, certificate issuance and the classifier.
"""

import base64
import hmac
import math
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Optional, Union


def now_ms() -> int:
    """Get current Unix time in milliseconds."""
    return int(time.time() * 1000)


def b64url_encode(b: Union[bytes, str]) -> str:
    """URL-safe base64 encode to string (no padding)."""
    if isinstance(b, str):
        b = b.encode('utf-8')
    return base64.urlsafe_b64encode(b).rstrip(b'=').decode('ascii')


def b64url_decode(s: str) -> bytes:
    """URL-safe base64 decode string to bytes (handles missing padding)."""
    padding = 4 - (len(s) % 4)
    if padding != 4:
        s += '=' * padding
    return base64.urlsafe_b64decode(s.encode('ascii'))


def utc_iso(dt: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with millisecond precision."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def iso_from_ms(ts_ms: int) -> str:
    """Convert a millisecond Unix timestamp to an ISO-8601 UTC string."""
    return utc_iso(datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc))


def parse_iso(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp.

    Returns None when the value is not a parseable string. Naive values are
    taken as UTC.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = value.strip()
    if candidate.endswith('Z') or candidate.endswith('z'):
        candidate = candidate[:-1] + '+00:00'
    try:
        dt = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two strings/bytes in constant time to prevent timing attacks.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


def generate_nonce(length: int = 12) -> str:
    """Generate a cryptographically secure random nonce (2 * length hex chars)."""
    return secrets.token_hex(length)


def generate_id(prefix: str, length: int = 16) -> str:
    """Generate a prefixed, cryptographically secure random ID."""
    return f"{prefix}{secrets.token_hex(length)}"


def is_finite_number(value: Any) -> bool:
    """True for int/float values that are finite. Booleans are not numbers here."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


def is_integer(value: Any) -> bool:
    """True for integral numbers (3 or 3.0), never for booleans."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value) and value.is_integer()


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    if value < 0:
        return -int(math.floor(-value + 0.5))
    return int(math.floor(value + 0.5))


