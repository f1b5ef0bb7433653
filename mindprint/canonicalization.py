"""
Mindprint Canonical JSON

Every value that is hashed or signed (session tokens, proof bundles, replay
digests, transparency log entries) goes through this encoder so that the sign
path and the verify path see byte-identical input.
"""

import json
import math
from typing import Any, Dict, List, Union


def canonicalize(obj: Any) -> bytes:
    """
    Convert an object to canonical JSON bytes.

    Rules:
    - Object keys sorted by Unicode code point, recursively
    - No whitespace between tokens
    - UTF-8 encoding, no ASCII escaping
    - Integral floats encoded as integers (3.0 -> 3)
    - Arrays preserve order
    - NaN and Infinity are rejected

    Returns:
        UTF-8 encoded bytes of canonical JSON
    """
    canonical = _canonicalize_value(obj)
    return json.dumps(
        canonical, separators=(',', ':'), ensure_ascii=False, allow_nan=False
    ).encode('utf-8')


def canonicalize_str(obj: Any) -> str:
    """Return canonical JSON as string."""
    return canonicalize(obj).decode('utf-8')


def _canonicalize_value(value: Any) -> Any:
    """Recursively canonicalize a value."""
    if value is None:
        return None
    elif isinstance(value, bool):
        return value
    elif isinstance(value, int):
        return value
    elif isinstance(value, float):
        return _canonicalize_number(value)
    elif isinstance(value, str):
        return value
    elif isinstance(value, dict):
        return _canonicalize_object(value)
    elif isinstance(value, (list, tuple)):
        return _canonicalize_array(value)
    else:
        raise ValueError(f"Cannot canonicalize type: {type(value)}")


def _canonicalize_number(value: float) -> Union[int, float]:
    if not math.isfinite(value):
        raise ValueError("Cannot canonicalize non-finite number")
    if value.is_integer():
        return int(value)
    return value


def _canonicalize_object(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Canonicalize an object by sorting keys by code point."""
    for key in obj:
        if not isinstance(key, str):
            raise ValueError(f"Object keys must be strings, got {type(key)}")
    return {k: _canonicalize_value(obj[k]) for k in sorted(obj.keys())}


def _canonicalize_array(arr: Union[List, tuple]) -> List:
    """Canonicalize an array, preserving order."""
    return [_canonicalize_value(item) for item in arr]
