"""
Mindprint digests.

All digests are SHA-256 with lowercase hexadecimal output (no prefix).
"""

import hashlib
from typing import Any, List, Optional, Union

from .canonicalization import canonicalize


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def artifact_digest(text: str) -> str:
    """
    Digest of the certified excerpt.

    artifactSha256 = SHA-256(UTF-8(text))
    """
    return sha256_hex(text)


def telemetry_digest(replay: List[Any]) -> str:
    """
    Digest of the replay operations bound into a proof.

    telemetryDigestSha256 = SHA-256(canonical(replay))
    """
    return sha256_hex(canonicalize(replay))


def log_entry_hash(certificate_id: str, prev_hash: Optional[str], signature: str) -> str:
    """
    Hash of a transparency log entry.

    Links the entry to its predecessor and to the proof signature:
    entryHash = SHA-256(canonical({certificateId, prevHash, signature}))
    """
    return sha256_hex(canonicalize({
        "certificateId": certificate_id,
        "prevHash": prev_hash,
        "signature": signature,
    }))
