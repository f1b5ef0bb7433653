"""
Mindprint keyed signing.

HMAC-SHA256 over canonical JSON, encoded as unpadded base64url. Session
tokens and certificate proofs each use their own secret.
"""

import hashlib
import hmac
from typing import Any, Union

from .canonicalization import canonicalize
from .util import b64url_encode, constant_time_compare


def _secret_bytes(secret: Union[str, bytes]) -> bytes:
    if isinstance(secret, str):
        secret = secret.encode('utf-8')
    if not secret:
        raise ValueError("Signing secret must not be empty")
    return secret


class SigningService:
    """
    Signs and verifies payloads with one secret.

    The payload is canonicalized before signing, so logically equal
    payloads produce the same signature regardless of key order.
    """

    def __init__(self, secret: Union[str, bytes]):
        self._secret = _secret_bytes(secret)

    def sign(self, payload: Any) -> str:
        """
        Sign a payload.

        Args:
            payload: Any canonicalizable value

        Returns:
            base64url(HMAC-SHA256(secret, canonical(payload))) without padding
        """
        digest = hmac.new(self._secret, canonicalize(payload), hashlib.sha256).digest()
        return b64url_encode(digest)

    def verify(self, payload: Any, signature: Any) -> bool:
        """
        Verify a signature in constant time.

        Returns False for non-string signatures and for payloads that cannot
        be canonicalized.
        """
        if not isinstance(signature, str) or not signature:
            return False
        try:
            expected = self.sign(payload)
        except ValueError:
            return False
        return constant_time_compare(expected, signature)


# Convenience functions

def sign_payload(payload: Any, secret: Union[str, bytes]) -> str:
    """Sign payload with the given secret."""
    return SigningService(secret).sign(payload)


def verify_payload_signature(payload: Any, signature: Any, secret: Union[str, bytes]) -> bool:
    """Verify a payload signature produced by sign_payload."""
    return SigningService(secret).verify(payload, signature)
