"""
Error taxonomy for Mindprint.

- ValidationError: malformed or out-of-range input, safe to retry once corrected
- IntegrityError: authentication or integrity failure (token, nonce, expiry)
- StoreUnavailableError: durable store missing or unreachable
- ConfigurationError: unusable deployment configuration
- AdvisoryError: failure of the advisory analysis call
"""

from typing import Optional


class MindprintError(Exception):
    """Base class for all Mindprint errors."""


class ValidationError(MindprintError):
    """Raised when input validation fails."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class SequenceError(ValidationError):
    """Raised when a batch sequence is not greater than the last accepted one."""
    def __init__(self, batch_sequence: int, last_sequence: int):
        self.batch_sequence = batch_sequence
        self.last_sequence = last_sequence
        super().__init__(
            "batchSequence",
            "Out-of-order or replayed telemetry batch rejected.",
        )


class IntegrityError(MindprintError):
    """Raised when a credential or integrity check fails."""

    MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    NONCE_MISMATCH = "NONCE_MISMATCH"
    SESSION_EXPIRED = "SESSION_EXPIRED"

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class StoreUnavailableError(MindprintError):
    """Raised when the durable store is not configured or cannot be reached."""


class ConfigurationError(MindprintError):
    """Raised when settings are unusable for the current environment."""


class AdvisoryError(MindprintError):
    """Raised when the advisory analysis provider fails."""
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)
