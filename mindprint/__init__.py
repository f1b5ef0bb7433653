"""
Mindprint

Tamper-evident proof-of-human-authorship certificates for text.

Writing sessions are captured as behavioral telemetry (keystroke timing,
pastes, edit operations), ingested under signed, replay-resistant session
tokens, classified into a risk/confidence verdict, and bound into a signed
certificate whose proof is appended to a hash-chained transparency log.
Anyone holding a certificate id can later re-verify it.

Mindprint makes no claim about *who* wrote a text, only *how* it was
produced.

Usage:
    from mindprint import (
        Settings,
        Store,
        init_telemetry_session,
        ingest_telemetry,
        finish_session,
        verify_certificate,
    )

    settings = Settings.from_env()
    store = Store(settings.database_path)

    grant = init_telemetry_session(store, settings)
    ingest_telemetry(
        store, settings, events,
        session_id=grant.session_id,
        session_token=grant.session_token,
        batch_sequence=1,
    )

    certificate = finish_session(store, settings, grant.session_id, text)
    result = verify_certificate(store, settings, certificate.id)
    assert result.is_valid
"""

__version__ = "1.0.0"

# Canonicalization, hashing and signing
from .canonicalization import canonicalize, canonicalize_str
from .hashing import sha256_hex, artifact_digest, telemetry_digest, log_entry_hash
from .signing import SigningService, sign_payload, verify_payload_signature

# Configuration and errors
from .config import Settings
from .errors import (
    MindprintError,
    ValidationError,
    SequenceError,
    IntegrityError,
    StoreUnavailableError,
    ConfigurationError,
    AdvisoryError,
)

# Telemetry
from .events import KeystrokeEvent, PasteEvent, OperationEvent, parse_event, validate_batch
from .classifier import ValidationStatus, ValidationResult, validate_session
from .recorder import TelemetryRecorder, RingBuffer
from .retry import RetryPolicy

# Storage and protocol
from .db import Store, open_store
from .session import init_telemetry_session, ingest_telemetry, SessionGrant

# Certificates
from .certificate import (
    CertificateInput,
    CertificatePayload,
    CertificateProof,
    create_certificate_record,
    finish_session,
    get_certificate_record,
)
from .verifier import (
    VerificationResult,
    verify_certificate_payload,
    verify_certificate,
    audit_log_chain,
    verify_exported_chain,
)


__all__ = [
    "__version__",
    "canonicalize",
    "canonicalize_str",
    "sha256_hex",
    "artifact_digest",
    "telemetry_digest",
    "log_entry_hash",
    "SigningService",
    "sign_payload",
    "verify_payload_signature",
    "Settings",
    "MindprintError",
    "ValidationError",
    "SequenceError",
    "IntegrityError",
    "StoreUnavailableError",
    "ConfigurationError",
    "AdvisoryError",
    "KeystrokeEvent",
    "PasteEvent",
    "OperationEvent",
    "parse_event",
    "validate_batch",
    "ValidationStatus",
    "ValidationResult",
    "validate_session",
    "TelemetryRecorder",
    "RingBuffer",
    "RetryPolicy",
    "Store",
    "open_store",
    "init_telemetry_session",
    "ingest_telemetry",
    "SessionGrant",
    "CertificateInput",
    "CertificatePayload",
    "CertificateProof",
    "create_certificate_record",
    "finish_session",
    "get_certificate_record",
    "VerificationResult",
    "verify_certificate_payload",
    "verify_certificate",
    "audit_log_chain",
    "verify_exported_chain",
]
