"""
Mindprint Certificate Verifier

Verification re-derives everything it can from the certificate itself and
checks the rest against the transparency log:

1. The proof exists
2. Digests recomputed from the payload's text and replay match the proof
3. The signature verifies over the recomputed unsigned proof
4. The log entry for the certificate exists
5. The entry hash recomputed from {certificateId, prevLogEntryHash,
   signature} equals both the stored row and the proof's logEntryHash
6. The stored row's predecessor equals the proof's prevLogEntryHash

Checks 4-6 are what catch a payload whose text, replay and proof were
rewritten consistently; they cannot be skipped.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .certificate import CertificatePayload, build_unsigned_proof, parse_proof
from .config import Settings
from .db import Store, require_store
from .hashing import log_entry_hash
from .logging_config import audit_log
from .security import sanitize_certificate_id
from .signing import SigningService
from .util import iso_from_ms

logger = logging.getLogger(__name__)

REASON_MISSING_PROOF = "Missing proof bundle."
REASON_DIGEST_MISMATCH = "Artifact or telemetry digest mismatch."
REASON_BAD_SIGNATURE = "Invalid proof signature."
REASON_LOG_ENTRY_MISSING = "Certificate log entry not found."
REASON_LOG_HASH_MISMATCH = "Transparency log hash mismatch."
REASON_PREDECESSOR_MISMATCH = "Transparency chain predecessor mismatch."
REASON_NOT_FOUND = "Certificate not found."


@dataclass(frozen=True)
class VerificationResult:
    is_valid: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"isValid": self.is_valid}
        if self.reason:
            result["reason"] = self.reason
        return result


@dataclass
class ChainAuditReport:
    """Outcome of walking a transparency log."""
    entries: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "entries": self.entries,
            "errors": list(self.errors),
        }


def _as_payload(payload: Any) -> CertificatePayload:
    if isinstance(payload, CertificatePayload):
        return payload
    if isinstance(payload, Mapping):
        return CertificatePayload.from_dict(payload)
    raise TypeError("payload must be a CertificatePayload or a mapping")


def verify_certificate_payload(
    store: Optional[Store],
    settings: Settings,
    payload: Any
) -> VerificationResult:
    """
    Verify a certificate payload against its proof and the transparency log.

    Returns:
        VerificationResult; is_valid is True only when every check passes

    Raises:
        StoreUnavailableError: If the log cannot be consulted
    """
    payload = _as_payload(payload)
    result = _verify(store, settings, payload)
    audit_log.certificate_verified(payload.id, result.is_valid, result.reason)
    return result


def _verify(store: Optional[Store], settings: Settings, payload: CertificatePayload) -> VerificationResult:
    proof = payload.proof
    if proof is None:
        return VerificationResult(False, REASON_MISSING_PROOF)

    unsigned = build_unsigned_proof(
        payload.id,
        payload.text,
        payload.replay,
        payload.issued_at,
        proof.validation_status,
        proof.risk_score,
        proof.confidence,
    )
    if (
        unsigned["artifactSha256"] != proof.artifact_sha256
        or unsigned["telemetryDigestSha256"] != proof.telemetry_digest_sha256
    ):
        return VerificationResult(False, REASON_DIGEST_MISMATCH)

    # The signature covers the rounded scores; the proof must state exactly those.
    if unsigned["riskScore"] != proof.risk_score or unsigned["confidence"] != proof.confidence:
        return VerificationResult(False, REASON_BAD_SIGNATURE)

    if not SigningService(settings.certificate_secret).verify(unsigned, proof.signature):
        return VerificationResult(False, REASON_BAD_SIGNATURE)

    entry = require_store(store).get_log_entry(payload.id)
    if entry is None:
        return VerificationResult(False, REASON_LOG_ENTRY_MISSING)

    expected = log_entry_hash(payload.id, proof.prev_log_entry_hash, proof.signature)
    if entry["entry_hash"] != expected or proof.log_entry_hash != expected:
        return VerificationResult(False, REASON_LOG_HASH_MISMATCH)

    if entry["prev_hash"] != proof.prev_log_entry_hash:
        return VerificationResult(False, REASON_PREDECESSOR_MISMATCH)

    return VerificationResult(True)


def verify_certificate(store: Optional[Store], settings: Settings, certificate_id: Any) -> VerificationResult:
    """Look a certificate up by id and verify it."""
    store = require_store(store)
    normalized = sanitize_certificate_id(certificate_id)
    stored = store.get_certificate(normalized) if normalized else None
    if stored is None:
        return VerificationResult(False, REASON_NOT_FOUND)
    return verify_certificate_payload(store, settings, CertificatePayload.from_dict(stored))


# ============================================================
# Transparency log audit
# ============================================================

def export_certificate_log(store: Optional[Store]) -> List[Dict[str, Any]]:
    """The transparency log in append order, in its public form."""
    rows = require_store(store).export_log()
    return [
        {
            "seq": row["seq"],
            "certificateId": row["certificate_id"],
            "prevHash": row["prev_hash"],
            "entryHash": row["entry_hash"],
            "createdAt": iso_from_ms(row["created_at"]),
        }
        for row in rows
    ]


def audit_log_chain(store: Optional[Store]) -> ChainAuditReport:
    """
    Walk the whole transparency log.

    Every entry must link to its predecessor, and its hash must recompute
    from the signature in the linked certificate's proof.
    """
    store = require_store(store)
    report = ChainAuditReport()
    previous_hash: Optional[str] = None

    for row in store.export_log():
        report.entries += 1
        certificate_id = row["certificate_id"]

        if row["prev_hash"] != previous_hash:
            report.errors.append(f"{certificate_id}: predecessor does not match the previous entry")

        stored = store.get_certificate(certificate_id)
        proof = parse_proof(stored.get("proof")) if stored else None
        if proof is None:
            report.errors.append(f"{certificate_id}: certificate or proof missing")
        else:
            expected = log_entry_hash(certificate_id, row["prev_hash"], proof.signature)
            if row["entry_hash"] != expected:
                report.errors.append(f"{certificate_id}: entry hash does not match the proof signature")
            if proof.log_entry_hash != row["entry_hash"]:
                report.errors.append(f"{certificate_id}: proof log hash differs from the log")

        previous_hash = row["entry_hash"]

    if report.errors:
        logger.warning("Transparency log audit found %d problem(s)", len(report.errors))
    return report


def verify_exported_chain(entries: Sequence[Mapping[str, Any]]) -> ChainAuditReport:
    """
    Check linkage of an exported log offline.

    When an entry carries the proof "signature", its hash is recomputed too.
    """
    report = ChainAuditReport()
    previous_hash: Optional[str] = None

    for index, entry in enumerate(entries):
        report.entries += 1
        certificate_id = entry.get("certificateId")
        label = certificate_id if isinstance(certificate_id, str) else f"entry {index}"

        if entry.get("prevHash") != previous_hash:
            report.errors.append(f"{label}: predecessor does not match the previous entry")

        signature = entry.get("signature")
        if isinstance(signature, str) and isinstance(certificate_id, str):
            expected = log_entry_hash(certificate_id, entry.get("prevHash"), signature)
            if entry.get("entryHash") != expected:
                report.errors.append(f"{label}: entry hash does not match its signature")

        previous_hash = entry.get("entryHash")

    return report
