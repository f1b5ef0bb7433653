"""
Mindprint Certificate Issuance

A certificate binds a text excerpt to the telemetry that produced it:

    proof.artifactSha256         = SHA-256(text)
    proof.telemetryDigestSha256  = SHA-256(canonical(replay))
    proof.signature              = HMAC(certificate secret, unsigned proof)
    proof.logEntryHash           = SHA-256(canonical({certificateId, prevHash, signature}))

Issuance appends the log entry in the same write transaction that reads
the log tail, so the transparency log has a single global order.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .classifier import MAX_TYPING_INTERVAL_MS, ValidationStatus, status_from_value, validate_session
from .config import Settings
from .db import Store, require_store
from .errors import IntegrityError
from .events import KeystrokeEvent, OperationEvent, coerce_events
from .hashing import artifact_digest, log_entry_hash, telemetry_digest
from .logging_config import audit_log
from .security import is_session_id, sanitize_certificate_id
from .signing import SigningService
from .util import (
    clamp,
    generate_id,
    is_finite_number,
    is_integer,
    iso_from_ms,
    now_ms,
    parse_iso,
    round_half_up,
    utc_iso,
)

logger = logging.getLogger(__name__)

PROOF_VERSION = "v1"

CERTIFICATE_ID_PREFIX = "mp-"
CERTIFICATE_ID_BYTES = 6

DEFAULT_TITLE = "Mindprint Human Origin Certificate"
DEFAULT_SUBTITLE = "Proof of Human Creation"
DEFAULT_TEXT = "No transcript attached to this certificate."
DEFAULT_SPARKLINE = [2, 4, 3, 5, 7, 6, 8, 5, 4, 6, 3, 2]

MAX_TITLE_LENGTH = 120
MAX_TEXT_LENGTH = 420
MAX_SEED_LENGTH = 120
MAX_SPARKLINE_POINTS = 48
MAX_REPLAY_EVENTS = 4000
MAX_REPLAY_TEXT_LENGTH = 1000
MAX_SCORE = 99

SPARKLINE_BUCKET_MS = 1000
SPARKLINE_MAX_IDLE_BUCKETS = MAX_TYPING_INTERVAL_MS // SPARKLINE_BUCKET_MS

# Display score model
DISPLAY_DEFAULT_RISK_SCORE = 50
DISPLAY_DEFAULT_CONFIDENCE = 0.3
DISPLAY_UNCERTAINTY_PENALTY = 20
DISPLAY_MIN = 1
DISPLAY_MAX = 99
VERIFIED_HUMAN_MIN_SCORE = 68
SUSPICIOUS_MAX_SCORE = 45
LOW_EFFORT_MAX_SCORE = 28

SUBTITLES = {
    ValidationStatus.VERIFIED_HUMAN: "Verified Human Writing Session",
    ValidationStatus.SUSPICIOUS: "Flagged For Rhythm Irregularities",
    ValidationStatus.LOW_EFFORT: "High Paste Ratio Detected",
}
FALLBACK_SUBTITLE = "Session Captured With Limited Data"


# ============================================================
# Types
# ============================================================

@dataclass(frozen=True)
class CertificateProof:
    artifact_sha256: str
    telemetry_digest_sha256: str
    issued_at: str
    signature: str
    validation_status: Optional[str] = None
    risk_score: Optional[float] = None
    confidence: Optional[float] = None
    log_entry_hash: Optional[str] = None
    prev_log_entry_hash: Optional[str] = None
    version: str = PROOF_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "artifactSha256": self.artifact_sha256,
            "telemetryDigestSha256": self.telemetry_digest_sha256,
            "issuedAt": self.issued_at,
            "validationStatus": self.validation_status,
            "riskScore": self.risk_score,
            "confidence": self.confidence,
            "signature": self.signature,
            "logEntryHash": self.log_entry_hash,
            "prevLogEntryHash": self.prev_log_entry_hash,
        }


@dataclass(frozen=True)
class CertificatePayload:
    id: str
    title: str
    subtitle: str
    text: str
    score: int
    issued_at: str
    sparkline: List[float]
    seed: str
    replay: List[Dict[str, Any]]
    proof: Optional[CertificateProof] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "subtitle": self.subtitle,
            "text": self.text,
            "score": self.score,
            "issuedAt": self.issued_at,
            "sparkline": list(self.sparkline),
            "seed": self.seed,
            "replay": [dict(op) for op in self.replay],
            "proof": self.proof.to_dict() if self.proof else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CertificatePayload":
        """
        Re-hydrate a stored or submitted payload.

        Sparkline and replay are normalised and the proof parsed leniently
        (an unusable proof becomes None); nothing here raises for wrong
        field types.
        """
        certificate_id = _text(data.get("id"))
        return cls(
            id=certificate_id,
            title=_text(data.get("title")),
            subtitle=_text(data.get("subtitle")),
            text=_text(data.get("text")),
            score=data.get("score") if is_finite_number(data.get("score")) else 0,
            issued_at=_text(data.get("issuedAt")),
            sparkline=normalize_sparkline(data.get("sparkline")),
            seed=_text(data.get("seed")) or certificate_id,
            replay=normalize_replay(data.get("replay")),
            proof=parse_proof(data.get("proof")),
        )


@dataclass
class CertificateInput:
    """Caller-supplied fields for a new certificate. All are sanitised."""
    text: str = ""
    title: str = ""
    subtitle: str = ""
    score: Any = 0
    issued_at: Optional[str] = None
    seed: str = ""
    sparkline: Any = field(default_factory=list)
    replay: Any = field(default_factory=list)
    validation_status: Optional[str] = None
    risk_score: Optional[float] = None
    confidence: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CertificateInput":
        return cls(
            text=data.get("text") or "",
            title=data.get("title") or "",
            subtitle=data.get("subtitle") or "",
            score=data.get("score", 0),
            issued_at=data.get("issuedAt"),
            seed=data.get("seed") or "",
            sparkline=data.get("sparkline"),
            replay=data.get("replay"),
            validation_status=data.get("validationStatus"),
            risk_score=data.get("riskScore"),
            confidence=data.get("confidence"),
        )


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _fixed(value: float, digits: int) -> float:
    """Round the way a fixed-point string rendering does."""
    return float(f"{value:.{digits}f}")


# ============================================================
# Normalisation
# ============================================================

def normalize_sparkline(values: Any) -> List[float]:
    """
    Keep at most 48 finite, non-negative samples rounded to 2 decimals.

    Falls back to a placeholder sequence when nothing usable remains.
    """
    if not isinstance(values, (list, tuple)):
        return list(DEFAULT_SPARKLINE)
    points = [
        _fixed(value, 2)
        for value in values
        if is_finite_number(value) and value >= 0
    ][:MAX_SPARKLINE_POINTS]
    return points or list(DEFAULT_SPARKLINE)


def _replay_operation(raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, OperationEvent):
        raw = raw.to_dict()
    if not isinstance(raw, Mapping):
        return None
    if raw.get("type", "operation") != "operation":
        return None
    timestamp = raw.get("timestamp")
    start = raw.get("from")
    end = raw.get("to")
    op = raw.get("op")
    text = raw.get("text")
    if not is_finite_number(timestamp):
        return None
    if not (is_integer(start) and is_integer(end) and 0 <= start <= end):
        return None
    if op not in ("insert", "delete", "replace") or not isinstance(text, str):
        return None
    return {
        "type": "operation",
        "timestamp": timestamp,
        "op": op,
        "from": int(start),
        "to": int(end),
        "text": text[:MAX_REPLAY_TEXT_LENGTH],
    }


def normalize_replay(events: Any) -> List[Dict[str, Any]]:
    """
    Well-formed operations only, sorted by timestamp, at most 4000, with
    text capped at 1000 characters. Applying it twice changes nothing.
    """
    if not isinstance(events, (list, tuple)):
        return []
    operations = [op for op in (_replay_operation(raw) for raw in events) if op is not None]
    operations.sort(key=lambda op: op["timestamp"])
    return operations[:MAX_REPLAY_EVENTS]


def build_replay_from_telemetry(events: Sequence[Any]) -> List[Dict[str, Any]]:
    """Replay operations from a session's telemetry."""
    return normalize_replay([e for e in coerce_events(events) if isinstance(e, OperationEvent)])


def build_sparkline_from_telemetry(events: Sequence[Any]) -> List[float]:
    """
    Typing velocity: char/delete keystrokes per second, in ingestion order.

    Only seconds holding keystrokes get a bucket. An idle stretch between
    two of them is at most six zero buckets (the classifier's 6 s typing
    interval limit), however far apart the batch clocks are.
    Long sessions are downsampled by averaging equal windows so the result
    has at most 48 points. Returns an empty list when there was no typing.
    """
    buckets: List[int] = []
    previous: Optional[int] = None
    for event in coerce_events(events):
        if not (isinstance(event, KeystrokeEvent) and event.action in ("char", "delete")):
            continue
        second = int(event.timestamp // SPARKLINE_BUCKET_MS)
        if second != previous:
            if previous is not None and second > previous + 1:
                buckets.extend([0] * min(second - previous - 1, SPARKLINE_MAX_IDLE_BUCKETS))
            buckets.append(0)
            previous = second
        buckets[-1] += 1

    if len(buckets) <= MAX_SPARKLINE_POINTS:
        return buckets

    window = math.ceil(len(buckets) / MAX_SPARKLINE_POINTS)
    sampled = []
    for i in range(0, len(buckets), window):
        chunk = buckets[i:i + window]
        sampled.append(_fixed(sum(chunk) / len(chunk), 2))
    return sampled[:MAX_SPARKLINE_POINTS]


# ============================================================
# Display score
# ============================================================

def display_score(
    status: Optional[Any],
    risk_score: Optional[float],
    confidence: Optional[float],
    has_text: bool = True
) -> int:
    """
    The 0-99 score printed on a certificate (higher is more human).

    100 - riskScore, less an uncertainty penalty of (1 - confidence) * 20,
    clamped to [1, 99] and then bounded by verdict.
    """
    if not has_text:
        return 0
    risk = risk_score if is_finite_number(risk_score) else DISPLAY_DEFAULT_RISK_SCORE
    conf = confidence if is_finite_number(confidence) else DISPLAY_DEFAULT_CONFIDENCE
    calibrated = round_half_up(
        clamp(100 - risk - (1 - conf) * DISPLAY_UNCERTAINTY_PENALTY, DISPLAY_MIN, DISPLAY_MAX)
    )

    verdict = status_from_value(status)
    if verdict is ValidationStatus.VERIFIED_HUMAN:
        calibrated = max(calibrated, VERIFIED_HUMAN_MIN_SCORE)
    elif verdict is ValidationStatus.SUSPICIOUS:
        calibrated = min(calibrated, SUSPICIOUS_MAX_SCORE)
    elif verdict is ValidationStatus.LOW_EFFORT:
        calibrated = min(calibrated, LOW_EFFORT_MAX_SCORE)
    return int(clamp(calibrated, 0, DISPLAY_MAX))


def subtitle_from_status(status: Optional[Any]) -> str:
    return SUBTITLES.get(status_from_value(status), FALLBACK_SUBTITLE)


# ============================================================
# Proofs
# ============================================================

def build_unsigned_proof(
    certificate_id: str,
    text: str,
    replay: List[Dict[str, Any]],
    issued_at: str,
    validation_status: Optional[Any] = None,
    risk_score: Optional[Any] = None,
    confidence: Optional[Any] = None
) -> Dict[str, Any]:
    """
    The proof fields covered by the signature.

    Unknown statuses and non-finite scores are bound as null.
    """
    status = status_from_value(validation_status)
    return {
        "version": PROOF_VERSION,
        "certificateId": certificate_id,
        "artifactSha256": artifact_digest(text),
        "telemetryDigestSha256": telemetry_digest(replay),
        "issuedAt": issued_at,
        "validationStatus": status.value if status else None,
        "riskScore": round_half_up(risk_score) if is_finite_number(risk_score) else None,
        "confidence": _fixed(confidence, 3) if is_finite_number(confidence) else None,
    }


def parse_proof(raw: Any) -> Optional[CertificateProof]:
    """
    Parse a proof bundle; None if any required field is missing or mistyped.
    """
    if not isinstance(raw, Mapping):
        return None
    if raw.get("version") != PROOF_VERSION:
        return None
    required = ("artifactSha256", "telemetryDigestSha256", "issuedAt", "signature")
    if any(not isinstance(raw.get(key), str) for key in required):
        return None

    status = status_from_value(raw.get("validationStatus"))
    log_hash = raw.get("logEntryHash")
    prev_hash = raw.get("prevLogEntryHash")
    return CertificateProof(
        artifact_sha256=raw["artifactSha256"],
        telemetry_digest_sha256=raw["telemetryDigestSha256"],
        issued_at=raw["issuedAt"],
        signature=raw["signature"],
        validation_status=status.value if status else None,
        risk_score=raw.get("riskScore") if is_finite_number(raw.get("riskScore")) else None,
        confidence=raw.get("confidence") if is_finite_number(raw.get("confidence")) else None,
        log_entry_hash=log_hash if isinstance(log_hash, str) else None,
        prev_log_entry_hash=prev_hash if isinstance(prev_hash, str) else None,
    )


# ============================================================
# Issuance
# ============================================================

def create_certificate_record(
    store: Optional[Store],
    settings: Settings,
    certificate_input: Any,
    mirror: Optional[Any] = None,
    session_id: Optional[str] = None,
    now: Optional[int] = None
) -> CertificatePayload:
    """
    Issue a certificate: sanitise, sign, append to the transparency log
    and persist.

    Args:
        store: Durable store
        settings: Provides the certificate secret
        certificate_input: CertificateInput or a camelCase mapping
        mirror: Optional log mirror called with each committed entry
        session_id: Telemetry session the certificate came from, if any
        now: Override for the current time (ms)

    Raises:
        StoreUnavailableError: If the store is missing or unreachable; no
            certificate is returned without a committed log entry
    """
    store = require_store(store)
    if isinstance(certificate_input, Mapping):
        certificate_input = CertificateInput.from_dict(certificate_input)
    current = now_ms() if now is None else now

    certificate_id = generate_id(CERTIFICATE_ID_PREFIX, CERTIFICATE_ID_BYTES)
    issued = parse_iso(certificate_input.issued_at)
    issued_at = utc_iso(issued) if issued else iso_from_ms(current)

    raw_score = certificate_input.score
    score = round_half_up(clamp(raw_score, 0, MAX_SCORE)) if is_finite_number(raw_score) else 0

    title = _text(certificate_input.title)[:MAX_TITLE_LENGTH] or DEFAULT_TITLE
    subtitle = _text(certificate_input.subtitle)[:MAX_TITLE_LENGTH] or DEFAULT_SUBTITLE
    text = _text(certificate_input.text)[:MAX_TEXT_LENGTH] or DEFAULT_TEXT
    seed = (_text(certificate_input.seed) or certificate_id)[:MAX_SEED_LENGTH]
    sparkline = normalize_sparkline(certificate_input.sparkline)
    replay = normalize_replay(certificate_input.replay)

    unsigned = build_unsigned_proof(
        certificate_id,
        text,
        replay,
        issued_at,
        certificate_input.validation_status,
        certificate_input.risk_score,
        certificate_input.confidence,
    )
    signature = SigningService(settings.certificate_secret).sign(unsigned)

    with store.transaction() as tx:
        tail = tx.latest_log_entry()
        prev_hash = tail["entry_hash"] if tail else None
        entry_hash = log_entry_hash(certificate_id, prev_hash, signature)
        # Keep creation times monotonic so the tail query stays correct
        created_at = max(current, tail["created_at"]) if tail else current

        proof = CertificateProof(
            artifact_sha256=unsigned["artifactSha256"],
            telemetry_digest_sha256=unsigned["telemetryDigestSha256"],
            issued_at=issued_at,
            signature=signature,
            validation_status=unsigned["validationStatus"],
            risk_score=unsigned["riskScore"],
            confidence=unsigned["confidence"],
            log_entry_hash=entry_hash,
            prev_log_entry_hash=prev_hash,
        )
        payload = CertificatePayload(
            id=certificate_id,
            title=title,
            subtitle=subtitle,
            text=text,
            score=score,
            issued_at=issued_at,
            sparkline=sparkline,
            seed=seed,
            replay=replay,
            proof=proof,
        )
        tx.insert_certificate(certificate_id, payload.to_dict(), created_at, session_id)
        tx.append_log_entry(certificate_id, prev_hash, entry_hash, created_at)

    audit_log.certificate_issued(certificate_id, proof.validation_status, entry_hash, prev_hash)

    if mirror is not None:
        mirror.append({
            "certificateId": certificate_id,
            "prevHash": prev_hash,
            "entryHash": entry_hash,
            "createdAt": iso_from_ms(created_at),
        })

    return payload


def finish_session(
    store: Optional[Store],
    settings: Settings,
    session_id: str,
    text: str,
    mirror: Optional[Any] = None,
    now: Optional[int] = None
) -> CertificatePayload:
    """
    Classify everything ingested for a session and issue its certificate.

    Raises:
        IntegrityError: If the session does not exist
        StoreUnavailableError: If the store is missing or unreachable
    """
    store = require_store(store)
    if not is_session_id(session_id) or store.get_session(session_id) is None:
        raise IntegrityError(IntegrityError.SESSION_NOT_FOUND, "Telemetry session does not exist.")

    current = now_ms() if now is None else now
    events = coerce_events(store.get_session_events(session_id))
    content = _text(text).strip()
    result = validate_session(events, len(content))

    logger.info(
        "Finishing session %s: %s (risk %d, confidence %.3f)",
        session_id, result.status.value, result.risk_score, result.confidence,
    )

    certificate_input = CertificateInput(
        text=content[:MAX_TEXT_LENGTH],
        title=DEFAULT_TITLE,
        subtitle=subtitle_from_status(result.status),
        score=display_score(result.status, result.risk_score, result.confidence, bool(content)),
        issued_at=iso_from_ms(current),
        seed=f"seed-{current:x}",
        sparkline=build_sparkline_from_telemetry(events),
        replay=build_replay_from_telemetry(events),
        validation_status=result.status.value,
        risk_score=result.risk_score,
        confidence=result.confidence,
    )
    return create_certificate_record(
        store, settings, certificate_input, mirror=mirror, session_id=session_id, now=current
    )


def get_certificate_record(store: Optional[Store], certificate_id: Any) -> Optional[CertificatePayload]:
    """
    Load a certificate by id; None when the id is unusable or unknown.

    Raises:
        StoreUnavailableError: If the store is missing or unreachable
    """
    store = require_store(store)
    normalized = sanitize_certificate_id(certificate_id)
    if not normalized:
        return None
    stored = store.get_certificate(normalized)
    if stored is None:
        return None
    return CertificatePayload.from_dict(stored)
