"""
Mindprint Telemetry Session Protocol

A telemetry session is opened with init_telemetry_session, which persists a
server-side session row and hands the client a signed token binding
{sid, nonce, exp}. Every ingest_telemetry call is checked twice:

1. Statelessly: the token signature must verify, name the same session and
   not be expired.
2. Against live state, inside one write transaction: the session must
   exist, its stored nonce must match the token, it must not be expired,
   and the batch sequence must exceed the last accepted one.

Only then is the batch stored and lastSequence advanced, in the same
transaction. A rejected batch leaves the store untouched.
"""

import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .canonicalization import canonicalize
from .config import Settings
from .db import Store, require_store
from .errors import IntegrityError, SequenceError, ValidationError
from .events import events_to_dicts, validate_batch
from .logging_config import audit_log
from .security import validate_positive_int
from .signing import SigningService
from .util import (
    b64url_decode,
    b64url_encode,
    constant_time_compare,
    generate_id,
    generate_nonce,
    is_integer,
    iso_from_ms,
    now_ms,
)

logger = logging.getLogger(__name__)

SESSION_ID_PREFIX = "sess-"
SESSION_ID_BYTES = 16
SESSION_NONCE_BYTES = 12


@dataclass(frozen=True)
class SessionGrant:
    """What the client receives when a session is opened."""
    session_id: str
    session_token: str
    expires_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "sessionToken": self.session_token,
            "expiresAt": self.expires_at,
        }


@dataclass(frozen=True)
class IngestResult:
    session_id: str
    batch_sequence: int
    accepted_events: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "batchSequence": self.batch_sequence,
            "acceptedEvents": self.accepted_events,
        }


# ============================================================
# Session tokens
# ============================================================

def create_session_token(claims: Dict[str, Any], secret: str) -> str:
    """
    Encode and sign token claims.

    Format: base64url(canonical(claims)) + "." + base64url(HMAC-SHA256)
    """
    encoded = b64url_encode(canonicalize(claims))
    signature = SigningService(secret).sign(claims)
    return f"{encoded}.{signature}"


def parse_session_token(token: Any, secret: str) -> Optional[Dict[str, Any]]:
    """
    Decode a session token and verify its signature.

    Returns:
        The {sid, nonce, exp} claims, or None if the token is malformed,
        carries the wrong signature or misses a claim
    """
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    encoded, signature = parts

    try:
        claims = json.loads(b64url_decode(encoded).decode("utf-8"))
    except (ValueError, binascii.Error, UnicodeDecodeError):
        return None
    if not isinstance(claims, dict):
        return None

    if not SigningService(secret).verify(claims, signature):
        return None

    sid = claims.get("sid")
    nonce = claims.get("nonce")
    exp = claims.get("exp")
    if not isinstance(sid, str) or not sid or not isinstance(nonce, str) or not nonce:
        return None
    if not is_integer(exp):
        return None
    return {"sid": sid, "nonce": nonce, "exp": int(exp)}


# ============================================================
# Protocol operations
# ============================================================

def init_telemetry_session(
    store: Optional[Store],
    settings: Settings,
    now: Optional[int] = None
) -> SessionGrant:
    """
    Open a telemetry session.

    Raises:
        StoreUnavailableError: If no store is configured or it cannot be written
    """
    store = require_store(store)
    created_at = now_ms() if now is None else now

    session_id = generate_id(SESSION_ID_PREFIX, SESSION_ID_BYTES)
    nonce = generate_nonce(SESSION_NONCE_BYTES)
    exp = created_at + settings.session_ttl_ms
    token = create_session_token({"sid": session_id, "nonce": nonce, "exp": exp}, settings.session_secret)

    store.create_session(session_id, nonce, exp, created_at)

    expires_at = iso_from_ms(exp)
    audit_log.session_initialized(session_id, expires_at)
    return SessionGrant(session_id=session_id, session_token=token, expires_at=expires_at)


def ingest_telemetry(
    store: Optional[Store],
    settings: Settings,
    events: Any,
    session_id: Any,
    session_token: Any,
    batch_sequence: Any,
    now: Optional[int] = None
) -> IngestResult:
    """
    Validate and persist one telemetry batch.

    Raises:
        IntegrityError: Missing credentials, bad or expired token, unknown
            session, nonce mismatch or expired session
        ValidationError: Bad batch sequence or malformed events
        SequenceError: Replayed or out-of-order batch
        StoreUnavailableError: If the store is missing or unreachable
    """
    try:
        return _ingest(store, settings, events, session_id, session_token, batch_sequence, now)
    except (ValidationError, IntegrityError) as e:
        audit_log.batch_rejected(
            session_id if isinstance(session_id, str) else None,
            batch_sequence if is_integer(batch_sequence) else None,
            str(e),
        )
        raise


def _ingest(
    store: Optional[Store],
    settings: Settings,
    events: Any,
    session_id: Any,
    session_token: Any,
    batch_sequence: Any,
    now: Optional[int]
) -> IngestResult:
    if not session_id or not session_token or not isinstance(session_id, str):
        raise IntegrityError(IntegrityError.MISSING_CREDENTIALS, "Missing telemetry session credentials.")

    sequence = validate_positive_int(batch_sequence, "batchSequence")
    parsed = validate_batch(events, settings.max_batch_events)

    claims = parse_session_token(session_token, settings.session_secret)
    if claims is None or claims["sid"] != session_id:
        audit_log.security_event("invalid_session_token", severity="medium", session_id=session_id)
        raise IntegrityError(IntegrityError.INVALID_TOKEN, "Telemetry session token is invalid.")

    current = now_ms() if now is None else now
    if claims["exp"] <= current:
        raise IntegrityError(IntegrityError.TOKEN_EXPIRED, "Telemetry session token has expired.")

    store = require_store(store)
    with store.transaction() as tx:
        session = tx.get_session(session_id)
        if session is None:
            raise IntegrityError(IntegrityError.SESSION_NOT_FOUND, "Telemetry session does not exist.")
        if not constant_time_compare(session["nonce"], claims["nonce"]):
            audit_log.security_event("session_nonce_mismatch", severity="high", session_id=session_id)
            raise IntegrityError(IntegrityError.NONCE_MISMATCH, "Telemetry session nonce mismatch.")
        if session["expires_at"] <= current:
            raise IntegrityError(IntegrityError.SESSION_EXPIRED, "Telemetry session has expired.")
        if sequence <= session["last_sequence"]:
            raise SequenceError(sequence, session["last_sequence"])

        tx.insert_batch(session_id, sequence, events_to_dicts(parsed), current)
        tx.advance_sequence(session_id, sequence)

    audit_log.batch_ingested(session_id, sequence, len(parsed))
    return IngestResult(session_id=session_id, batch_sequence=sequence, accepted_events=len(parsed))


def load_session_events(store: Optional[Store], session_id: str) -> List[Dict[str, Any]]:
    """Every event ingested for a session, batch by batch."""
    return require_store(store).get_session_events(session_id)
