"""
Logging setup for Mindprint.

Records are written as one JSON object per line, tagged with the request id
of the HTTP call that produced them. Trust decisions (sessions, batches,
certificates, verifications) are also written through ``audit_log`` under
the ``mindprint.audit`` logger with a typed ``event_type``.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from .security import sanitize_for_logging
from .util import iso_from_ms

request_id_var: ContextVar[str] = ContextVar("mindprint_request_id", default="")

_SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


class StructuredFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": iso_from_ms(record.created * 1000),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.lineno}",
        }
        request_id = request_id_var.get()
        if request_id:
            entry["request_id"] = request_id
        fields = getattr(record, "audit_fields", None)
        if fields:
            entry.update(fields)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class AuditLogger:
    """
    Typed audit events.

    Field values pass through ``sanitize_for_logging`` so session tokens and
    nonces never reach the log sink in clear.
    """

    def __init__(self, name: str = "mindprint.audit"):
        self._logger = logging.getLogger(name)

    def _emit(self, level: int, event_type: str, message: str, **fields: Any) -> None:
        fields = sanitize_for_logging(fields)
        fields["event_type"] = event_type
        self._logger.log(level, "%s: %s", event_type, message, extra={"audit_fields": fields})

    def session_initialized(self, session_id: str, expires_at: str) -> None:
        self._emit(
            logging.INFO, "SESSION_INITIALIZED", f"session {session_id} open until {expires_at}",
            session_id=session_id, expires_at=expires_at,
        )

    def batch_ingested(self, session_id: str, batch_sequence: int, event_count: int) -> None:
        self._emit(
            logging.INFO, "BATCH_INGESTED", f"{session_id} batch {batch_sequence} ({event_count} events)",
            session_id=session_id, batch_sequence=batch_sequence, event_count=event_count,
        )

    def batch_rejected(self, session_id: Optional[str], batch_sequence: Any, reason: str) -> None:
        self._emit(
            logging.WARNING, "BATCH_REJECTED", reason,
            session_id=session_id, batch_sequence=batch_sequence, reason=reason,
        )

    def certificate_issued(
        self,
        certificate_id: str,
        validation_status: Optional[str],
        log_entry_hash: str,
        prev_log_entry_hash: Optional[str],
    ) -> None:
        self._emit(
            logging.INFO, "CERTIFICATE_ISSUED", f"{certificate_id} appended to log",
            certificate_id=certificate_id,
            validation_status=validation_status,
            log_entry_hash=log_entry_hash,
            prev_log_entry_hash=prev_log_entry_hash,
        )

    def certificate_verified(self, certificate_id: str, is_valid: bool, reason: Optional[str] = None) -> None:
        self._emit(
            logging.INFO if is_valid else logging.WARNING,
            "CERTIFICATE_VERIFIED",
            f"{certificate_id} {'valid' if is_valid else 'invalid'}",
            certificate_id=certificate_id, is_valid=is_valid, reason=reason,
        )

    def security_event(self, event: str, severity: str = "medium", **details: Any) -> None:
        self._emit(
            _SEVERITY_LEVELS.get(severity, logging.WARNING), "SECURITY_EVENT", event,
            security_event=event, severity=severity, **details,
        )

    def rate_limit_exceeded(self, client_id: str, endpoint: str) -> None:
        self._emit(
            logging.WARNING, "RATE_LIMIT_EXCEEDED", f"{client_id} on {endpoint}",
            client_id=client_id, endpoint=endpoint,
        )

    def analysis_failed(self, session_id: Optional[str], status: Optional[int], reason: str) -> None:
        self._emit(
            logging.WARNING, "ANALYSIS_FAILED", reason,
            session_id=session_id, status=status, reason=reason,
        )


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind ``request_id`` (or a fresh one) to the current context and return it."""
    request_id = request_id or uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


audit_log = AuditLogger()
