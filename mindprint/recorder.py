"""
Capture-side telemetry recorder.

Collects events from the editor, keeps a bounded history for live
classification, a fixed-size ring buffer for on-screen display, and an
upload queue that is flushed to the ingestion protocol in numbered batches.
A failed upload is held back and resent unchanged on the next flush.
"""

import logging
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from .classifier import ValidationResult, validate_session
from .errors import SequenceError
from .events import TelemetryEvent, events_to_dicts, parse_event
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

MAX_HISTORY_EVENTS = 12000
TRIMMED_HISTORY_EVENTS = 10000
UI_EVENT_CAPACITY = 4000
VALIDATION_INTERVAL_MS = 400
MAX_UPLOAD_BATCH = 4000
MAX_PENDING_EVENTS = 40000


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RingBuffer:
    """Fixed-capacity circular buffer; the oldest item is overwritten when full."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._items: List[Any] = [None] * capacity
        self._head = 0
        self._count = 0

    @property
    def capacity(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return self._count

    def append(self, item: Any) -> None:
        # head points at the oldest item once the buffer is full
        tail = (self._head + self._count) % self.capacity
        self._items[tail] = item
        if self._count < self.capacity:
            self._count += 1
        else:
            self._head = (self._head + 1) % self.capacity

    def to_list(self) -> List[Any]:
        """Items from oldest to newest."""
        return [self._items[(self._head + i) % self.capacity] for i in range(self._count)]

    def clear(self) -> None:
        self._items = [None] * self.capacity
        self._head = 0
        self._count = 0


class TelemetryRecorder:
    """
    Records one writing session on the capture side.

    Args:
        clock: Returns the current time in milliseconds; event timestamps
            and validation throttling both use it
        max_history: History size that triggers trimming
        trimmed_history: Size the history is trimmed back to
        ui_capacity: Size of the display ring buffer
        validation_interval_ms: Minimum time between live recomputations
        max_batch_events: Maximum events per uploaded batch
        max_pending: Upload queue size; the oldest unsent events are dropped
            beyond it
    """

    def __init__(
        self,
        clock: Callable[[], float] = _monotonic_ms,
        max_history: int = MAX_HISTORY_EVENTS,
        trimmed_history: int = TRIMMED_HISTORY_EVENTS,
        ui_capacity: int = UI_EVENT_CAPACITY,
        validation_interval_ms: float = VALIDATION_INTERVAL_MS,
        max_batch_events: int = MAX_UPLOAD_BATCH,
        max_pending: int = MAX_PENDING_EVENTS
    ):
        if trimmed_history > max_history:
            raise ValueError("trimmed_history must not exceed max_history")
        self._clock = clock
        self._max_history = max_history
        self._trimmed_history = trimmed_history
        self._validation_interval_ms = validation_interval_ms
        self._max_batch_events = max_batch_events

        self._history: List[TelemetryEvent] = []
        self._ui_events = RingBuffer(ui_capacity)
        self._pending: deque = deque(maxlen=max_pending)
        self._in_flight: List[TelemetryEvent] = []
        self._dropped = 0

        self._last_validation_at: Optional[float] = None
        self._last_validation: Optional[ValidationResult] = None

        self.session: Optional[Dict[str, Any]] = None
        self.next_sequence = 1

    # ------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------

    def record_keystroke(self, action: str, key: str = "") -> TelemetryEvent:
        return self._record({
            "type": "keystroke",
            "timestamp": self._clock(),
            "key": key,
            "action": action,
        })

    def record_paste(self, length: int, source: str = "clipboard") -> TelemetryEvent:
        return self._record({
            "type": "paste",
            "timestamp": self._clock(),
            "length": length,
            "source": source,
        })

    def record_operation(self, op: str, from_: int, to: int, text: str = "") -> TelemetryEvent:
        return self._record({
            "type": "operation",
            "timestamp": self._clock(),
            "op": op,
            "from": from_,
            "to": to,
            "text": text,
        })

    def _record(self, raw: Dict[str, Any]) -> TelemetryEvent:
        event = parse_event(raw)
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[:len(self._history) - self._trimmed_history]
        self._ui_events.append(event)
        if len(self._pending) == self._pending.maxlen:
            self._dropped += 1
            if self._dropped == 1:
                logger.warning("Telemetry upload queue full, dropping oldest unsent events")
        self._pending.append(event)
        return event

    # ------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------

    def get_events(self) -> List[TelemetryEvent]:
        return list(self._history)

    def get_ui_events(self) -> List[TelemetryEvent]:
        return self._ui_events.to_list()

    @property
    def pending_count(self) -> int:
        return len(self._in_flight) + len(self._pending)

    @property
    def dropped_count(self) -> int:
        return self._dropped

    def update_validation(self, content_length: int, force: bool = False) -> ValidationResult:
        """
        Re-classify the session, at most once per validation interval.

        Within the interval the previous result is returned unchanged.
        """
        now = self._clock()
        if (
            not force
            and self._last_validation is not None
            and now - self._last_validation_at < self._validation_interval_ms
        ):
            return self._last_validation

        self._last_validation = validate_session(self._history, content_length)
        self._last_validation_at = now
        return self._last_validation

    # ------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------

    def start_session(
        self,
        init: Callable[[], Any],
        retry_policy: Optional[RetryPolicy] = None
    ) -> Dict[str, Any]:
        """
        Open an ingestion session through init, retrying transient failures.

        init returns a mapping (or an object with to_dict) holding
        sessionId, sessionToken and expiresAt.
        """
        policy = retry_policy or RetryPolicy()
        grant = policy.call(init, "telemetry session init")
        if hasattr(grant, "to_dict"):
            grant = grant.to_dict()
        self.session = dict(grant)
        self.next_sequence = 1
        logger.info("Telemetry session %s started", self.session.get("sessionId"))
        return self.session

    def flush(self, ingest: Callable[..., Any]) -> int:
        """
        Upload pending events in numbered batches.

        ingest is called with keyword arguments events, session_id,
        session_token and batch_sequence. A batch that fails is held back
        and resent unchanged, under the same sequence number, on the next
        flush; the error is logged, not raised, so capture keeps running.
        A SequenceError means the store already holds that sequence (the
        batch was committed and the reply lost), so the batch is dropped
        and numbering resumes after the store's last sequence.

        Returns:
            Number of events accepted by ingest
        """
        if self.session is None:
            return 0

        sent = 0
        while self._in_flight or self._pending:
            if not self._in_flight:
                count = min(self._max_batch_events, len(self._pending))
                self._in_flight = [self._pending.popleft() for _ in range(count)]
            try:
                ingest(
                    events=events_to_dicts(self._in_flight),
                    session_id=self.session["sessionId"],
                    session_token=self.session["sessionToken"],
                    batch_sequence=self.next_sequence,
                )
            except SequenceError as e:
                logger.warning(
                    "Telemetry batch %d already stored (last sequence %d), skipping ahead",
                    self.next_sequence, e.last_sequence,
                )
                self.next_sequence = max(self.next_sequence, e.last_sequence) + 1
                self._in_flight = []
                continue
            except Exception as e:
                logger.warning(
                    "Telemetry batch %d failed, %d events held for retry: %s",
                    self.next_sequence, len(self._in_flight), e,
                )
                break
            self.next_sequence += 1
            sent += len(self._in_flight)
            self._in_flight = []
        return sent

    def clear(self) -> None:
        self._history = []
        self._ui_events.clear()
        self._pending.clear()
        self._in_flight = []
        self._dropped = 0
        self._last_validation = None
        self._last_validation_at = None
