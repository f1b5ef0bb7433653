"""
Mindprint Telemetry Events

The three observation types captured while a text is written:

- keystroke: a key press, classified as char / delete / nav / other
- paste: a clipboard insertion of `length` characters
- operation: a text-diff edit (insert / delete / replace) between offsets
  `from` and `to` of the pre-operation document

Events arrive as JSON objects. parse_event validates one object and returns
the typed event; validate_batch applies the batch-level rules used by the
ingestion protocol (non-empty, bounded size, non-decreasing timestamps).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Sequence, Union

from .errors import ValidationError
from .util import is_finite_number, is_integer

# Timestamps within a batch may step back by at most this much (ms)
TIMESTAMP_TOLERANCE_MS = 0.5


class KeystrokeAction(str, Enum):
    CHAR = "char"
    DELETE = "delete"
    NAV = "nav"
    OTHER = "other"


class OperationType(str, Enum):
    INSERT = "insert"
    DELETE = "delete"
    REPLACE = "replace"


KEYSTROKE_ACTIONS = frozenset(a.value for a in KeystrokeAction)
OPERATION_TYPES = frozenset(o.value for o in OperationType)


@dataclass(frozen=True)
class KeystrokeEvent:
    timestamp: float
    key: str
    action: str
    type: str = "keystroke"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "timestamp": self.timestamp,
            "key": self.key,
            "action": self.action,
        }


@dataclass(frozen=True)
class PasteEvent:
    timestamp: float
    length: float
    source: str = "clipboard"
    type: str = "paste"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "timestamp": self.timestamp,
            "length": self.length,
            "source": self.source,
        }


@dataclass(frozen=True)
class OperationEvent:
    """
    A text-diff edit. `from_` is spelled with an underscore because `from`
    is a keyword; the serialized form uses "from".
    """
    timestamp: float
    op: str
    from_: int
    to: int
    text: str = ""
    type: str = "operation"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "timestamp": self.timestamp,
            "op": self.op,
            "from": self.from_,
            "to": self.to,
            "text": self.text,
        }


TelemetryEvent = Union[KeystrokeEvent, PasteEvent, OperationEvent]


def _require(condition: bool, field: str, message: str) -> None:
    if not condition:
        raise ValidationError(field, message)


def parse_event(data: Any, index: int = 0) -> TelemetryEvent:
    """
    Validate one event object and return its typed form.

    Already-typed events are re-validated through their dict form.

    Raises:
        ValidationError: If the event shape is invalid
    """
    if isinstance(data, (KeystrokeEvent, PasteEvent, OperationEvent)):
        data = data.to_dict()

    prefix = f"events[{index}]"
    _require(isinstance(data, dict), prefix, "must be an object")

    timestamp = data.get("timestamp")
    _require(
        is_finite_number(timestamp) and timestamp >= 0,
        f"{prefix}.timestamp",
        "must be a finite, non-negative number",
    )

    event_type = data.get("type")
    if event_type == "keystroke":
        key = data.get("key")
        action = data.get("action")
        _require(isinstance(key, str), f"{prefix}.key", "must be a string")
        _require(
            action in KEYSTROKE_ACTIONS,
            f"{prefix}.action",
            f"must be one of {sorted(KEYSTROKE_ACTIONS)}",
        )
        return KeystrokeEvent(timestamp=timestamp, key=key, action=action)

    if event_type == "paste":
        length = data.get("length")
        source = data.get("source")
        _require(
            is_finite_number(length) and length >= 0,
            f"{prefix}.length",
            "must be a finite, non-negative number",
        )
        _require(isinstance(source, str), f"{prefix}.source", "must be a string")
        return PasteEvent(timestamp=timestamp, length=length, source=source)

    if event_type == "operation":
        op = data.get("op")
        start = data.get("from")
        end = data.get("to")
        text = data.get("text")
        _require(op in OPERATION_TYPES, f"{prefix}.op", f"must be one of {sorted(OPERATION_TYPES)}")
        _require(is_integer(start) and start >= 0, f"{prefix}.from", "must be a non-negative integer")
        _require(is_integer(end) and end >= start, f"{prefix}.to", "must be an integer not less than from")
        _require(isinstance(text, str), f"{prefix}.text", "must be a string")
        if op == OperationType.INSERT.value:
            _require(start == end, f"{prefix}.to", "must equal from for insert operations")
        return OperationEvent(timestamp=timestamp, op=op, from_=int(start), to=int(end), text=text)

    raise ValidationError(f"{prefix}.type", "must be one of ['keystroke', 'operation', 'paste']")


def validate_batch(events: Any, max_events: int) -> List[TelemetryEvent]:
    """
    Validate an ingestion batch.

    Rules:
    - a non-empty list of at most max_events entries
    - every entry is a well-formed event
    - timestamps never step back by more than TIMESTAMP_TOLERANCE_MS

    Returns:
        The parsed events, in order

    Raises:
        ValidationError: On the first violated rule
    """
    if not isinstance(events, (list, tuple)):
        raise ValidationError("events", "must be a list")
    if not events:
        raise ValidationError("events", "must not be empty")
    if len(events) > max_events:
        raise ValidationError("events", f"must not exceed {max_events} events per batch")

    parsed = []
    previous = 0.0
    for index, raw in enumerate(events):
        event = parse_event(raw, index)
        if event.timestamp + TIMESTAMP_TOLERANCE_MS < previous:
            raise ValidationError(
                f"events[{index}].timestamp",
                "timestamps must be non-decreasing within a batch",
            )
        previous = event.timestamp
        parsed.append(event)
    return parsed


def events_to_dicts(events: Sequence[TelemetryEvent]) -> List[Dict[str, Any]]:
    return [event.to_dict() for event in events]


def coerce_events(events: Sequence[Any]) -> List[TelemetryEvent]:
    """
    Typed events from a mixed list, silently skipping malformed entries.

    Used where the input was validated earlier (stored batches) or where a
    bad entry should carry no signal (live classification).
    """
    typed = []
    for raw in events:
        if isinstance(raw, (KeystrokeEvent, PasteEvent, OperationEvent)):
            typed.append(raw)
            continue
        try:
            typed.append(parse_event(raw))
        except ValidationError:
            continue
    return typed
