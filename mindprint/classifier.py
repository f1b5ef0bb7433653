"""
Mindprint Telemetry Classifier

Maps an ordered list of telemetry events plus the current content length to
a ValidationResult: a verdict, a 0-100 risk score and a 0-1 confidence.

The classifier is a pure function. It never raises for well-typed input;
sparse or degenerate sessions degrade to INSUFFICIENT_DATA.

Decision cascade (first match wins):
1. No events                                  -> INSUFFICIENT_DATA (50, 0)
2. No pasted or typed characters              -> INSUFFICIENT_DATA (50, 0)
3. Too little typing, or confidence too low   -> INSUFFICIENT_DATA (50 + 30 * pasteRatio)
4. pasteRatio >= 0.85 and typedChars < 24     -> LOW_EFFORT
5. risk >= 0.64                               -> SUSPICIOUS
6. otherwise                                  -> VERIFIED_HUMAN

The thresholds and weights below are calibrated constants. Changing any of
them changes scores for existing sessions and needs re-calibration.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .events import KeystrokeEvent, PasteEvent, coerce_events
from .util import clamp, round_half_up

# ============================================================
# Calibrated constants
# ============================================================

DEFAULT_RISK_SCORE = 50

# Intervals above this are off-session gaps, not typing rhythm (ms)
MAX_TYPING_INTERVAL_MS = 6000
PAUSE_THRESHOLD_MS = 2000

MIN_TYPED_CHARS = 12
MIN_TYPING_INTERVALS = 6
MIN_CONFIDENCE = 0.25

CONFIDENCE_TYPED_CHARS_SCALE = 80
CONFIDENCE_INTERVALS_SCALE = 120
CONFIDENCE_TYPED_CHARS_WEIGHT = 0.6
CONFIDENCE_INTERVALS_WEIGHT = 0.4

INSUFFICIENT_PASTE_SCALE = 30

PASTE_RISK_OFFSET = 0.18
PASTE_RISK_SPAN = 0.62
PASTE_RISK_WEIGHT = 0.40

REGULARITY_CV_CEILING = 0.22
REGULARITY_RISK_WEIGHT = 0.24

VARIANCE_STD_FLOOR_MS = 12
VARIANCE_RISK_WEIGHT = 0.18

BURST_RATIO_OFFSET = 4
BURST_RATIO_SPAN = 8
BURST_RISK_WEIGHT = 0.10

LOW_REVISION_CEILING = 0.015
LOW_REVISION_RISK_WEIGHT = 0.08

UNCERTAINTY_PENALTY_WEIGHT = 0.18

LOW_EFFORT_PASTE_RATIO = 0.85
LOW_EFFORT_MAX_TYPED_CHARS = 24
SUSPICIOUS_RISK = 0.64


class ValidationStatus(str, Enum):
    VERIFIED_HUMAN = "VERIFIED_HUMAN"
    SUSPICIOUS = "SUSPICIOUS"
    LOW_EFFORT = "LOW_EFFORT"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


@dataclass(frozen=True)
class ValidationMetrics:
    paste_ratio: float
    net_content_length: int
    risk_score: int
    confidence: float
    cv: float = 0.0
    correction_ratio: float = 0.0
    pause_rate_per_min: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pasteRatio": self.paste_ratio,
            "cv": self.cv,
            "netContentLength": self.net_content_length,
            "riskScore": self.risk_score,
            "confidence": self.confidence,
            "correctionRatio": self.correction_ratio,
            "pauseRatePerMin": self.pause_rate_per_min,
        }


@dataclass(frozen=True)
class ValidationResult:
    status: ValidationStatus
    reason: str
    metrics: ValidationMetrics

    @property
    def risk_score(self) -> int:
        return self.metrics.risk_score

    @property
    def confidence(self) -> float:
        return self.metrics.confidence

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "metrics": self.metrics.to_dict(),
        }


@dataclass(frozen=True)
class IntervalStats:
    """Summary of usable keystroke intervals."""
    count: int
    mean: float
    std_dev: float
    cv: float
    burstiness: float
    pause_rate_per_min: float


# ============================================================
# Statistics
# ============================================================

def percentile(sorted_values: Sequence[float], fraction: float) -> float:
    """Linear-interpolation percentile over an already sorted sequence."""
    if not sorted_values:
        return 0.0
    position = (len(sorted_values) - 1) * fraction
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(sorted_values[lower])
    weight = position - lower
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def usable_intervals(keystrokes: Sequence[KeystrokeEvent]) -> List[float]:
    """
    Deltas between consecutive keystrokes that describe typing rhythm.

    Negative deltas (a batch restarting its clock) and gaps longer than
    MAX_TYPING_INTERVAL_MS are dropped.
    """
    intervals = []
    for previous, current in zip(keystrokes, keystrokes[1:]):
        delta = current.timestamp - previous.timestamp
        if 0 <= delta <= MAX_TYPING_INTERVAL_MS:
            intervals.append(delta)
    return intervals


def interval_stats(intervals: Sequence[float]) -> IntervalStats:
    count = len(intervals)
    if count == 0:
        return IntervalStats(0, 0.0, 0.0, 0.0, 0.0, 0.0)

    mean = sum(intervals) / count
    if count > 1:
        variance = sum((value - mean) ** 2 for value in intervals) / (count - 1)
    else:
        variance = 0.0
    std_dev = math.sqrt(variance)
    cv = std_dev / mean if mean > 0 else 0.0

    ordered = sorted(intervals)
    p50 = percentile(ordered, 0.50)
    p95 = percentile(ordered, 0.95)
    burstiness = p95 / p50 if p50 > 0 else 0.0

    span_ms = sum(intervals)
    pauses = sum(1 for value in intervals if value >= PAUSE_THRESHOLD_MS)
    pause_rate = pauses / (span_ms / 60000) if span_ms > 0 else 0.0

    return IntervalStats(count, mean, std_dev, cv, burstiness, pause_rate)


def compute_confidence(typed_chars: int, interval_count: int) -> float:
    """Sample-size confidence: how much typing evidence backs the score."""
    return clamp(
        CONFIDENCE_TYPED_CHARS_WEIGHT * min(typed_chars / CONFIDENCE_TYPED_CHARS_SCALE, 1)
        + CONFIDENCE_INTERVALS_WEIGHT * min(interval_count / CONFIDENCE_INTERVALS_SCALE, 1),
        0.0,
        1.0,
    )


def compute_risk(
    paste_ratio: float,
    stats: IntervalStats,
    correction_ratio: float,
    confidence: float
) -> float:
    """Weighted risk in [0, 1], including the uncertainty penalty."""
    paste_risk = clamp((paste_ratio - PASTE_RISK_OFFSET) / PASTE_RISK_SPAN, 0.0, 1.0)
    regularity_risk = clamp((REGULARITY_CV_CEILING - stats.cv) / REGULARITY_CV_CEILING, 0.0, 1.0)
    variance_risk = 1.0 if stats.std_dev < VARIANCE_STD_FLOOR_MS else 0.0
    burst_risk = clamp((stats.burstiness - BURST_RATIO_OFFSET) / BURST_RATIO_SPAN, 0.0, 1.0)
    low_revision_risk = clamp(
        (LOW_REVISION_CEILING - correction_ratio) / LOW_REVISION_CEILING, 0.0, 1.0
    )

    risk = (
        PASTE_RISK_WEIGHT * paste_risk
        + REGULARITY_RISK_WEIGHT * regularity_risk
        + VARIANCE_RISK_WEIGHT * variance_risk
        + BURST_RISK_WEIGHT * burst_risk
        + LOW_REVISION_RISK_WEIGHT * low_revision_risk
        + (1 - confidence) * UNCERTAINTY_PENALTY_WEIGHT
    )
    return clamp(risk, 0.0, 1.0)


# ============================================================
# Classification
# ============================================================

def _content_length(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0
    return max(0, int(value))


def validate_session(events: Sequence[Any], current_content_length: Any = 0) -> ValidationResult:
    """
    Classify a writing session from its telemetry.

    Args:
        events: Ordered telemetry events (typed events or their dict form)
        current_content_length: Length of the document now

    Returns:
        ValidationResult with status, reason and metrics
    """
    events = coerce_events(events)
    net_length = _content_length(current_content_length)

    if not events:
        return ValidationResult(
            ValidationStatus.INSUFFICIENT_DATA,
            "No telemetry recorded for session.",
            ValidationMetrics(0.0, net_length, DEFAULT_RISK_SCORE, 0.0),
        )

    keystrokes = [e for e in events if isinstance(e, KeystrokeEvent)]
    typed_chars = sum(1 for e in keystrokes if e.action == "char")
    deletes = sum(1 for e in keystrokes if e.action == "delete")
    pasted_chars = sum(e.length for e in events if isinstance(e, PasteEvent))
    total_produced = pasted_chars + typed_chars

    if total_produced <= 0:
        return ValidationResult(
            ValidationStatus.INSUFFICIENT_DATA,
            "No content production actions recorded.",
            ValidationMetrics(0.0, net_length, DEFAULT_RISK_SCORE, 0.0),
        )

    paste_ratio = pasted_chars / total_produced
    correction_ratio = deletes / typed_chars if typed_chars > 0 else 0.0

    stats = interval_stats(usable_intervals(keystrokes))
    confidence = compute_confidence(typed_chars, stats.count)

    if (
        typed_chars < MIN_TYPED_CHARS
        or stats.count < MIN_TYPING_INTERVALS
        or confidence < MIN_CONFIDENCE
    ):
        return ValidationResult(
            ValidationStatus.INSUFFICIENT_DATA,
            "Not enough typing data to verify human rhythm.",
            ValidationMetrics(
                paste_ratio=paste_ratio,
                net_content_length=net_length,
                risk_score=round_half_up(DEFAULT_RISK_SCORE + paste_ratio * INSUFFICIENT_PASTE_SCALE),
                confidence=confidence,
                cv=stats.cv,
                correction_ratio=correction_ratio,
                pause_rate_per_min=stats.pause_rate_per_min,
            ),
        )

    risk = compute_risk(paste_ratio, stats, correction_ratio, confidence)
    metrics = ValidationMetrics(
        paste_ratio=paste_ratio,
        net_content_length=net_length,
        risk_score=round_half_up(risk * 100),
        confidence=confidence,
        cv=stats.cv,
        correction_ratio=correction_ratio,
        pause_rate_per_min=stats.pause_rate_per_min,
    )

    if paste_ratio >= LOW_EFFORT_PASTE_RATIO and typed_chars < LOW_EFFORT_MAX_TYPED_CHARS:
        return ValidationResult(
            ValidationStatus.LOW_EFFORT,
            f"High paste ratio ({paste_ratio * 100:.1f}%)",
            metrics,
        )

    if risk >= SUSPICIOUS_RISK:
        return ValidationResult(
            ValidationStatus.SUSPICIOUS,
            f"Typing rhythm irregularities (risk {metrics.risk_score}, CV {stats.cv:.2f})",
            metrics,
        )

    return ValidationResult(
        ValidationStatus.VERIFIED_HUMAN,
        "Typing rhythm consistent with human writing.",
        metrics,
    )


def status_from_value(value: Any) -> Optional[ValidationStatus]:
    """Parse a stored status string, None when unknown."""
    try:
        return ValidationStatus(value)
    except ValueError:
        return None
