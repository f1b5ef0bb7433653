"""
Advisory analysis of a typing log by a generative model.

This is commentary for the writer, not evidence: nothing here feeds the
classifier, issuance or verification, and a failure here never blocks them.
"""

import json
import logging
import re
from typing import Any, Dict, Optional, Tuple

import requests

from .config import Settings
from .db import Store
from .errors import AdvisoryError, StoreUnavailableError, ValidationError
from .logging_config import audit_log
from .retry import RetryPolicy
from .util import is_finite_number, now_ms

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 503, 504})
MAX_ANALYSIS_ATTEMPTS = 3
INITIAL_RETRY_DELAY = 0.6
RETRY_JITTER = 0.25
REQUEST_TIMEOUT = 30

JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

FORENSIC_LINGUIST_PROMPT = """
You are a Forensic Linguist and Behavioral Analyst specializing in keystroke dynamics and cognitive load assessment.

Your task is to analyze a raw typing log to reconstruct the writer's cognitive state and writing process.
Detect anomalies that suggest interruptions, hesitation, or non-human behavior such as pasting.

## Input Format
A JSON array of telemetry events. Keystrokes carry "timestamp", "key" and "action"
(char, delete, nav, other); pastes carry "timestamp", "length" and "source"; edit
operations carry "timestamp", "op", "from", "to" and "text".

## Analysis Requirements

1. Pause Detection: intervals between keystrokes above 2000ms are pauses. Say whether
   each falls mid-sentence (hesitation) or at a sentence end (review).
2. Bulk Paste Detection: large insertions at once, or many characters with near-zero
   inter-key latency, are bulk pastes.
3. Cognitive Effort Score (0-100): high for many pauses, deletions and revisions, low
   for continuous typing or pasting.
4. Human Likelihood Score (0-100): high for natural variance in speed, reasonable pauses
   and some corrections; low for robotic uniformity, instant large insertions and zero
   corrections.

## Output Format
Return ONLY a valid JSON object:

{
  "cognitive_effort": number,
  "human_likelihood": number,
  "events": [
    {"type": "pause" | "bulk_paste", "timestamp": number, "description": "short description"}
  ],
  "analysis_summary": "Brief 1-2 sentence summary of the writing behavior."
}
"""


def _is_retryable(error: Exception) -> bool:
    return isinstance(error, AdvisoryError) and error.status in RETRYABLE_STATUS_CODES


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=MAX_ANALYSIS_ATTEMPTS,
        base_delay=INITIAL_RETRY_DELAY,
        jitter=RETRY_JITTER,
        is_retryable=_is_retryable,
    )


def parse_analysis(raw: str) -> Dict[str, Any]:
    """
    Parse the model's JSON answer, falling back to the first {...} block.

    Raises:
        AdvisoryError: If no JSON object with numeric scores can be found
    """
    try:
        analysis = json.loads(raw)
    except ValueError:
        match = JSON_BLOCK.search(raw or "")
        if not match:
            raise AdvisoryError("Invalid analysis payload.")
        try:
            analysis = json.loads(match.group(0))
        except ValueError as e:
            raise AdvisoryError("Invalid analysis payload.") from e

    if not isinstance(analysis, dict):
        raise AdvisoryError("Invalid analysis payload.")
    if not is_finite_number(analysis.get("cognitive_effort")) or not is_finite_number(
        analysis.get("human_likelihood")
    ):
        raise AdvisoryError("Invalid analysis format received from the analysis provider")
    return analysis


def advisory_http_status(error: AdvisoryError) -> Tuple[int, str]:
    """HTTP status and client message for a failed analysis."""
    if error.status in (429, 503, 504):
        return 503, "Analysis model is currently busy. Please retry in a few seconds."
    if error.status in (401, 403):
        return 502, "Analysis provider rejected the request. Check GOOGLE_API_KEY permissions."
    return 500, "Failed to analyze log"


class AnalysisClient:
    """
    Calls the Gemini generateContent REST endpoint.

    Args:
        settings: Provides the API key, model and endpoint
        http: Object with a requests-style post(); defaults to a requests.Session
        retry_policy: Overrides the default 3-attempt backoff
    """

    def __init__(
        self,
        settings: Settings,
        http: Optional[Any] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.settings = settings
        self.http = http or requests.Session()
        self.retry_policy = retry_policy or default_retry_policy()

    @property
    def url(self) -> str:
        return f"{self.settings.analysis_endpoint.rstrip('/')}/{self.settings.analysis_model}:generateContent"

    def _request_body(self, log: Any) -> Dict[str, Any]:
        return {
            "systemInstruction": {"parts": [{"text": FORENSIC_LINGUIST_PROMPT}]},
            "contents": [{
                "role": "user",
                "parts": [{"text": f"Analyze the following typing log:\n\n{json.dumps(log, indent=2)}"}],
            }],
            "generationConfig": {"responseMimeType": "application/json"},
        }

    def _generate_once(self, log: Any) -> str:
        try:
            response = self.http.post(
                self.url,
                json=self._request_body(log),
                headers={"x-goog-api-key": self.settings.analysis_api_key},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.Timeout as e:
            raise AdvisoryError("Analysis provider timed out", status=504) from e
        except requests.RequestException as e:
            raise AdvisoryError(f"Analysis provider unreachable: {e}", status=503) from e

        if response.status_code >= 400:
            raise AdvisoryError(
                f"Analysis provider returned HTTP {response.status_code}",
                status=response.status_code,
            )

        try:
            data = response.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AdvisoryError("No response text received from the analysis provider") from e
        if not isinstance(text, str) or not text:
            raise AdvisoryError("No response text received from the analysis provider")
        return text

    def generate(self, log: Any) -> str:
        """Raw model answer, retried on transient provider errors."""
        if not self.settings.analysis_api_key:
            raise AdvisoryError("Analysis provider API key is not configured")
        return self.retry_policy.call(lambda: self._generate_once(log), "advisory analysis")

    def analyze(
        self,
        log: Any,
        session_id: Optional[str] = None,
        store: Optional[Store] = None
    ) -> Dict[str, Any]:
        """
        Analyze a typing log, storing the result per session when possible.

        Raises:
            AdvisoryError: If the provider fails or answers unusably
        """
        if not log:
            raise ValidationError("log", "Missing log data")

        try:
            analysis = parse_analysis(self.generate(log))
        except AdvisoryError as e:
            audit_log.analysis_failed(session_id, e.status, str(e))
            raise

        if store is not None and isinstance(session_id, str) and session_id.strip():
            try:
                store.store_analysis(session_id.strip(), analysis, now_ms())
            except StoreUnavailableError as e:
                logger.warning("Analysis for %s not stored: %s", session_id, e)

        return analysis
