"""
Advisory analysis client, driven through a fake HTTP session.
"""

import json
import unittest

import requests

from mindprint import AdvisoryError, ValidationError
from mindprint.analysis import (
    AnalysisClient,
    advisory_http_status,
    default_retry_policy,
    parse_analysis,
)

from telemetry_samples import TempStore, human_typing, make_settings, stored_analyses

ANALYSIS = {
    "cognitive_effort": 62,
    "human_likelihood": 91,
    "events": [{"type": "pause", "timestamp": 5400, "description": "Pause at sentence end"}],
    "analysis_summary": "Steady typing with natural pauses.",
}


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


def gemini_answer(text):
    return FakeResponse(200, {"candidates": [{"content": {"parts": [{"text": text}]}}]})


class FakeHttp:
    """requests.Session stand-in replaying scripted responses or errors."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_client(*outcomes, api_key="test-api-key"):
    http = FakeHttp(*outcomes)
    policy = default_retry_policy()
    policy.sleep = lambda _: None
    client = AnalysisClient(make_settings(analysis_api_key=api_key), http=http, retry_policy=policy)
    return client, http


class TestParseAnalysis(unittest.TestCase):

    def test_plain_json(self):
        self.assertEqual(parse_analysis(json.dumps(ANALYSIS)), ANALYSIS)

    def test_json_inside_prose(self):
        raw = "Here is the analysis:\n```json\n" + json.dumps(ANALYSIS) + "\n```"
        self.assertEqual(parse_analysis(raw), ANALYSIS)

    def test_missing_scores(self):
        with self.assertRaises(AdvisoryError):
            parse_analysis(json.dumps({"cognitive_effort": "high", "human_likelihood": 80}))
        with self.assertRaises(AdvisoryError):
            parse_analysis("[1, 2, 3]")
        with self.assertRaises(AdvisoryError):
            parse_analysis("no json at all")


class TestAnalysisClient(unittest.TestCase):

    def test_success(self):
        client, http = make_client(gemini_answer(json.dumps(ANALYSIS)))
        self.assertEqual(client.analyze(human_typing(5)), ANALYSIS)

        call = http.calls[0]
        self.assertTrue(call["url"].endswith("/gemini-1.5-flash:generateContent"))
        self.assertEqual(call["headers"], {"x-goog-api-key": "test-api-key"})
        self.assertEqual(call["timeout"], 30)
        self.assertEqual(call["json"]["generationConfig"], {"responseMimeType": "application/json"})
        self.assertIn("Forensic Linguist", call["json"]["systemInstruction"]["parts"][0]["text"])

    def test_retries_busy_provider(self):
        client, http = make_client(
            FakeResponse(503), FakeResponse(429), gemini_answer(json.dumps(ANALYSIS))
        )
        self.assertEqual(client.analyze(human_typing(5)), ANALYSIS)
        self.assertEqual(len(http.calls), 3)

    def test_retries_network_errors(self):
        client, http = make_client(
            requests.Timeout("slow"),
            requests.ConnectionError("down"),
            gemini_answer(json.dumps(ANALYSIS)),
        )
        self.assertEqual(client.analyze(human_typing(5)), ANALYSIS)
        self.assertEqual(len(http.calls), 3)

    def test_gives_up_after_three_attempts(self):
        client, http = make_client(FakeResponse(503), FakeResponse(503), FakeResponse(503))
        with self.assertRaises(AdvisoryError) as ctx:
            client.analyze(human_typing(5))
        self.assertEqual(ctx.exception.status, 503)
        self.assertEqual(len(http.calls), 3)

    def test_rejection_not_retried(self):
        client, http = make_client(FakeResponse(401))
        with self.assertRaises(AdvisoryError) as ctx:
            client.analyze(human_typing(5))
        self.assertEqual(ctx.exception.status, 401)
        self.assertEqual(len(http.calls), 1)

    def test_empty_answer(self):
        client, _ = make_client(FakeResponse(200, {"candidates": []}))
        with self.assertRaises(AdvisoryError):
            client.analyze(human_typing(5))

    def test_unusable_answer_not_retried(self):
        client, http = make_client(gemini_answer("I cannot help with that."))
        with self.assertRaises(AdvisoryError):
            client.analyze(human_typing(5))
        self.assertEqual(len(http.calls), 1)

    def test_missing_api_key(self):
        client, http = make_client(api_key=None)
        with self.assertRaises(AdvisoryError):
            client.analyze(human_typing(5))
        self.assertEqual(http.calls, [])

    def test_missing_log(self):
        client, http = make_client()
        for log in (None, [], ""):
            with self.assertRaises(ValidationError):
                client.analyze(log)
        self.assertEqual(http.calls, [])

    def test_result_stored_per_session(self):
        tmp = TempStore()
        self.addCleanup(tmp.cleanup)
        client, _ = make_client(gemini_answer(json.dumps(ANALYSIS)))
        client.analyze(human_typing(5), session_id=" sess-abc ", store=tmp.store)
        self.assertEqual(stored_analyses(tmp.store, "sess-abc"), [ANALYSIS])


class TestAdvisoryStatus(unittest.TestCase):

    def test_mapping(self):
        self.assertEqual(advisory_http_status(AdvisoryError("x", status=429))[0], 503)
        self.assertEqual(advisory_http_status(AdvisoryError("x", status=504))[0], 503)
        self.assertEqual(advisory_http_status(AdvisoryError("x", status=403))[0], 502)
        self.assertEqual(advisory_http_status(AdvisoryError("x", status=500))[0], 500)
        self.assertEqual(advisory_http_status(AdvisoryError("x"))[0], 500)


if __name__ == "__main__":
    unittest.main()
