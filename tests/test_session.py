"""
Telemetry session protocol: tokens, replay resistance and store effects.
"""

import threading
import unittest

from mindprint import (
    IntegrityError,
    SequenceError,
    StoreUnavailableError,
    ValidationError,
    init_telemetry_session,
    ingest_telemetry,
)
from mindprint.security import is_session_id
from mindprint.session import create_session_token, load_session_events, parse_session_token
from mindprint.util import b64url_encode

from telemetry_samples import TempStore, human_typing, keystroke, make_settings

NOW = 1_700_000_000_000


class SessionTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = TempStore()
        self.store = self.tmp.store
        self.settings = make_settings(database_path=self.tmp.path)
        self.grant = init_telemetry_session(self.store, self.settings, now=NOW)

    def tearDown(self):
        self.tmp.cleanup()

    def ingest(self, events=None, sequence=1, token=None, session_id=None, now=NOW + 1000, settings=None):
        return ingest_telemetry(
            self.store,
            settings or self.settings,
            events if events is not None else human_typing(10),
            session_id or self.grant.session_id,
            token if token is not None else self.grant.session_token,
            sequence,
            now=now,
        )

    def assertIntegrity(self, code, **kwargs):
        with self.assertRaises(IntegrityError) as ctx:
            self.ingest(**kwargs)
        self.assertEqual(ctx.exception.code, code)
        return ctx.exception

    def batch_count(self):
        return len(self.store.get_batches(self.grant.session_id))


class TestSessionTokens(SessionTestCase):

    def test_grant_shape(self):
        self.assertTrue(is_session_id(self.grant.session_id))
        self.assertEqual(self.grant.expires_at, "2023-11-14T23:43:20.000Z")
        self.assertEqual(
            set(self.grant.to_dict()), {"sessionId", "sessionToken", "expiresAt"}
        )

    def test_token_binds_stored_session(self):
        claims = parse_session_token(self.grant.session_token, self.settings.session_secret)
        stored = self.store.get_session(self.grant.session_id)
        self.assertEqual(claims["sid"], self.grant.session_id)
        self.assertEqual(claims["nonce"], stored["nonce"])
        self.assertEqual(len(claims["nonce"]), 24)
        self.assertEqual(claims["exp"], NOW + self.settings.session_ttl_ms)
        self.assertEqual(stored["expires_at"], claims["exp"])
        self.assertEqual(stored["last_sequence"], 0)

    def test_wrong_secret_rejected(self):
        self.assertIsNone(parse_session_token(self.grant.session_token, "not-the-secret"))

    def test_malformed_tokens(self):
        secret = self.settings.session_secret
        for token in (None, 42, "", "abc", "a.b.c", ".sig", "!!!.sig", b64url_encode("[1]") + ".sig"):
            self.assertIsNone(parse_session_token(token, secret), token)

    def test_tampered_claims_rejected(self):
        claims = parse_session_token(self.grant.session_token, self.settings.session_secret)
        signature = self.grant.session_token.split(".")[1]
        forged = dict(claims, exp=claims["exp"] + 10 ** 9)
        from mindprint.canonicalization import canonicalize

        token = b64url_encode(canonicalize(forged)) + "." + signature
        self.assertIsNone(parse_session_token(token, self.settings.session_secret))

    def test_missing_claim_rejected(self):
        token = create_session_token({"sid": "sess-x", "nonce": "n"}, self.settings.session_secret)
        self.assertIsNone(parse_session_token(token, self.settings.session_secret))

    def test_init_requires_store(self):
        with self.assertRaises(StoreUnavailableError):
            init_telemetry_session(None, self.settings)


class TestIngest(SessionTestCase):

    def test_accepts_batch(self):
        result = self.ingest(human_typing(10))
        self.assertEqual(result.to_dict(), {
            "sessionId": self.grant.session_id,
            "batchSequence": 1,
            "acceptedEvents": 10,
        })
        self.assertEqual(self.store.get_session(self.grant.session_id)["last_sequence"], 1)
        self.assertEqual(len(load_session_events(self.store, self.grant.session_id)), 10)

    def test_sequence_gaps_allowed(self):
        self.ingest(sequence=1)
        self.ingest(sequence=5)
        self.assertEqual(self.store.get_session(self.grant.session_id)["last_sequence"], 5)

    def test_replayed_batch_rejected(self):
        self.ingest(sequence=1)
        with self.assertRaises(SequenceError) as ctx:
            self.ingest(sequence=1)
        self.assertEqual(ctx.exception.last_sequence, 1)
        self.assertEqual(self.batch_count(), 1)

    def test_out_of_order_batch_rejected(self):
        self.ingest(sequence=3)
        with self.assertRaises(SequenceError):
            self.ingest(sequence=2)
        self.assertEqual(self.store.get_session(self.grant.session_id)["last_sequence"], 3)

    def test_events_read_back_in_sequence_order(self):
        self.ingest([keystroke(1, key="a")], sequence=1)
        self.ingest([keystroke(2, key="b")], sequence=2)
        keys = [e["key"] for e in self.store.get_session_events(self.grant.session_id)]
        self.assertEqual(keys, ["a", "b"])

    def test_missing_credentials(self):
        self.assertIntegrity(IntegrityError.MISSING_CREDENTIALS, token="")

    def test_token_signed_with_other_secret(self):
        other = make_settings(session_secret="another-secret")
        token = init_telemetry_session(self.store, other, now=NOW).session_token
        self.assertIntegrity(IntegrityError.INVALID_TOKEN, token=token)
        self.assertEqual(self.batch_count(), 0)

    def test_token_for_other_session(self):
        other = init_telemetry_session(self.store, self.settings, now=NOW)
        self.assertIntegrity(IntegrityError.INVALID_TOKEN, token=other.session_token)

    def test_expired_token(self):
        self.assertIntegrity(
            IntegrityError.TOKEN_EXPIRED, now=NOW + self.settings.session_ttl_ms
        )

    def test_unknown_session(self):
        token = create_session_token(
            {"sid": "sess-" + "0" * 32, "nonce": "ab" * 12, "exp": NOW + 60000},
            self.settings.session_secret,
        )
        self.assertIntegrity(
            IntegrityError.SESSION_NOT_FOUND, token=token, session_id="sess-" + "0" * 32
        )

    def test_nonce_mismatch(self):
        token = create_session_token(
            {"sid": self.grant.session_id, "nonce": "ff" * 12, "exp": NOW + 60000},
            self.settings.session_secret,
        )
        self.assertIntegrity(IntegrityError.NONCE_MISMATCH, token=token)

    def test_session_expired_before_token(self):
        stored = self.store.get_session(self.grant.session_id)
        token = create_session_token(
            {"sid": self.grant.session_id, "nonce": stored["nonce"], "exp": stored["expires_at"] + 60000},
            self.settings.session_secret,
        )
        self.assertIntegrity(
            IntegrityError.SESSION_EXPIRED, token=token, now=stored["expires_at"] + 1
        )

    def test_invalid_batch_sequence(self):
        for sequence in (0, -1, "1", True, 1.5, None):
            with self.assertRaises(ValidationError):
                self.ingest(sequence=sequence)
        self.assertEqual(self.batch_count(), 0)

    def test_integral_float_sequence_accepted(self):
        self.assertEqual(self.ingest(sequence=2.0).batch_sequence, 2)

    def test_invalid_events(self):
        with self.assertRaises(ValidationError):
            self.ingest(events=[])
        with self.assertRaises(ValidationError):
            self.ingest(events=[keystroke(5), keystroke(1)])
        with self.assertRaises(ValidationError):
            self.ingest(events=[{"type": "keystroke", "timestamp": 1}])
        self.assertEqual(self.batch_count(), 0)

    def test_batch_size_limit(self):
        settings = self.settings.with_overrides(max_batch_events=3)
        with self.assertRaises(ValidationError):
            self.ingest(events=[keystroke(i) for i in range(4)], settings=settings)

    def test_ingest_requires_store(self):
        with self.assertRaises(StoreUnavailableError):
            ingest_telemetry(
                None, self.settings, human_typing(3), self.grant.session_id,
                self.grant.session_token, 1, now=NOW,
            )

    def test_concurrent_duplicates_accept_once(self):
        outcomes = []
        lock = threading.Lock()

        def worker():
            try:
                self.ingest(sequence=1)
                outcome = "accepted"
            except SequenceError:
                outcome = "rejected"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(outcomes.count("accepted"), 1)
        self.assertEqual(outcomes.count("rejected"), 5)
        self.assertEqual(self.batch_count(), 1)


if __name__ == "__main__":
    unittest.main()
