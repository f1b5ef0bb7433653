"""
Certificate verification and transparency log audits.

Each tamper case changes one thing about an issued certificate, or about
the log row backing it, and expects the matching failure reason.
"""

import copy
import json
import threading
import unittest

from mindprint import (
    StoreUnavailableError,
    audit_log_chain,
    create_certificate_record,
    verify_certificate,
    verify_certificate_payload,
    verify_exported_chain,
)
from mindprint.certificate import build_unsigned_proof
from mindprint.hashing import artifact_digest
from mindprint.signing import sign_payload
from mindprint.verifier import (
    REASON_BAD_SIGNATURE,
    REASON_DIGEST_MISMATCH,
    REASON_LOG_ENTRY_MISSING,
    REASON_LOG_HASH_MISMATCH,
    REASON_MISSING_PROOF,
    REASON_NOT_FOUND,
    REASON_PREDECESSOR_MISMATCH,
    export_certificate_log,
)

from telemetry_samples import CERTIFICATE_SECRET, TempStore, make_settings, replay_operations

NOW = 1_700_000_000_000


class VerifierTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = TempStore()
        self.store = self.tmp.store
        self.settings = make_settings(database_path=self.tmp.path)

    def tearDown(self):
        self.tmp.cleanup()

    def issue(self, now=NOW, **fields):
        data = {
            "text": "An essay written in one sitting.",
            "score": 88,
            "replay": replay_operations(),
            "validationStatus": "VERIFIED_HUMAN",
            "riskScore": 4,
            "confidence": 0.91,
        }
        data.update(fields)
        return create_certificate_record(self.store, self.settings, data, now=now)

    def verify(self, payload, settings=None):
        return verify_certificate_payload(self.store, settings or self.settings, payload)

    def sql(self, statement, params=()):
        self.store.connection().execute(statement, params)


class TestVerifyPayload(VerifierTestCase):

    def setUp(self):
        super().setUp()
        self.payload = self.issue().to_dict()

    def tampered(self):
        return copy.deepcopy(self.payload)

    def assertInvalid(self, payload, reason, settings=None):
        result = self.verify(payload, settings)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.reason, reason)

    def test_valid(self):
        result = self.verify(self.payload)
        self.assertTrue(result.is_valid)
        self.assertIsNone(result.reason)
        self.assertEqual(result.to_dict(), {"isValid": True})

    def test_display_fields_not_bound(self):
        payload = self.tampered()
        payload["title"] = "Another title"
        payload["score"] = 12
        payload["sparkline"] = [9, 9, 9]
        self.assertTrue(self.verify(payload).is_valid)

    def test_missing_proof(self):
        payload = self.tampered()
        payload["proof"] = None
        self.assertInvalid(payload, REASON_MISSING_PROOF)

        payload["proof"] = {"version": "v1", "artifactSha256": "x"}
        self.assertInvalid(payload, REASON_MISSING_PROOF)

    def test_text_changed(self):
        payload = self.tampered()
        payload["text"] += " (edited)"
        self.assertInvalid(payload, REASON_DIGEST_MISMATCH)

    def test_replay_changed(self):
        payload = self.tampered()
        payload["replay"][0]["text"] = "Goodbye"
        self.assertInvalid(payload, REASON_DIGEST_MISMATCH)

    def test_replay_dropped(self):
        payload = self.tampered()
        payload["replay"] = []
        self.assertInvalid(payload, REASON_DIGEST_MISMATCH)

    def test_verdict_changed(self):
        payload = self.tampered()
        payload["proof"]["validationStatus"] = "SUSPICIOUS"
        self.assertInvalid(payload, REASON_BAD_SIGNATURE)

    def test_risk_changed(self):
        payload = self.tampered()
        payload["proof"]["riskScore"] = 0
        self.assertInvalid(payload, REASON_BAD_SIGNATURE)

    def test_scores_changed_within_rounding(self):
        payload = self.tampered()
        payload["proof"]["riskScore"] = 4.4
        self.assertInvalid(payload, REASON_BAD_SIGNATURE)

        payload = self.tampered()
        payload["proof"]["confidence"] = 0.9104
        self.assertInvalid(payload, REASON_BAD_SIGNATURE)

    def test_issued_at_changed(self):
        payload = self.tampered()
        payload["issuedAt"] = "2020-01-01T00:00:00.000Z"
        self.assertInvalid(payload, REASON_BAD_SIGNATURE)

    def test_id_changed(self):
        payload = self.tampered()
        payload["id"] = "mp-000000000000"
        self.assertInvalid(payload, REASON_BAD_SIGNATURE)

    def test_signature_changed(self):
        payload = self.tampered()
        payload["proof"]["signature"] = "A" * 43
        self.assertInvalid(payload, REASON_BAD_SIGNATURE)

    def test_other_secret(self):
        other = make_settings(certificate_secret="rotated-secret")
        self.assertInvalid(self.tampered(), REASON_BAD_SIGNATURE, settings=other)

    def test_consistent_rewrite_caught_by_log(self):
        """Text, digests and signature rewritten by someone holding the secret."""
        payload = self.tampered()
        payload["text"] = "Text the author never wrote."
        proof = payload["proof"]
        unsigned = build_unsigned_proof(
            payload["id"], payload["text"], payload["replay"], payload["issuedAt"],
            proof["validationStatus"], proof["riskScore"], proof["confidence"],
        )
        proof["artifactSha256"] = artifact_digest(payload["text"])
        proof["signature"] = sign_payload(unsigned, CERTIFICATE_SECRET)
        self.assertInvalid(payload, REASON_LOG_HASH_MISMATCH)

    def test_log_hash_in_proof_changed(self):
        payload = self.tampered()
        payload["proof"]["logEntryHash"] = "0" * 64
        self.assertInvalid(payload, REASON_LOG_HASH_MISMATCH)

    def test_log_row_rewritten(self):
        self.sql("UPDATE certificate_log SET entry_hash=? WHERE certificate_id=?", ("f" * 64, self.payload["id"]))
        self.assertInvalid(self.tampered(), REASON_LOG_HASH_MISMATCH)

    def test_log_predecessor_rewritten(self):
        self.sql("UPDATE certificate_log SET prev_hash=? WHERE certificate_id=?", ("e" * 64, self.payload["id"]))
        self.assertInvalid(self.tampered(), REASON_PREDECESSOR_MISMATCH)

    def test_log_row_deleted(self):
        self.sql("DELETE FROM certificate_log WHERE certificate_id=?", (self.payload["id"],))
        self.assertInvalid(self.tampered(), REASON_LOG_ENTRY_MISSING)

    def test_certificate_from_another_log(self):
        elsewhere = TempStore()
        self.addCleanup(elsewhere.cleanup)
        foreign = create_certificate_record(
            elsewhere.store, self.settings, {"text": "issued elsewhere"}, now=NOW
        )
        self.assertInvalid(foreign.to_dict(), REASON_LOG_ENTRY_MISSING)

    def test_requires_store(self):
        with self.assertRaises(StoreUnavailableError):
            verify_certificate_payload(None, self.settings, self.payload)


class TestVerifyById(VerifierTestCase):

    def test_stored_certificate(self):
        payload = self.issue()
        self.assertTrue(verify_certificate(self.store, self.settings, payload.id).is_valid)

    def test_id_is_sanitised(self):
        payload = self.issue()
        self.assertTrue(verify_certificate(self.store, self.settings, f" {payload.id}!").is_valid)

    def test_unknown(self):
        result = verify_certificate(self.store, self.settings, "mp-000000000000")
        self.assertEqual(result.to_dict(), {"isValid": False, "reason": REASON_NOT_FOUND})
        self.assertFalse(verify_certificate(self.store, self.settings, None).is_valid)

    def test_stored_payload_edited(self):
        payload = self.issue()
        stored = payload.to_dict()
        stored["text"] = "rewritten in the database"
        self.sql(
            "UPDATE certificates SET payload_json=? WHERE certificate_id=?",
            (json.dumps(stored), payload.id),
        )
        result = verify_certificate(self.store, self.settings, payload.id)
        self.assertEqual(result.reason, REASON_DIGEST_MISMATCH)


class TestLogAudit(VerifierTestCase):

    def setUp(self):
        super().setUp()
        self.payloads = [self.issue(now=NOW + i) for i in range(4)]

    def test_intact_chain(self):
        report = audit_log_chain(self.store)
        self.assertTrue(report.is_valid)
        self.assertEqual(report.entries, 4)
        self.assertEqual(report.to_dict(), {"isValid": True, "entries": 4, "errors": []})

    def test_export_order_and_linkage(self):
        entries = export_certificate_log(self.store)
        self.assertEqual([e["certificateId"] for e in entries], [p.id for p in self.payloads])
        self.assertIsNone(entries[0]["prevHash"])
        for previous, entry in zip(entries, entries[1:]):
            self.assertEqual(entry["prevHash"], previous["entryHash"])
        self.assertEqual(entries[0]["createdAt"], "2023-11-14T22:13:20.000Z")
        self.assertEqual(set(entries[0]), {"seq", "certificateId", "prevHash", "entryHash", "createdAt"})

    def test_removed_entry_detected(self):
        self.sql("DELETE FROM certificate_log WHERE certificate_id=?", (self.payloads[1].id,))
        report = audit_log_chain(self.store)
        self.assertFalse(report.is_valid)
        self.assertTrue(any(self.payloads[2].id in error for error in report.errors))

    def test_relinked_entry_detected(self):
        self.sql(
            "UPDATE certificate_log SET prev_hash=? WHERE certificate_id=?",
            (self.payloads[0].proof.log_entry_hash, self.payloads[2].id),
        )
        report = audit_log_chain(self.store)
        self.assertFalse(report.is_valid)

    def test_missing_certificate_detected(self):
        self.sql("DELETE FROM certificates WHERE certificate_id=?", (self.payloads[3].id,))
        report = audit_log_chain(self.store)
        self.assertEqual(len(report.errors), 1)

    def test_exported_chain_offline(self):
        entries = export_certificate_log(self.store)
        self.assertTrue(verify_exported_chain(entries).is_valid)

        reordered = [entries[1], entries[0]] + entries[2:]
        self.assertFalse(verify_exported_chain(reordered).is_valid)
        self.assertFalse(verify_exported_chain(entries[:1] + entries[2:]).is_valid)

    def test_exported_chain_with_signatures(self):
        entries = export_certificate_log(self.store)
        for entry, payload in zip(entries, self.payloads):
            entry["signature"] = payload.proof.signature
        self.assertTrue(verify_exported_chain(entries).is_valid)

        entries[2]["signature"] = self.payloads[0].proof.signature
        report = verify_exported_chain(entries)
        self.assertEqual(len(report.errors), 1)

    def test_concurrent_issuance_keeps_single_chain(self):
        errors = []

        def worker(n):
            try:
                self.issue(now=NOW + 100, text=f"concurrent essay {n}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        report = audit_log_chain(self.store)
        self.assertTrue(report.is_valid, report.errors)
        self.assertEqual(report.entries, 10)
        for entry in export_certificate_log(self.store):
            self.assertTrue(verify_certificate(self.store, self.settings, entry["certificateId"]).is_valid)


if __name__ == "__main__":
    unittest.main()
