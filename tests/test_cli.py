import json
import re
from pathlib import Path

import pytest

from mindprint.certificate import create_certificate_record
from mindprint.cli import main
from mindprint.db import Store
from mindprint.hashing import artifact_digest

from telemetry_samples import CERTIFICATE_SECRET, SESSION_SECRET, human_typing, make_settings


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    monkeypatch.setenv("MINDPRINT_SESSION_SECRET", SESSION_SECRET)
    monkeypatch.setenv("MINDPRINT_CERTIFICATE_SECRET", CERTIFICATE_SECRET)
    monkeypatch.delenv("MINDPRINT_ENV", raising=False)
    return str(tmp_path / "cli.db")


@pytest.fixture
def issued(db_path):
    store = Store(db_path)
    settings = make_settings(database_path=db_path)
    payloads = [
        create_certificate_record(store, settings, {"text": f"essay {n}"}, now=1_700_000_000_000 + n)
        for n in range(3)
    ]
    yield store, payloads
    store.close()


def test_no_command_prints_help(capsys):
    assert main([]) == 2
    assert "Mindprint CLI" in capsys.readouterr().out


def test_classify(tmp_path, capsys):
    events_file = tmp_path / "events.json"
    events_file.write_text(json.dumps({"events": human_typing(), "contentLength": 101}))

    assert main(["classify", "-e", str(events_file)]) == 0
    result = json.loads(capsys.readouterr().out)
    assert result["status"] == "VERIFIED_HUMAN"
    assert result["metrics"]["netContentLength"] == 101


def test_classify_plain_list(tmp_path, capsys):
    events_file = tmp_path / "events.json"
    events_file.write_text(json.dumps(human_typing(4)))

    assert main(["classify", "-e", str(events_file), "-n", "4"]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == "INSUFFICIENT_DATA"


def test_init_db(db_path, capsys):
    assert main(["--database", db_path, "init-db"]) == 0
    out = capsys.readouterr().out
    assert "Database ready" in out
    assert '"certificate_log_count": 0' in out


def test_verify(db_path, issued, capsys):
    _, payloads = issued
    assert main(["--database", db_path, "verify", "-i", payloads[1].id]) == 0
    assert "VALID" in capsys.readouterr().out

    assert main(["--database", db_path, "verify", "-i", "mp-000000000000"]) == 1
    assert "Certificate not found." in capsys.readouterr().out


def test_verify_with_wrong_secret(db_path, issued, monkeypatch, capsys):
    _, payloads = issued
    monkeypatch.setenv("MINDPRINT_CERTIFICATE_SECRET", "some-other-secret")
    assert main(["--database", db_path, "verify", "-i", payloads[0].id]) == 1
    assert "Invalid proof signature." in capsys.readouterr().out


def test_verify_payload(db_path, issued, tmp_path, capsys):
    _, payloads = issued
    payload_file = tmp_path / "certificate.json"
    data = payloads[2].to_dict()
    payload_file.write_text(json.dumps(data))
    assert main(["--database", db_path, "verify-payload", "-f", str(payload_file)]) == 0

    data["text"] = "changed"
    payload_file.write_text(json.dumps(data))
    assert main(["--database", db_path, "verify-payload", "-f", str(payload_file)]) == 1
    assert "digest mismatch" in capsys.readouterr().out

    payload_file.write_text("[]")
    assert main(["--database", db_path, "verify-payload", "-f", str(payload_file)]) == 1


def test_audit_log(db_path, issued, capsys):
    store, payloads = issued
    assert main(["--database", db_path, "audit-log"]) == 0
    assert "3 entries" in capsys.readouterr().out

    store.connection().execute(
        "UPDATE certificate_log SET prev_hash=NULL WHERE certificate_id=?", (payloads[2].id,)
    )
    assert main(["--database", db_path, "audit-log"]) == 1
    assert payloads[2].id in capsys.readouterr().out


def test_export_log(db_path, issued, tmp_path, capsys):
    _, payloads = issued
    out_file = tmp_path / "log.json"
    assert main(["--database", db_path, "export-log", "-o", str(out_file)]) == 0
    entries = json.loads(out_file.read_text())
    assert [e["certificateId"] for e in entries] == [p.id for p in payloads]

    assert main(["--database", db_path, "export-log"]) == 0
    capsys.readouterr()


def test_digest(tmp_path, capsys):
    text_file = tmp_path / "essay.txt"
    text_file.write_text("Plain text essay.", encoding="utf-8")
    assert main(["digest", "-f", str(text_file)]) == 0
    assert capsys.readouterr().out.strip() == f"artifactSha256: {artifact_digest('Plain text essay.')}"

    replay_file = tmp_path / "replay.json"
    replay_file.write_text(json.dumps([]))
    assert main(["digest", "-f", str(replay_file)]) == 0
    assert capsys.readouterr().out.startswith("telemetryDigestSha256: ")


def test_store_errors_reported(tmp_path, capsys, monkeypatch):
    monkeypatch.setenv("MINDPRINT_DATABASE_PATH", "")
    assert main(["audit-log"]) == 1
    assert "StoreUnavailableError" in capsys.readouterr().err


def test_package_readme():
    root = Path(__file__).resolve().parent.parent
    match = re.search(r'^readme = "([^"]+)"$', (root / "pyproject.toml").read_text(), re.MULTILINE)
    assert match.group(1) == "README.md"
    assert (root / "README.md").read_text().startswith("# Mindprint")
