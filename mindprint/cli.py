#!/usr/bin/env python3
"""
Mindprint Command Line Interface

Usage:
    mindprint classify --events <file> [--content-length N]
    mindprint init-db
    mindprint verify --id <certificate id>
    mindprint verify-payload --file <file>
    mindprint audit-log
    mindprint export-log [--output <file>]
    mindprint digest --file <file>

Secrets and the database path come from the environment (see
mindprint.config); --database overrides the path.
"""

import argparse
import json
import sys
from typing import List, Optional


def load_json(path: str):
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def save_json(data, path: str):
    """Save JSON to file."""
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


def _settings(args):
    from mindprint.config import Settings

    settings = Settings.from_env()
    if args.database:
        settings = settings.with_overrides(database_path=args.database)
    return settings


def _store(settings):
    from mindprint.db import require_store, open_store

    return require_store(open_store(settings.database_path))


def cmd_classify(args):
    """Classify a telemetry log."""
    from mindprint.classifier import validate_session

    data = load_json(args.events)
    events = data.get("events", []) if isinstance(data, dict) else data
    content_length = args.content_length
    if content_length is None and isinstance(data, dict):
        content_length = data.get("contentLength", 0)

    result = validate_session(events, content_length or 0)
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def cmd_init_db(args):
    """Create the database schema."""
    settings = _settings(args)
    store = _store(settings)
    print(f"Database ready at {store.path}")
    print(json.dumps(store.stats(), indent=2))
    return 0


def _report_verification(label: str, result) -> int:
    if result.is_valid:
        print(f"✓ {label} VALID")
        return 0
    print(f"✗ {label} INVALID: {result.reason}")
    return 1


def cmd_verify(args):
    """Verify a stored certificate by id."""
    from mindprint.verifier import verify_certificate

    settings = _settings(args)
    result = verify_certificate(_store(settings), settings, args.id)
    return _report_verification(args.id, result)


def cmd_verify_payload(args):
    """Verify a certificate payload file against the transparency log."""
    from mindprint.verifier import verify_certificate_payload

    settings = _settings(args)
    payload = load_json(args.file)
    if not isinstance(payload, dict):
        print("✗ INVALID: payload must be a JSON object")
        return 1
    result = verify_certificate_payload(_store(settings), settings, payload)
    return _report_verification(str(payload.get("id", args.file)), result)


def cmd_audit_log(args):
    """Walk the whole transparency log."""
    from mindprint.verifier import audit_log_chain

    report = audit_log_chain(_store(_settings(args)))
    if report.is_valid:
        print(f"✓ Transparency log intact ({report.entries} entries)")
        return 0
    print(f"✗ Transparency log has {len(report.errors)} problem(s):")
    for error in report.errors:
        print(f"  - {error}")
    return 1


def cmd_export_log(args):
    """Export the transparency log."""
    from mindprint.verifier import export_certificate_log

    entries = export_certificate_log(_store(_settings(args)))
    if args.output:
        save_json(entries, args.output)
        print(f"{len(entries)} entries saved to: {args.output}")
    else:
        print(json.dumps(entries, indent=2))
    return 0


def cmd_digest(args):
    """Compute the digest a proof would bind for a file."""
    from mindprint.certificate import normalize_replay
    from mindprint.hashing import artifact_digest, sha256_hex, telemetry_digest
    from mindprint.canonicalization import canonicalize

    with open(args.file, 'r', encoding='utf-8') as f:
        content = f.read()

    try:
        data = json.loads(content)
    except ValueError:
        print(f"artifactSha256: {artifact_digest(content)}")
        return 0

    if isinstance(data, list):
        print(f"telemetryDigestSha256: {telemetry_digest(normalize_replay(data))}")
    elif isinstance(data, str):
        print(f"artifactSha256: {artifact_digest(data)}")
    else:
        print(f"sha256: {sha256_hex(canonicalize(data))}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Mindprint CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mindprint classify -e session.json -n 420
  mindprint init-db
  mindprint verify --id mp-1a2b3c4d5e6f
  mindprint verify-payload -f certificate.json
  mindprint audit-log
  mindprint export-log -o log.json
  mindprint digest -f replay.json
        """
    )
    parser.add_argument("--database", help="SQLite database path (overrides MINDPRINT_DATABASE_PATH)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # classify
    classify_parser = subparsers.add_parser("classify", help="Classify a telemetry log")
    classify_parser.add_argument("-e", "--events", required=True, help="Events JSON file (list or {events, contentLength})")
    classify_parser.add_argument("-n", "--content-length", type=int, help="Current document length")

    # init-db
    subparsers.add_parser("init-db", help="Create the database schema")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a stored certificate")
    verify_parser.add_argument("-i", "--id", required=True, help="Certificate id")

    # verify-payload
    payload_parser = subparsers.add_parser("verify-payload", help="Verify a certificate payload file")
    payload_parser.add_argument("-f", "--file", required=True, help="Certificate payload JSON file")

    # audit-log
    subparsers.add_parser("audit-log", help="Audit the transparency log chain")

    # export-log
    export_parser = subparsers.add_parser("export-log", help="Export the transparency log")
    export_parser.add_argument("-o", "--output", help="Output file")

    # digest
    digest_parser = subparsers.add_parser("digest", help="Compute a text or replay digest")
    digest_parser.add_argument("-f", "--file", required=True, help="Text, replay JSON or JSON file")

    args = parser.parse_args(argv)

    commands = {
        "classify": cmd_classify,
        "init-db": cmd_init_db,
        "verify": cmd_verify,
        "verify-payload": cmd_verify_payload,
        "audit-log": cmd_audit_log,
        "export-log": cmd_export_log,
        "digest": cmd_digest,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 2

    from mindprint.errors import MindprintError

    try:
        return command(args)
    except MindprintError as e:
        print(f"✗ {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
