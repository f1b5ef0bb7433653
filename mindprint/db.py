"""
Database module for Mindprint.

Provides SQLite-based storage for telemetry sessions, ingested batches,
certificates, the certificate transparency log and advisory analysis results.

Every read-then-write (sequence advance, log append) runs inside a
`BEGIN IMMEDIATE` transaction, which takes the database write lock before
the precondition is read. Two writers can therefore never both observe the
same lastSequence or the same log tail.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS telemetry_sessions (
        session_id TEXT PRIMARY KEY,
        nonce TEXT NOT NULL,
        expires_at INTEGER NOT NULL,
        last_sequence INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL
    );""",
    """
    CREATE TABLE IF NOT EXISTS telemetry_batches (
        session_id TEXT NOT NULL,
        batch_sequence INTEGER NOT NULL,
        event_count INTEGER NOT NULL,
        events_json TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (session_id, batch_sequence)
    );""",
    """
    CREATE TABLE IF NOT EXISTS certificates (
        certificate_id TEXT PRIMARY KEY,
        session_id TEXT,
        payload_json TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );""",
    """
    CREATE TABLE IF NOT EXISTS certificate_log (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        certificate_id TEXT NOT NULL UNIQUE,
        prev_hash TEXT,
        entry_hash TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_certificate_log_created
    ON certificate_log(created_at, seq);""",
    """
    CREATE TABLE IF NOT EXISTS analysis_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        result_json TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_analysis_results_session
    ON analysis_results(session_id);""",
)

TABLES = (
    "telemetry_sessions",
    "telemetry_batches",
    "certificates",
    "certificate_log",
    "analysis_results",
)


class StoreTransaction:
    """Queries available inside an open write transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT session_id, nonce, expires_at, last_sequence, created_at "
            "FROM telemetry_sessions WHERE session_id=?",
            (session_id,)
        ).fetchone()
        return dict(row) if row else None

    def insert_batch(
        self,
        session_id: str,
        batch_sequence: int,
        events: List[Dict[str, Any]],
        created_at: int
    ) -> None:
        self.conn.execute(
            "INSERT INTO telemetry_batches(session_id, batch_sequence, event_count, events_json, created_at) "
            "VALUES(?,?,?,?,?)",
            (session_id, batch_sequence, len(events), json.dumps(events), created_at)
        )

    def advance_sequence(self, session_id: str, batch_sequence: int) -> None:
        self.conn.execute(
            "UPDATE telemetry_sessions SET last_sequence=? WHERE session_id=?",
            (batch_sequence, session_id)
        )

    def latest_log_entry(self) -> Optional[Dict[str, Any]]:
        """Most recent transparency log row by creation time."""
        row = self.conn.execute(
            "SELECT seq, certificate_id, prev_hash, entry_hash, created_at FROM certificate_log "
            "ORDER BY created_at DESC, seq DESC LIMIT 1"
        ).fetchone()
        return dict(row) if row else None

    def insert_certificate(
        self,
        certificate_id: str,
        payload: Dict[str, Any],
        created_at: int,
        session_id: Optional[str] = None
    ) -> None:
        self.conn.execute(
            "INSERT INTO certificates(certificate_id, session_id, payload_json, created_at) VALUES(?,?,?,?)",
            (certificate_id, session_id, json.dumps(payload), created_at)
        )

    def append_log_entry(
        self,
        certificate_id: str,
        prev_hash: Optional[str],
        entry_hash: str,
        created_at: int
    ) -> int:
        cur = self.conn.execute(
            "INSERT INTO certificate_log(certificate_id, prev_hash, entry_hash, created_at) VALUES(?,?,?,?)",
            (certificate_id, prev_hash, entry_hash, created_at)
        )
        return cur.lastrowid


class Store:
    """
    SQLite-backed durable store.

    Connections are thread-local and reused within a thread. The schema is
    created on construction.
    """

    def __init__(self, path: str):
        if not path:
            raise StoreUnavailableError("Database path is not configured")
        self.path = path
        self._local = threading.local()
        self.init_db()

    def connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread for performance.
        """
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            try:
                if self.path != ":memory:":
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                # Autocommit mode; transactions are opened explicitly
                conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None, timeout=10.0)
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                conn.execute("PRAGMA busy_timeout=10000;")
            except (sqlite3.Error, OSError) as e:
                raise StoreUnavailableError(f"Cannot open database at {self.path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """
        Write transaction holding the database write lock from the start.
        Commits on success, rolls back on any exception.
        """
        conn = self.connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Cannot begin transaction: {e}") from e
        try:
            yield StoreTransaction(conn)
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            conn.execute("ROLLBACK")
            raise StoreUnavailableError(f"Store operation failed: {e}") from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self.connection()
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Store read failed: {e}") from e

    def init_db(self) -> None:
        """
        Initialize database schema with proper indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self.transaction() as tx:
            for statement in SCHEMA:
                tx.conn.execute(statement)

    # ============================================================
    # Telemetry
    # ============================================================

    def create_session(self, session_id: str, nonce: str, expires_at: int, created_at: int) -> None:
        with self.transaction() as tx:
            tx.conn.execute(
                "INSERT INTO telemetry_sessions(session_id, nonce, expires_at, last_sequence, created_at) "
                "VALUES(?,?,?,0,?)",
                (session_id, nonce, expires_at, created_at)
            )

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._reading() as conn:
            return StoreTransaction(conn).get_session(session_id)

    def get_batches(self, session_id: str) -> List[Dict[str, Any]]:
        """All accepted batches of a session, in sequence order."""
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT batch_sequence, event_count, events_json, created_at FROM telemetry_batches "
                "WHERE session_id=? ORDER BY batch_sequence ASC",
                (session_id,)
            ).fetchall()
        return [
            {
                "batch_sequence": row["batch_sequence"],
                "event_count": row["event_count"],
                "events": json.loads(row["events_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def get_session_events(self, session_id: str) -> List[Dict[str, Any]]:
        """Concatenated events of every accepted batch, in sequence order."""
        events: List[Dict[str, Any]] = []
        for batch in self.get_batches(session_id):
            events.extend(batch["events"])
        return events

    # ============================================================
    # Certificates and transparency log
    # ============================================================

    def get_certificate(self, certificate_id: str) -> Optional[Dict[str, Any]]:
        """Stored certificate payload, or None."""
        with self._reading() as conn:
            row = conn.execute(
                "SELECT payload_json FROM certificates WHERE certificate_id=?",
                (certificate_id,)
            ).fetchone()
        return json.loads(row["payload_json"]) if row else None

    def get_log_entry(self, certificate_id: str) -> Optional[Dict[str, Any]]:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT seq, certificate_id, prev_hash, entry_hash, created_at FROM certificate_log "
                "WHERE certificate_id=?",
                (certificate_id,)
            ).fetchone()
        return dict(row) if row else None

    def latest_log_entry(self) -> Optional[Dict[str, Any]]:
        with self._reading() as conn:
            return StoreTransaction(conn).latest_log_entry()

    def export_log(self) -> List[Dict[str, Any]]:
        """Export the complete transparency log in append order."""
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT seq, certificate_id, prev_hash, entry_hash, created_at FROM certificate_log "
                "ORDER BY created_at ASC, seq ASC"
            ).fetchall()
        return [dict(row) for row in rows]

    # ============================================================
    # Advisory analysis
    # ============================================================

    def store_analysis(self, session_id: str, result: Dict[str, Any], created_at: int) -> None:
        with self.transaction() as tx:
            tx.conn.execute(
                "INSERT INTO analysis_results(session_id, result_json, created_at) VALUES(?,?,?)",
                (session_id, json.dumps(result), created_at)
            )

    # ============================================================
    # Metrics and Health
    # ============================================================

    def stats(self) -> Dict[str, int]:
        """Get database statistics for monitoring."""
        stats = {}
        with self._reading() as conn:
            for table in TABLES:
                cur = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
                stats[f"{table}_count"] = cur.fetchone()["cnt"]
        return stats

    def reset(self) -> None:
        """
        Reset the database for test isolation.
        Clears all tables but preserves schema.
        """
        with self.transaction() as tx:
            for table in TABLES:
                tx.conn.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        """Close the thread-local connection (for cleanup)."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None


def open_store(path: Optional[str]) -> Optional[Store]:
    """
    Open the configured store, or None when no database path is set.

    Callers that need durability pass the result to require_store.
    """
    if not path:
        logger.warning("No database configured; trust features are disabled")
        return None
    return Store(path)


def require_store(store: Optional[Store]) -> Store:
    """
    Raises:
        StoreUnavailableError: If no store is configured
    """
    if store is None:
        raise StoreUnavailableError("Database is not configured")
    return store
