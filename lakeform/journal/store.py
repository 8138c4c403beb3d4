"""
Run Journal — append-only, hash-chained record of every apply and destroy.

Behavioral Contract:
- Append-only. No record is ever modified or deleted.
- Each record is hashed and chained to the previous record (tamper-evident).
- Every record answers: what was planned, what was applied, what failed and why.
- Queryable by run, recency and failure.
"""

import hashlib
import json
import sqlite3
import threading
from typing import List, Optional

from lakeform.models.journal import RunRecord


def _signature(record: RunRecord) -> str:
    record_dict = record.model_dump(mode="json")
    # The signature is what we're computing
    record_dict["signature"] = ""
    record_bytes = json.dumps(record_dict, sort_keys=True, default=str).encode()
    return hashlib.sha256(record_bytes).hexdigest()


class RunJournal:
    """Append-only run journal on SQLite."""

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the journal table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                stack TEXT,
                success INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                finished_at TEXT NOT NULL,
                signature TEXT NOT NULL,
                prior_record_hash TEXT,
                record_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_run_id ON runs(run_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_success ON runs(success)
        """)
        self._conn.commit()

    def append(self, record: RunRecord) -> RunRecord:
        """Sign ``record``, chain it to the latest record and store it."""
        with self._lock:
            record.prior_record_hash = self._get_latest_hash()
            record.signature = _signature(record)
            full_json = json.dumps(record.model_dump(mode="json"), default=str)

            self._conn.execute(
                """
                INSERT INTO runs (
                    id, run_id, operation, stack, success,
                    started_at, finished_at, signature, prior_record_hash, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.run_id,
                    record.operation,
                    record.stack,
                    int(record.success),
                    record.started_at.isoformat(),
                    record.finished_at.isoformat(),
                    record.signature,
                    record.prior_record_hash,
                    full_json,
                ),
            )
            self._conn.commit()
        return record

    def _get_latest_hash(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT signature FROM runs ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def _deserialize(self, row: sqlite3.Row) -> RunRecord:
        return RunRecord.model_validate_json(row["record_json"])

    def get_by_id(self, record_id: str) -> Optional[RunRecord]:
        row = self._conn.execute(
            "SELECT record_json FROM runs WHERE id = ?", (record_id,)
        ).fetchone()
        return self._deserialize(row) if row else None

    def get_by_run(self, run_id: str) -> Optional[RunRecord]:
        row = self._conn.execute(
            "SELECT record_json FROM runs WHERE run_id = ? ORDER BY rowid DESC LIMIT 1",
            (run_id,),
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_recent(self, limit: int = 50) -> List[RunRecord]:
        """The most recent runs, oldest first."""
        rows = self._conn.execute(
            "SELECT record_json FROM runs ORDER BY rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def query_failures(self) -> List[RunRecord]:
        """Every run that did not apply all of its nodes."""
        rows = self._conn.execute(
            "SELECT record_json FROM runs WHERE success = 0 ORDER BY rowid"
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def verify_chain_integrity(self) -> bool:
        """Verify no records have been tampered with."""
        rows = self._conn.execute(
            "SELECT record_json, signature FROM runs ORDER BY rowid"
        ).fetchall()

        for i, row in enumerate(rows):
            record = RunRecord.model_validate_json(row["record_json"])
            if record.signature != row["signature"] or record.signature != _signature(record):
                return False
            expected_prior = rows[i - 1]["signature"] if i > 0 else None
            if record.prior_record_hash != expected_prior:
                return False
        return True

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) as cnt FROM runs").fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
