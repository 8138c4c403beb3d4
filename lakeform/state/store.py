"""
State Store — the last-applied attributes of every managed resource.

Backed by SQLite, one row per resource address holding the JSON record.
Entries are cached in memory on open; every write goes to the database
immediately so a run that fails halfway keeps what it completed.

Concurrency:
- updates to one address are serialized by a per-address lock
- database writes and full snapshots share a single write lock
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from typing import Dict, List, Optional

from lakeform.errors import StateConflictError
from lakeform.models.state import StateEntry

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1

_UNSET = object()


class StateStore:
    """
    Persistent reconciliation state.
    ``:memory:`` keeps everything in-process (tests, dry runs).
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._write_lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self._init_schema()
        self._entries: Dict[str, StateEntry] = self._load()

    def _init_schema(self) -> None:
        """Create the state table if it doesn't exist."""
        with self._write_lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS resources (
                    address TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    record_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_resources_kind ON resources(kind)
            """)
            self._conn.commit()

    def _load(self) -> Dict[str, StateEntry]:
        rows = self._conn.execute(
            "SELECT record_json FROM resources ORDER BY address"
        ).fetchall()
        entries = {}
        for row in rows:
            entry = StateEntry.model_validate_json(row["record_json"])
            entries[entry.address] = entry
        logger.debug("Loaded %d state entries from %s", len(entries), self.db_path)
        return entries

    def _lock_for(self, address: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(address)
            if lock is None:
                lock = self._key_locks[address] = threading.Lock()
            return lock

    # --- Reads ---

    def get(self, address: str) -> Optional[StateEntry]:
        """Get the entry for an address."""
        return self._entries.get(address)

    def addresses(self) -> List[str]:
        return sorted(self._entries)

    def snapshot(self) -> Dict[str, StateEntry]:
        """A consistent copy of every entry."""
        with self._write_lock:
            return {a: e.model_copy(deep=True) for a, e in self._entries.items()}

    def count(self) -> int:
        return len(self._entries)

    # --- Writes ---

    def put(self, entry: StateEntry, expected_hash=_UNSET) -> StateEntry:
        """
        Record an applied entry.

        ``expected_hash`` is the content hash the caller believes is stored
        (None when it expects no entry). A mismatch means another writer
        claimed the same identifier, and raises StateConflictError instead
        of overwriting.
        """
        with self._lock_for(entry.address):
            current = self._entries.get(entry.address)
            if current is not None and current.kind != entry.kind:
                raise StateConflictError(
                    f"identifier already recorded for kind '{current.kind}'",
                    entry.address,
                )
            if expected_hash is not _UNSET:
                current_hash = current.content_hash if current else None
                if current_hash != expected_hash:
                    raise StateConflictError(
                        "state entry changed underneath this run "
                        f"(expected {_short(expected_hash)}, found {_short(current_hash)})",
                        entry.address,
                    )

            record_json = json.dumps(entry.model_dump(mode="json"), sort_keys=True)
            with self._write_lock:
                self._conn.execute(
                    """
                    INSERT INTO resources (address, kind, content_hash, record_json, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(address) DO UPDATE SET
                        kind = excluded.kind,
                        content_hash = excluded.content_hash,
                        record_json = excluded.record_json,
                        updated_at = excluded.updated_at
                    """,
                    (
                        entry.address,
                        entry.kind,
                        entry.content_hash,
                        record_json,
                        entry.updated_at.isoformat(),
                    ),
                )
                self._conn.commit()
                self._entries[entry.address] = entry
        return entry

    def remove(self, address: str) -> bool:
        """Forget a resource. Returns False if it was not recorded."""
        with self._lock_for(address):
            if address not in self._entries:
                return False
            with self._write_lock:
                self._conn.execute("DELETE FROM resources WHERE address = ?", (address,))
                self._conn.commit()
                del self._entries[address]
        return True

    # --- Structured document ---

    def export_document(self) -> dict:
        """All entries as a JSON-ready document, one record per resource."""
        with self._write_lock:
            return {
                "version": STATE_FORMAT_VERSION,
                "exported_at": datetime.utcnow().isoformat(),
                "resources": [
                    self._entries[a].model_dump(mode="json") for a in sorted(self._entries)
                ],
            }

    def import_document(self, document: dict) -> int:
        """Load records from an exported document. Existing addresses are rejected."""
        if document.get("version") != STATE_FORMAT_VERSION:
            raise StateConflictError(
                f"unsupported state document version {document.get('version')!r}"
            )
        count = 0
        for record in document.get("resources", []):
            entry = StateEntry.model_validate(record)
            self.put(entry, expected_hash=None)
            count += 1
        return count

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()


def _short(value: Optional[str]) -> str:
    return value[:12] if value else "nothing"
