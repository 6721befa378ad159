"""Append-only, hash-chained deployment ledger backed by SQLite.

The ledger is the record of what every attempt did to the cluster: phase
transitions, buffers created and closed, extensions, retries. The status
view is a projection of it, and leaked-buffer recovery reads from it.

Design:
- Append-only: only `append()` writes; no update, no delete.
- Hash-chained per attempt: each entry includes the SHA-256 of the
  previous entry of the same attempt.
- WAL journal mode for concurrent readers.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from progdeploy.core.hasher import compute_entry_hash
from progdeploy.models.ledger import LedgerEntry, LedgerEvent


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS deploy_ledger (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    attempt_id          TEXT NOT NULL,
    program_id          TEXT NOT NULL,
    event               TEXT NOT NULL,
    transition          TEXT NOT NULL DEFAULT '',
    timestamp_utc       TEXT NOT NULL,
    artifact_hash       TEXT NOT NULL DEFAULT '',
    account_id          TEXT NOT NULL DEFAULT '',
    detail_json         TEXT NOT NULL DEFAULT '{}',
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_ATTEMPT = """
CREATE INDEX IF NOT EXISTS idx_attempt ON deploy_ledger(attempt_id, id);
"""

_CREATE_IDX_PROGRAM = """
CREATE INDEX IF NOT EXISTS idx_program ON deploy_ledger(program_id, id);
"""

_CREATE_IDX_ACCOUNT = """
CREATE INDEX IF NOT EXISTS idx_account ON deploy_ledger(account_id, event);
"""


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class OpenBuffer(BaseModel):
    """A buffer the ledger saw created but never closed or consumed."""

    model_config = ConfigDict(frozen=True)

    address: str
    attempt_id: str
    program_id: str
    created_at: datetime
    capacity: int = 0


class DeployLedger:
    """Append-only, hash-chained deployment ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_ATTEMPT)
            conn.execute(_CREATE_IDX_PROGRAM)
            conn.execute(_CREATE_IDX_ACCOUNT)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry, computing its hash chain link.

        Returns the entry with `previous_entry_hash` and `entry_hash` set.
        Safe to call from chunk-upload worker threads.
        """
        with self._write_lock:
            previous_hash = self._get_latest_hash(entry.attempt_id)

            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""

            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": compute_entry_hash(entry_dict),
                }
            )
            self._insert(sealed)
        return sealed

    def record(
        self,
        attempt_id: str,
        program_id: str,
        event: LedgerEvent,
        *,
        transition: str = "",
        artifact_hash: str = "",
        account_id: str = "",
        detail: dict | None = None,
    ) -> LedgerEntry:
        """Convenience wrapper building and appending a ``LedgerEntry``."""
        return self.append(
            LedgerEntry(
                attempt_id=attempt_id,
                program_id=program_id,
                event=event,
                transition=transition,
                artifact_hash=artifact_hash,
                account_id=account_id,
                detail=detail or {},
            )
        )

    def _insert(self, entry: LedgerEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO deploy_ledger
                    (entry_id, attempt_id, program_id, event, transition,
                     timestamp_utc, artifact_hash, account_id, detail_json,
                     previous_entry_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.attempt_id,
                    entry.program_id,
                    entry.event.value,
                    entry.transition,
                    entry.timestamp_utc.isoformat(),
                    entry.artifact_hash,
                    entry.account_id,
                    json.dumps(entry.detail, sort_keys=True),
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, attempt_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM deploy_ledger WHERE attempt_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (attempt_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_attempt_entries(self, attempt_id: str) -> list[LedgerEntry]:
        """All entries for an attempt, ordered chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM deploy_ledger WHERE attempt_id = ? ORDER BY id ASC",
                (attempt_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_program_entries(self, program_id: str) -> list[LedgerEntry]:
        """All entries for a program across attempts, chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM deploy_ledger WHERE program_id = ? ORDER BY id ASC",
                (program_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_attempt_ids(self, program_id: str | None = None) -> list[str]:
        """Distinct attempt ids, most recent first."""
        query = "SELECT attempt_id, MAX(id) AS last FROM deploy_ledger"
        params: tuple = ()
        if program_id is not None:
            query += " WHERE program_id = ?"
            params = (program_id,)
        query += " GROUP BY attempt_id ORDER BY last DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [row[0] for row in rows]

    def get_latest(self, attempt_id: str) -> LedgerEntry | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM deploy_ledger WHERE attempt_id = ? ORDER BY id DESC LIMIT 1",
                (attempt_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def open_buffers(self) -> list[OpenBuffer]:
        """Buffers recorded as created with no matching close or consume."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT c.account_id, c.attempt_id, c.program_id,
                       c.timestamp_utc, c.detail_json
                FROM deploy_ledger c
                WHERE c.event = ?
                  AND NOT EXISTS (
                      SELECT 1 FROM deploy_ledger d
                      WHERE d.account_id = c.account_id AND d.event IN (?, ?)
                  )
                ORDER BY c.id ASC
                """,
                (
                    LedgerEvent.BUFFER_CREATED.value,
                    LedgerEvent.BUFFER_CLOSED.value,
                    LedgerEvent.BUFFER_CONSUMED.value,
                ),
            ).fetchall()
        return [
            OpenBuffer(
                address=address,
                attempt_id=attempt_id,
                program_id=program_id,
                created_at=timestamp,
                capacity=json.loads(detail_json).get("capacity", 0),
            )
            for address, attempt_id, program_id, timestamp, detail_json in rows
        ]

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, attempt_id: str) -> bool:
        """Verify hash chain integrity for an attempt.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        prev_hash = ""
        for entry in self.get_attempt_entries(attempt_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            _id,
            entry_id,
            attempt_id,
            program_id,
            event,
            transition,
            timestamp_utc,
            artifact_hash,
            account_id,
            detail_json,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            attempt_id=attempt_id,
            program_id=program_id,
            event=LedgerEvent(event),
            transition=transition,
            timestamp_utc=timestamp_utc,
            artifact_hash=artifact_hash,
            account_id=account_id,
            detail=json.loads(detail_json),
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
