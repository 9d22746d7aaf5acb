"""mandate_rail.core.journal

The audit journal: append-only events with a hash chain.

Invariant failures, settlement outcomes, PoSP proofs and control-loop ticks
land here. Rows are never updated. A row whose hash does not recompute is
evidence of tampering, and `verify_hash_chain` says so.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from mandate_rail.core.codec import stable_stringify
from mandate_rail.core.exceptions import DedupeConflictError, JournalError
from mandate_rail.core.time import parse_dt, to_iso, utc_now


class JournalEventType(StrEnum):
    """Naming: ``{category}.{domain}.{version}``."""

    INVARIANT_FAILURE_V1 = "invariant.failure.v1"
    SETTLEMENT_RESULT_V1 = "settlement.result.v1"
    POSP_PROOF_V1 = "posp.proof.v1"
    EVIDENCE_BLOCK_V1 = "evidence.block.v1"
    CONTROL_TICK_V1 = "control.tick.v1"


SCHEMA = """
CREATE TABLE IF NOT EXISTS journal (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    ts TEXT NOT NULL,
    source TEXT,
    dedupe_key TEXT UNIQUE,
    payload TEXT NOT NULL,
    prev_hash TEXT,
    hash TEXT NOT NULL UNIQUE
);

CREATE INDEX IF NOT EXISTS idx_journal_type ON journal(type);
CREATE INDEX IF NOT EXISTS idx_journal_ts ON journal(ts);
"""


class JournalEntry(BaseModel):
    """Immutable journal row."""

    id: str
    type: JournalEventType
    ts: datetime
    source: str | None = None
    dedupe_key: str | None = None
    payload: dict[str, Any]
    prev_hash: str | None = None
    hash: str

    model_config = {"frozen": True}


def compute_entry_hash(
    *,
    prev_hash: str | None,
    ts: str,
    entry_id: str,
    event_type: str,
    source: str | None,
    dedupe_key: str | None,
    payload_json: str,
) -> str:
    """sha256(prev_hash | ts | id | type | source | dedupe_key | canonical_payload)."""

    parts = [prev_hash or "", ts, entry_id, event_type, source or "", dedupe_key or ""]
    data = "|".join(parts) + "|" + payload_json
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


@dataclass
class Journal:
    """SQLite journal with hash chain."""

    db_path: Path

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        with self.conn:
            self.conn.executescript(SCHEMA)
            self.conn.execute("PRAGMA journal_mode=WAL")
        self._last_hash = self._get_last_hash()

    def close(self) -> None:
        self.conn.close()

    def _get_last_hash(self) -> str | None:
        row = self.conn.execute("SELECT hash FROM journal ORDER BY rowid DESC LIMIT 1").fetchone()
        return None if row is None else str(row[0])

    def append(
        self,
        *,
        event_type: JournalEventType,
        payload: dict[str, Any],
        source: str | None = None,
        dedupe_key: str | None = None,
        ts: datetime | None = None,
    ) -> JournalEntry:
        """Append one entry.

        Dedup semantics:
        - If dedupe_key is new: insert.
        - If dedupe_key exists with same payload: idempotent (return existing entry).
        - If dedupe_key exists with different payload: conflict.
        """

        payload_json = stable_stringify(payload)
        with self._lock:
            if dedupe_key is not None:
                row = self.conn.execute(
                    "SELECT * FROM journal WHERE dedupe_key = ?", (dedupe_key,)
                ).fetchone()
                if row is not None:
                    if str(row["payload"]) != payload_json:
                        raise DedupeConflictError(f"dedupe_key conflict for {dedupe_key}: payload changed")
                    return self._row_to_entry(row)

            eid = str(uuid.uuid4())
            ts_iso = to_iso(ts or utc_now())
            prev = self._last_hash
            h = compute_entry_hash(
                prev_hash=prev,
                ts=ts_iso,
                entry_id=eid,
                event_type=str(event_type),
                source=source,
                dedupe_key=dedupe_key,
                payload_json=payload_json,
            )
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO journal (id, type, ts, source, dedupe_key, payload, prev_hash, hash)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (eid, str(event_type), ts_iso, source, dedupe_key, payload_json, prev, h),
                    )
            except sqlite3.IntegrityError as e:
                raise JournalError(str(e)) from e

            self._last_hash = h
            return JournalEntry(
                id=eid,
                type=event_type,
                ts=parse_dt(ts_iso),
                source=source,
                dedupe_key=dedupe_key,
                payload=json.loads(payload_json),
                prev_hash=prev,
                hash=h,
            )

    def entries(self, *, event_type: JournalEventType | None = None, limit: int = 100) -> list[JournalEntry]:
        """Most recent first."""

        if event_type is None:
            rows = self.conn.execute(
                "SELECT * FROM journal ORDER BY rowid DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM journal WHERE type = ? ORDER BY rowid DESC LIMIT ?",
                (str(event_type), limit),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def verify_hash_chain(self) -> bool:
        rows = self.conn.execute("SELECT * FROM journal ORDER BY rowid ASC").fetchall()
        prev: str | None = None
        for row in rows:
            if row["prev_hash"] != prev:
                return False
            expected = compute_entry_hash(
                prev_hash=prev,
                ts=str(row["ts"]),
                entry_id=str(row["id"]),
                event_type=str(row["type"]),
                source=row["source"],
                dedupe_key=row["dedupe_key"],
                payload_json=str(row["payload"]),
            )
            if expected != str(row["hash"]):
                return False
            prev = expected
        return True

    def _row_to_entry(self, row: sqlite3.Row) -> JournalEntry:
        return JournalEntry(
            id=str(row["id"]),
            type=JournalEventType(str(row["type"])),
            ts=parse_dt(str(row["ts"])),
            source=row["source"],
            dedupe_key=row["dedupe_key"],
            payload=json.loads(str(row["payload"])),
            prev_hash=row["prev_hash"],
            hash=str(row["hash"]),
        )
