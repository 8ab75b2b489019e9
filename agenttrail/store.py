"""SQLite persistence for execution records.

The store is the single shared mutable resource of the system. Updates are
partial and last-write-wins per field; there is no version token.

`result_json` is written in canonical form (keys sorted, like a jsonb column
would return them) and read back with JSON numbers parsed as `Decimal`, so a
recomputed PoA hash never depends on float re-serialization.
"""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

from .canonical import canonical_json_dumps
from .models import AnchorState, ExecutionRecord, RawPayload, RecordStatus

logger = logging.getLogger("agenttrail.store")


_UPDATABLE_COLUMNS = frozenset({
    "tx_hash",
    "status",
    "anchor_error",
    "anchor_state",
    "anchor_attempts",
    "block_number",
})


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_record_id() -> str:
    return f"exec_{secrets.token_hex(16)}"


def _encode_value(value: Any) -> Any:
    if isinstance(value, (RecordStatus, AnchorState)):
        return value.value
    return value


class RecordStore:
    """Persistent storage for `ExecutionRecord` rows, keyed by id."""

    def __init__(self, db_path: str = "agenttrail.db"):
        self.db_path = db_path
        self._init_db()

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._db() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                org_id TEXT,
                run_id TEXT,
                streaming_url TEXT,
                goal TEXT NOT NULL,
                target_url TEXT NOT NULL,
                poa_timestamp TEXT NOT NULL,
                result_json TEXT NOT NULL,
                poa_hash TEXT NOT NULL,
                tx_hash TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                anchor_error TEXT,
                anchor_state TEXT NOT NULL DEFAULT 'idle',
                anchor_attempts INTEGER NOT NULL DEFAULT 0,
                block_number INTEGER,
                created_at_utc TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL
            )
            """)

            # Migration: add streaming_url to databases created without it
            try:
                conn.execute("ALTER TABLE executions ADD COLUMN streaming_url TEXT")
            except sqlite3.OperationalError:
                pass  # Column already exists

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_org_created "
                "ON executions (org_id, created_at_utc)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_anchor_state "
                "ON executions (anchor_state)"
            )

    # ---------------------------
    # Rows
    # ---------------------------

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ExecutionRecord:
        result_json = json.loads(row["result_json"], parse_float=Decimal)
        payload = RawPayload(
            goal=row["goal"],
            url=row["target_url"],
            timestamp=row["poa_timestamp"],
            result_json=result_json,
        )
        return ExecutionRecord(
            id=row["id"],
            raw_payload=payload,
            poa_hash=row["poa_hash"],
            status=RecordStatus(row["status"]),
            tx_id=row["tx_hash"],
            anchor_error=row["anchor_error"],
            anchor_state=AnchorState(row["anchor_state"]),
            anchor_attempts=int(row["anchor_attempts"] or 0),
            block_number=row["block_number"],
            org_id=row["org_id"],
            run_id=row["run_id"],
            streaming_url=row["streaming_url"],
            created_at_utc=row["created_at_utc"],
            updated_at_utc=row["updated_at_utc"],
        )

    def insert_record(self, record: ExecutionRecord) -> ExecutionRecord:
        """Persist a new record. Fills in created/updated timestamps."""
        now = _now_utc().isoformat()
        record.created_at_utc = record.created_at_utc or now
        record.updated_at_utc = now
        payload = record.raw_payload
        with self._db() as conn:
            conn.execute(
                """
                INSERT INTO executions (
                    id, org_id, run_id, streaming_url, goal, target_url, poa_timestamp, result_json,
                    poa_hash, tx_hash, status, anchor_error, anchor_state, anchor_attempts,
                    block_number, created_at_utc, updated_at_utc
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.org_id,
                    record.run_id,
                    record.streaming_url,
                    payload.goal,
                    payload.url,
                    payload.timestamp,
                    canonical_json_dumps(payload.result_json),
                    record.poa_hash,
                    record.tx_id,
                    record.status.value,
                    record.anchor_error,
                    record.anchor_state.value,
                    int(record.anchor_attempts),
                    record.block_number,
                    record.created_at_utc,
                    record.updated_at_utc,
                ),
            )
        return record

    def get_record(self, record_id: str) -> Optional[ExecutionRecord]:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM executions WHERE id = ?", (record_id,)).fetchone()
        return self._row_to_record(row) if row is not None else None

    def list_records(self, org_id: Optional[str] = None, limit: int = 50) -> List[ExecutionRecord]:
        """Most recent records first, optionally scoped to one organization."""
        limit = max(1, min(int(limit), 500))
        with self._db() as conn:
            if org_id is None:
                rows = conn.execute(
                    "SELECT * FROM executions ORDER BY created_at_utc DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM executions WHERE org_id = ? ORDER BY created_at_utc DESC LIMIT ?",
                    (org_id, limit),
                ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def update_fields(self, record_id: str, **fields: Any) -> bool:
        """Partial update of anchoring fields. Returns False if the id is unknown.

        The hash inputs and `poa_hash` are not updatable.
        """
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not updatable: {sorted(unknown)}")
        if not fields:
            return self.get_record(record_id) is not None

        assignments = ", ".join(f"{col} = ?" for col in fields)
        params: List[Any] = [_encode_value(v) for v in fields.values()]
        params.append(_now_utc().isoformat())
        params.append(record_id)
        with self._db() as conn:
            cur = conn.execute(
                f"UPDATE executions SET {assignments}, updated_at_utc = ? WHERE id = ?",
                params,
            )
            updated = int(cur.rowcount or 0) > 0
        if not updated:
            logger.warning("update of unknown execution %s ignored", record_id)
        return updated

    # ---------------------------
    # Anchor attempt transitions
    # ---------------------------

    def mark_queued(self, record_id: str) -> bool:
        return self.update_fields(record_id, anchor_state=AnchorState.QUEUED)

    def claim_anchor(self, record_id: str) -> bool:
        """Atomically move an idle record to `queued`.

        False means the id is unknown or another attempt (in this or any
        other process sharing the database) still holds the record.
        """
        with self._db() as conn:
            cur = conn.execute(
                "UPDATE executions SET anchor_state = ?, updated_at_utc = ? "
                "WHERE id = ? AND anchor_state = ?",
                (
                    AnchorState.QUEUED.value,
                    _now_utc().isoformat(),
                    record_id,
                    AnchorState.IDLE.value,
                ),
            )
            return int(cur.rowcount or 0) > 0

    def mark_submitting(self, record_id: str) -> bool:
        """Start a new attempt: clear the previous failure reason."""
        with self._db() as conn:
            cur = conn.execute(
                """
                UPDATE executions
                SET status = ?, anchor_error = NULL, anchor_state = ?,
                    anchor_attempts = anchor_attempts + 1, updated_at_utc = ?
                WHERE id = ?
                """,
                (
                    RecordStatus.PENDING.value,
                    AnchorState.SUBMITTING.value,
                    _now_utc().isoformat(),
                    record_id,
                ),
            )
            return int(cur.rowcount or 0) > 0

    def record_submitted(self, record_id: str, tx_id: str) -> bool:
        return self.update_fields(
            record_id,
            tx_hash=tx_id,
            anchor_error=None,
            anchor_state=AnchorState.CONFIRMING,
        )

    def mark_completed(self, record_id: str, tx_id: str, block_number: Optional[int]) -> bool:
        return self.update_fields(
            record_id,
            tx_hash=tx_id,
            status=RecordStatus.COMPLETED,
            anchor_error=None,
            anchor_state=AnchorState.IDLE,
            block_number=block_number,
        )

    def mark_failed(self, record_id: str, reason: str) -> bool:
        return self.update_fields(
            record_id,
            status=RecordStatus.FAILED,
            anchor_error=reason or "Unknown anchoring failure",
            anchor_state=AnchorState.IDLE,
        )

    def list_in_flight(self) -> List[ExecutionRecord]:
        """Records whose anchor attempt was queued or running, oldest first."""
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM executions WHERE anchor_state != ? ORDER BY updated_at_utc",
                (AnchorState.IDLE.value,),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def count_by_status(self) -> Dict[str, int]:
        with self._db() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM executions GROUP BY status").fetchall()
        return {r["status"]: int(r["n"]) for r in rows}
