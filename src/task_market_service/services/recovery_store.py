"""Durable record of payments confirmed externally but not yet applied locally."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from threading import RLock

from task_market_service.models import DisputeRuling, RecoveryRecord, RecoveryStatus


class RecoveryStore:
    """
    SQLite-backed recovery records.

    Lives in its own database file so a failure of the main store does
    not prevent the confirmed payment from being recorded.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS recovery_records (
                recovery_id TEXT PRIMARY KEY,
                payment_id TEXT NOT NULL,
                external_tx_id TEXT NOT NULL,
                submission_id TEXT NOT NULL,
                worker_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                employer_id TEXT,
                amount INTEGER NOT NULL,
                platform_fee INTEGER NOT NULL,
                expected_statuses TEXT NOT NULL,
                error TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                dispute_id TEXT,
                ruling TEXT,
                admin_id TEXT,
                admin_notes TEXT,
                computed_payout INTEGER,
                replayed_at TEXT
            )
            """
        )
        self._db.commit()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> RecoveryRecord:
        data = dict(row)
        data["expected_statuses"] = json.loads(data["expected_statuses"])
        data["status"] = RecoveryStatus(data["status"])
        data["ruling"] = DisputeRuling(data["ruling"]) if data["ruling"] is not None else None
        return RecoveryRecord(**data)

    def insert(self, record: RecoveryRecord) -> None:
        """Persist a recovery record and commit immediately."""
        data = record.to_dict()
        data["expected_statuses"] = json.dumps(sorted(record.expected_statuses))
        data["status"] = str(record.status)
        data["ruling"] = str(record.ruling) if record.ruling is not None else None
        columns = list(data)
        with self._lock:
            self._db.execute(
                f"INSERT INTO recovery_records ({', '.join(columns)}) "  # nosec B608
                f"VALUES ({', '.join('?' for _ in columns)})",
                [data[c] for c in columns],
            )
            self._db.commit()

    def get(self, recovery_id: str) -> RecoveryRecord | None:
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM recovery_records WHERE recovery_id = ?", (recovery_id,)
            ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def list_records(self, status: str | None = None) -> list[RecoveryRecord]:
        """List records oldest first, optionally filtered by status."""
        query = "SELECT * FROM recovery_records"
        params: list[object] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY created_at, recovery_id"
        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def mark_replayed(self, recovery_id: str, now: str) -> bool:
        """Mark a pending record replayed. Returns False if it was not pending."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE recovery_records SET status = ?, replayed_at = ? "
                "WHERE recovery_id = ? AND status = ?",
                (str(RecoveryStatus.REPLAYED), now, recovery_id, str(RecoveryStatus.PENDING)),
            )
            self._db.commit()
        return cursor.rowcount == 1

    def count_pending(self) -> int:
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM recovery_records WHERE status = ?",
                (str(RecoveryStatus.PENDING),),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def close(self) -> None:
        with self._lock:
            self._db.close()
