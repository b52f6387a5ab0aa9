"""SQLite-backed storage for tasks, submissions, ledger entries, disputes and earnings."""

from __future__ import annotations

import contextlib
import sqlite3
import uuid
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

from task_market_service.models import (
    AppliedSettlement,
    Dispute,
    DisputeRuling,
    DisputeStatus,
    LedgerEntry,
    LedgerStatus,
    Submission,
    SubmissionStatus,
    Task,
    TaskStatus,
    UserEarnings,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from task_market_service.models import SettlementWrite


class DuplicateSubmissionError(Exception):
    """Raised when a worker already has an open submission for the task."""


class DisputePendingError(Exception):
    """Raised when a submission already has a pending dispute."""


class StaleStatusError(Exception):
    """Raised when a conditional write finds the row in an unexpected status."""

    def __init__(self, entity: str, entity_id: str, current_status: str | None) -> None:
        super().__init__(f"{entity} {entity_id} is in status {current_status!r}")
        self.entity = entity
        self.entity_id = entity_id
        self.current_status = current_status


class SlotsExhaustedError(Exception):
    """Raised when a settlement that must consume a slot finds none left."""


# Slots held by other submissions' in-flight settlements are not free capacity.
_DECREMENT_SLOT_SQL = (
    "UPDATE tasks SET slots_remaining = slots_remaining - 1, "
    "status = CASE WHEN slots_remaining = 1 AND status = 'available' "
    "THEN 'full' ELSE status END, updated_at = ? "
    "WHERE task_id = ? AND slots_remaining > ("
    "SELECT COUNT(*) FROM slot_claims WHERE task_id = ? AND submission_id != ?)"
)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class MarketStore:
    """
    SQLite-backed storage for the marketplace core.

    Every status change is a conditional UPDATE guarded by the expected
    current status, and multi-table changes run inside one
    BEGIN IMMEDIATE transaction.
    """

    _SUBMISSION_UPDATABLE: frozenset[str] = frozenset(
        {
            "proof",
            "revision_number",
            "revision_reason",
            "revision_deadline",
            "resubmitted_at",
            "rejection_reason",
            "reviewed_at",
        }
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    employer_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    reward INTEGER NOT NULL CHECK (reward > 0),
                    slots_available INTEGER NOT NULL CHECK (slots_available > 0),
                    slots_remaining INTEGER NOT NULL
                        CHECK (slots_remaining >= 0 AND slots_remaining <= slots_available),
                    status TEXT NOT NULL DEFAULT 'available',
                    deadline TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS submissions (
                    submission_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    worker_id TEXT NOT NULL,
                    proof TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'submitted',
                    revision_number INTEGER NOT NULL DEFAULT 0,
                    agreed_reward INTEGER NOT NULL CHECK (agreed_reward > 0),
                    submitted_at TEXT NOT NULL,
                    revision_reason TEXT,
                    revision_deadline TEXT,
                    resubmitted_at TEXT,
                    rejection_reason TEXT,
                    reviewed_at TEXT,
                    worker_payout INTEGER,
                    platform_fee INTEGER,
                    payment_id TEXT,
                    external_tx_id TEXT,
                    paid_at TEXT
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_open_submission
                    ON submissions(task_id, worker_id)
                    WHERE status IN (
                        'submitted', 'revision_requested', 'revision_resubmitted', 'disputed'
                    );

                CREATE INDEX IF NOT EXISTS ix_submissions_worker
                    ON submissions(worker_id, submitted_at);

                CREATE TABLE IF NOT EXISTS ledger_entries (
                    entry_id TEXT PRIMARY KEY,
                    sender_id TEXT,
                    receiver_id TEXT NOT NULL,
                    amount INTEGER NOT NULL CHECK (amount >= 0),
                    platform_fee INTEGER NOT NULL CHECK (platform_fee >= 0),
                    task_id TEXT NOT NULL,
                    submission_id TEXT NOT NULL REFERENCES submissions(submission_id),
                    payment_id TEXT NOT NULL,
                    external_tx_id TEXT,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    computed_payout INTEGER
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_ledger_active_submission
                    ON ledger_entries(submission_id)
                    WHERE status != 'failed';

                CREATE INDEX IF NOT EXISTS ix_ledger_receiver
                    ON ledger_entries(receiver_id, created_at);

                CREATE TABLE IF NOT EXISTS slot_claims (
                    submission_id TEXT PRIMARY KEY REFERENCES submissions(submission_id),
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    holders INTEGER NOT NULL CHECK (holders > 0),
                    claimed_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_slot_claims_task ON slot_claims(task_id);

                CREATE TABLE IF NOT EXISTS disputes (
                    dispute_id TEXT PRIMARY KEY,
                    submission_id TEXT NOT NULL REFERENCES submissions(submission_id),
                    task_id TEXT NOT NULL,
                    worker_id TEXT NOT NULL,
                    employer_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    original_rejection_reason TEXT,
                    amount_in_dispute INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    filed_at TEXT NOT NULL,
                    ruling TEXT,
                    admin_id TEXT,
                    admin_notes TEXT,
                    resolved_at TEXT
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_pending_dispute
                    ON disputes(submission_id)
                    WHERE status = 'pending';

                CREATE TABLE IF NOT EXISTS user_earnings (
                    user_id TEXT PRIMARY KEY,
                    total_earnings INTEGER NOT NULL DEFAULT 0 CHECK (total_earnings >= 0),
                    total_tasks_completed INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT
                );
                """
            )

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            self._db.execute("COMMIT")

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        data = dict(row)
        data["status"] = TaskStatus(data["status"])
        return Task(**data)

    @staticmethod
    def _row_to_submission(row: sqlite3.Row) -> Submission:
        data = dict(row)
        data["status"] = SubmissionStatus(data["status"])
        return Submission(**data)

    @staticmethod
    def _row_to_ledger_entry(row: sqlite3.Row) -> LedgerEntry:
        data = dict(row)
        data["status"] = LedgerStatus(data["status"])
        return LedgerEntry(**data)

    @staticmethod
    def _row_to_dispute(row: sqlite3.Row) -> Dispute:
        data = dict(row)
        data["status"] = DisputeStatus(data["status"])
        data["ruling"] = DisputeRuling(data["ruling"]) if data["ruling"] is not None else None
        return Dispute(**data)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task: Task) -> None:
        """Insert a new task row."""
        data = task.to_dict()
        columns = list(data)
        with self._lock:
            self._db.execute(
                f"INSERT INTO tasks ({', '.join(columns)}) "  # nosec B608
                f"VALUES ({_placeholders(len(columns))})",
                [str(data[c]) if c == "status" else data[c] for c in columns],
            )

    def get_task(self, task_id: str) -> Task | None:
        """Fetch a task by ID."""
        with self._lock:
            row = self._db.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row is not None else None

    def list_tasks(
        self,
        status: str | None,
        employer_id: str | None,
        limit: int | None,
        offset: int | None,
    ) -> list[Task]:
        """List tasks with optional filters, newest first."""
        query = "SELECT * FROM tasks"
        clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if employer_id is not None:
            clauses.append("employer_id = ?")
            params.append(employer_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        expected_statuses: Iterable[TaskStatus],
        now: str,
    ) -> int:
        """Set the task status if it is currently one of expected_statuses."""
        expected = [str(s) for s in expected_statuses]
        with self._lock:
            cursor = self._db.execute(
                "UPDATE tasks SET status = ?, updated_at = ? "
                f"WHERE task_id = ? AND status IN ({_placeholders(len(expected))})",  # nosec B608
                [str(status), now, task_id, *expected],
            )
        return int(cursor.rowcount)

    def claim_slot(
        self, task_id: str, submission_id: str, now: str
    ) -> tuple[Task, int, bool] | None:
        """
        Hold one of the task's remaining slots for a settlement in flight.

        A submission that already holds a claim joins it instead of taking
        a second slot. Cancelled tasks grant no claims.

        Returns (task, slots_claimed_by_others, claimed), or None when the
        task does not exist.
        """
        with self._transaction() as db:
            row = db.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
            if row is None:
                return None
            task = self._row_to_task(row)
            others = int(
                db.execute(
                    "SELECT COUNT(*) FROM slot_claims WHERE task_id = ? AND submission_id != ?",
                    (task_id, submission_id),
                ).fetchone()[0]
            )
            if task.status is TaskStatus.CANCELLED:
                return task, others, False

            cursor = db.execute(
                "UPDATE slot_claims SET holders = holders + 1 WHERE submission_id = ?",
                (submission_id,),
            )
            if cursor.rowcount == 1:
                return task, others, True

            if task.status is not TaskStatus.AVAILABLE or task.slots_remaining <= others:
                return task, others, False
            db.execute(
                "INSERT INTO slot_claims (submission_id, task_id, holders, claimed_at) "
                "VALUES (?, ?, 1, ?)",
                (submission_id, task_id, now),
            )
        return task, others, True

    def release_slot(self, submission_id: str) -> None:
        """Drop one holder of a submission's claim; the last holder frees the slot."""
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE slot_claims SET holders = holders - 1 "
                "WHERE submission_id = ? AND holders > 1",
                (submission_id,),
            )
            if cursor.rowcount == 0:
                db.execute("DELETE FROM slot_claims WHERE submission_id = ?", (submission_id,))

    def count_slot_claims(self, task_id: str | None = None) -> int:
        """Count slots held by settlements in flight, for one task or all of them."""
        query = "SELECT COUNT(*) FROM slot_claims"
        params: list[object] = []
        if task_id is not None:
            query += " WHERE task_id = ?"
            params.append(task_id)
        with self._lock:
            row = self._db.execute(query, params).fetchone()
        return int(row[0]) if row is not None else 0

    def clear_stale_claims(self, task_id: str, live_statuses: Iterable[SubmissionStatus]) -> int:
        """Delete the task's claims whose submission is no longer in live_statuses."""
        live = [str(s) for s in live_statuses]
        with self._lock:
            cursor = self._db.execute(
                "DELETE FROM slot_claims WHERE task_id = ? AND submission_id NOT IN ("
                "SELECT submission_id FROM submissions "
                f"WHERE status IN ({_placeholders(len(live))}))",  # nosec B608
                [task_id, *live],
            )
        return int(cursor.rowcount)

    @staticmethod
    def _consume_slot(
        db: sqlite3.Connection,
        task_id: str,
        submission_id: str,
        now: str,
    ) -> tuple[int, bool, bool] | None:
        """
        Consume one slot in a single conditional UPDATE and drop the
        submission's claim.

        Returns (slots_remaining, task_now_full, slot_consumed), or None when
        the task does not exist. A task with no unclaimed slot is left unchanged.
        """
        cursor = db.execute(_DECREMENT_SLOT_SQL, (now, task_id, task_id, submission_id))
        consumed = cursor.rowcount == 1
        db.execute("DELETE FROM slot_claims WHERE submission_id = ?", (submission_id,))
        row = db.execute(
            "SELECT slots_remaining, status FROM tasks WHERE task_id = ?", (task_id,)
        ).fetchone()
        if row is None:
            return None
        remaining = int(row["slots_remaining"])
        now_full = consumed and remaining == 0
        return remaining, now_full, consumed

    def reset_slots(self, task_id: str, paid_count: int, now: str) -> Task | None:
        """
        Recompute slots_remaining from the number of paid submissions.

        A full task with free capacity again becomes available; a task
        with no capacity left becomes full. Cancelled tasks keep their status.
        """
        with self._transaction() as db:
            row = db.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
            if row is None:
                return None
            task = self._row_to_task(row)
            remaining = max(0, task.slots_available - paid_count)
            status = task.status
            if status is not TaskStatus.CANCELLED:
                status = TaskStatus.FULL if remaining == 0 else TaskStatus.AVAILABLE
            db.execute(
                "UPDATE tasks SET slots_remaining = ?, status = ?, updated_at = ? "
                "WHERE task_id = ?",
                (remaining, str(status), now, task_id),
            )
            updated = db.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
        return self._row_to_task(updated)

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def insert_submission(self, submission: Submission) -> None:
        """
        Insert a new submission.

        Raises:
            DuplicateSubmissionError: If the worker has an open submission for the task
        """
        data = submission.to_dict()
        columns = list(data)
        try:
            with self._lock:
                self._db.execute(
                    f"INSERT INTO submissions ({', '.join(columns)}) "  # nosec B608
                    f"VALUES ({_placeholders(len(columns))})",
                    [str(data[c]) if c == "status" else data[c] for c in columns],
                )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateSubmissionError(
                    f"Worker {submission.worker_id} already has an open submission "
                    f"for task {submission.task_id}"
                ) from exc
            raise

    def get_submission(self, submission_id: str) -> Submission | None:
        """Fetch a submission by ID."""
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM submissions WHERE submission_id = ?", (submission_id,)
            ).fetchone()
        return self._row_to_submission(row) if row is not None else None

    def find_open_submission(
        self,
        task_id: str,
        worker_id: str,
        open_statuses: Iterable[SubmissionStatus],
    ) -> Submission | None:
        """Return the worker's submission for the task that is in one of open_statuses."""
        statuses = [str(s) for s in open_statuses]
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM submissions WHERE task_id = ? AND worker_id = ? "
                f"AND status IN ({_placeholders(len(statuses))}) "  # nosec B608
                "ORDER BY submitted_at DESC LIMIT 1",
                [task_id, worker_id, *statuses],
            ).fetchone()
        return self._row_to_submission(row) if row is not None else None

    def list_submissions(
        self,
        task_id: str | None = None,
        worker_id: str | None = None,
        status: str | None = None,
    ) -> list[Submission]:
        """List submissions with optional filters, oldest first."""
        query = "SELECT * FROM submissions"
        clauses: list[str] = []
        params: list[object] = []
        for column, value in (("task_id", task_id), ("worker_id", worker_id), ("status", status)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY submitted_at, submission_id"
        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_submission(row) for row in rows]

    def count_paid_submissions(self, task_id: str) -> int:
        """Count submissions of a task that have been paid."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM submissions WHERE task_id = ? AND status = ?",
                (task_id, str(SubmissionStatus.APPROVED)),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def transition_submission(
        self,
        submission_id: str,
        *,
        from_statuses: Iterable[SubmissionStatus],
        to_status: SubmissionStatus,
        updates: dict[str, Any],
    ) -> int:
        """
        Move a submission to to_status only if it is in one of from_statuses.

        Returns the number of affected rows (0 when the precondition failed).
        """
        if any(column not in self._SUBMISSION_UPDATABLE for column in updates):
            msg = "Attempted to update unknown submission column"
            raise ValueError(msg)

        expected = [str(s) for s in from_statuses]
        set_clause = ", ".join(["status = ?", *(f"{column} = ?" for column in updates)])
        params: list[object] = [str(to_status), *updates.values(), submission_id, *expected]
        query = (
            f"UPDATE submissions SET {set_clause} "  # nosec B608
            f"WHERE submission_id = ? AND status IN ({_placeholders(len(expected))})"
        )
        with self._lock:
            cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def apply_settlement(self, write: SettlementWrite, now: str) -> AppliedSettlement:
        """
        Apply the local side of a confirmed payment in one transaction.

        Marks the submission approved, credits the worker, appends a
        completed ledger entry, consumes one task slot and, for dispute
        rulings, resolves the dispute. Nothing is written if any step fails.

        Raises:
            StaleStatusError: If the submission (or dispute) is no longer in
                the expected status; nothing has been written
            SlotsExhaustedError: If a plain approval finds no slot to consume;
                nothing has been written
        """
        expected = [str(s) for s in write.expected_statuses]
        entry_id = f"le-{uuid.uuid4()}"

        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE submissions SET status = ?, reviewed_at = COALESCE(reviewed_at, ?), "
                "worker_payout = ?, platform_fee = ?, payment_id = ?, external_tx_id = ?, "
                "paid_at = ? "
                "WHERE submission_id = ? "
                f"AND status IN ({_placeholders(len(expected))})",  # nosec B608
                [
                    str(SubmissionStatus.APPROVED),
                    now,
                    write.amount,
                    write.platform_fee,
                    write.payment_id,
                    write.external_tx_id,
                    now,
                    write.submission_id,
                    *expected,
                ],
            )
            if cursor.rowcount == 0:
                row = db.execute(
                    "SELECT status FROM submissions WHERE submission_id = ?",
                    (write.submission_id,),
                ).fetchone()
                raise StaleStatusError(
                    "submission",
                    write.submission_id,
                    str(row["status"]) if row is not None else None,
                )

            if write.dispute is not None:
                cursor = db.execute(
                    "UPDATE disputes SET status = ?, ruling = ?, admin_id = ?, admin_notes = ?, "
                    "resolved_at = ? WHERE dispute_id = ? AND status = ?",
                    (
                        str(DisputeStatus.RESOLVED),
                        str(write.dispute.ruling),
                        write.dispute.admin_id,
                        write.dispute.admin_notes,
                        now,
                        write.dispute.dispute_id,
                        str(DisputeStatus.PENDING),
                    ),
                )
                if cursor.rowcount == 0:
                    row = db.execute(
                        "SELECT status FROM disputes WHERE dispute_id = ?",
                        (write.dispute.dispute_id,),
                    ).fetchone()
                    raise StaleStatusError(
                        "dispute",
                        write.dispute.dispute_id,
                        str(row["status"]) if row is not None else None,
                    )

            db.execute(
                "INSERT INTO user_earnings (user_id, total_earnings, total_tasks_completed, "
                "updated_at) VALUES (?, ?, 1, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET "
                "total_earnings = total_earnings + excluded.total_earnings, "
                "total_tasks_completed = total_tasks_completed + 1, "
                "updated_at = excluded.updated_at",
                (write.worker_id, write.amount, now),
            )

            db.execute(
                "INSERT INTO ledger_entries (entry_id, sender_id, receiver_id, amount, "
                "platform_fee, task_id, submission_id, payment_id, external_tx_id, status, "
                "created_at, computed_payout) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry_id,
                    write.employer_id,
                    write.worker_id,
                    write.amount,
                    write.platform_fee,
                    write.task_id,
                    write.submission_id,
                    write.payment_id,
                    write.external_tx_id,
                    str(LedgerStatus.COMPLETED),
                    now,
                    write.computed_payout,
                ),
            )

            slots = self._consume_slot(db, write.task_id, write.submission_id, now)
            if slots is None:
                msg = f"Task {write.task_id} not found while consuming a slot"
                raise LookupError(msg)
            remaining, now_full, consumed = slots
            # Dispute rulings pay even when the task is already full.
            if write.dispute is None and not consumed:
                msg = f"Task {write.task_id} has no slot left for submission {write.submission_id}"
                raise SlotsExhaustedError(msg)

        return AppliedSettlement(
            ledger_entry_id=entry_id,
            slots_remaining=remaining,
            task_now_full=now_full,
            slot_consumed=consumed,
        )

    # ------------------------------------------------------------------
    # Ledger and earnings
    # ------------------------------------------------------------------

    def list_ledger_entries(
        self,
        *,
        receiver_id: str | None = None,
        submission_id: str | None = None,
    ) -> list[LedgerEntry]:
        """List ledger entries for a receiver and/or a submission, oldest first."""
        query = "SELECT * FROM ledger_entries"
        clauses: list[str] = []
        params: list[object] = []
        if receiver_id is not None:
            clauses.append("receiver_id = ?")
            params.append(receiver_id)
        if submission_id is not None:
            clauses.append("submission_id = ?")
            params.append(submission_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, entry_id"
        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_ledger_entry(row) for row in rows]

    def get_earnings(self, user_id: str) -> UserEarnings:
        """Return cumulative earnings; users with no payouts yet report zeros."""
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM user_earnings WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return UserEarnings(
                user_id=user_id, total_earnings=0, total_tasks_completed=0, updated_at=None
            )
        return UserEarnings(**dict(row))

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def create_dispute(self, dispute: Dispute) -> None:
        """
        Insert a pending dispute and move its submission from rejected to disputed.

        Raises:
            DisputePendingError: If the submission already has a pending dispute
            DuplicateSubmissionError: If the worker has another open submission
                for the task
            StaleStatusError: If the submission is no longer rejected
        """
        data = dispute.to_dict()
        columns = list(data)
        values = [
            str(data[c]) if c in {"status", "ruling"} and data[c] is not None else data[c]
            for c in columns
        ]
        try:
            with self._transaction() as db:
                db.execute(
                    f"INSERT INTO disputes ({', '.join(columns)}) "  # nosec B608
                    f"VALUES ({_placeholders(len(columns))})",
                    values,
                )
                cursor = db.execute(
                    "UPDATE submissions SET status = ? WHERE submission_id = ? AND status = ?",
                    (
                        str(SubmissionStatus.DISPUTED),
                        dispute.submission_id,
                        str(SubmissionStatus.REJECTED),
                    ),
                )
                if cursor.rowcount == 0:
                    row = db.execute(
                        "SELECT status FROM submissions WHERE submission_id = ?",
                        (dispute.submission_id,),
                    ).fetchone()
                    raise StaleStatusError(
                        "submission",
                        dispute.submission_id,
                        str(row["status"]) if row is not None else None,
                    )
        except sqlite3.IntegrityError as exc:
            message = str(exc).lower()
            if "unique" in message and "disputes." in message:
                raise DisputePendingError(
                    f"Submission {dispute.submission_id} already has a pending dispute"
                ) from exc
            if "unique" in message:
                raise DuplicateSubmissionError(
                    f"Worker {dispute.worker_id} already has an open submission "
                    f"for task {dispute.task_id}"
                ) from exc
            raise

    def get_dispute(self, dispute_id: str) -> Dispute | None:
        """Fetch a dispute by ID."""
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM disputes WHERE dispute_id = ?", (dispute_id,)
            ).fetchone()
        return self._row_to_dispute(row) if row is not None else None

    def find_pending_dispute(self, submission_id: str) -> Dispute | None:
        """Return the pending dispute for a submission, if any."""
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM disputes WHERE submission_id = ? AND status = ?",
                (submission_id, str(DisputeStatus.PENDING)),
            ).fetchone()
        return self._row_to_dispute(row) if row is not None else None

    def list_disputes(self, status: str | None) -> list[Dispute]:
        """List disputes, oldest first, optionally filtered by status."""
        query = "SELECT * FROM disputes"
        params: list[object] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY filed_at, dispute_id"
        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_dispute(row) for row in rows]

    def resolve_dispute_for_employer(
        self,
        dispute_id: str,
        submission_id: str,
        *,
        admin_id: str | None,
        admin_notes: str,
        now: str,
    ) -> None:
        """
        Resolve a pending dispute in the employer's favour and return the
        submission from disputed to rejected, in one transaction.

        Raises:
            StaleStatusError: If the dispute is not pending or the submission is not disputed
        """
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE disputes SET status = ?, ruling = ?, admin_id = ?, admin_notes = ?, "
                "resolved_at = ? WHERE dispute_id = ? AND status = ?",
                (
                    str(DisputeStatus.RESOLVED),
                    str(DisputeRuling.IN_FAVOR_OF_EMPLOYER),
                    admin_id,
                    admin_notes,
                    now,
                    dispute_id,
                    str(DisputeStatus.PENDING),
                ),
            )
            if cursor.rowcount == 0:
                raise StaleStatusError("dispute", dispute_id, None)

            cursor = db.execute(
                "UPDATE submissions SET status = ? WHERE submission_id = ? AND status = ?",
                (
                    str(SubmissionStatus.REJECTED),
                    submission_id,
                    str(SubmissionStatus.DISPUTED),
                ),
            )
            if cursor.rowcount == 0:
                raise StaleStatusError("submission", submission_id, None)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
