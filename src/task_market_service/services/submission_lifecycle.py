"""Submission state machine."""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.models import (
    OPEN_SUBMISSION_STATUSES,
    SUBMISSION_TRANSITIONS,
    Submission,
    SubmissionStatus,
    TaskStatus,
    sources_for,
)
from task_market_service.services.market_store import DuplicateSubmissionError
from task_market_service.timestamps import parse_iso, to_iso, utc_now

if TYPE_CHECKING:
    from task_market_service.models import PaymentReference, SettlementResult
    from task_market_service.services.market_store import MarketStore
    from task_market_service.services.settlement_coordinator import SettlementCoordinator


def invalid_transition(
    current: SubmissionStatus | str | None,
    attempted: SubmissionStatus,
) -> ServiceError:
    """Build the INVALID_STATE_TRANSITION error naming both states."""
    return ServiceError(
        "INVALID_STATE_TRANSITION",
        f"Cannot move submission from {current} to {attempted}",
        409,
        {
            "current_status": str(current) if current is not None else None,
            "attempted_status": str(attempted),
        },
    )


class SubmissionLifecycle:
    """
    Drives one worker's submission through review.

    Every transition is checked against SUBMISSION_TRANSITIONS and then
    written as a conditional update on the expected source statuses, so
    a concurrent transition loses cleanly instead of overwriting.
    Approval is delegated to the settlement coordinator, which writes
    the terminal approved status together with the payout.
    """

    def __init__(
        self,
        store: MarketStore,
        settlement_coordinator: SettlementCoordinator,
        revision_window_seconds: int,
    ) -> None:
        self._store = store
        self._settlement_coordinator = settlement_coordinator
        self._revision_window = timedelta(seconds=revision_window_seconds)
        self._logger = get_logger(__name__)

    def submit(self, task_id: str, worker_id: str, proof: str) -> Submission:
        """
        Record a worker's proof of completion for a task.

        Raises:
            ServiceError: INVALID_PAYLOAD, TASK_NOT_FOUND, TASK_NOT_AVAILABLE,
                TASK_EXPIRED, NO_SLOTS_AVAILABLE, DUPLICATE_SUBMISSION
        """
        if not proof.strip():
            raise ServiceError("INVALID_PAYLOAD", "Proof must not be empty", 400)

        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)
        if task.status is TaskStatus.CANCELLED:
            raise ServiceError("TASK_NOT_AVAILABLE", "Task has been cancelled", 409)

        now = utc_now()
        if parse_iso(task.deadline) <= now:
            raise ServiceError(
                "TASK_EXPIRED",
                "Task deadline has passed",
                409,
                {"deadline": task.deadline},
            )
        if task.slots_remaining <= 0:
            raise ServiceError(
                "NO_SLOTS_AVAILABLE",
                "Task has no remaining slots",
                409,
                {"task_id": task_id, "slots_remaining": task.slots_remaining},
            )

        existing = self._store.find_open_submission(task_id, worker_id, OPEN_SUBMISSION_STATUSES)
        if existing is not None:
            raise duplicate_submission(existing.submission_id)

        submission = Submission(
            submission_id=f"sub-{uuid.uuid4()}",
            task_id=task_id,
            worker_id=worker_id,
            proof=proof,
            status=SubmissionStatus.SUBMITTED,
            revision_number=0,
            agreed_reward=task.reward,
            submitted_at=to_iso(now),
        )
        try:
            self._store.insert_submission(submission)
        except DuplicateSubmissionError as exc:
            raise duplicate_submission(None) from exc

        self._logger.info(
            "Submission created",
            extra={
                "submission_id": submission.submission_id,
                "task_id": task_id,
                "worker_id": worker_id,
                "agreed_reward": submission.agreed_reward,
            },
        )
        return submission

    def get_submission(self, submission_id: str) -> Submission:
        submission = self._store.get_submission(submission_id)
        if submission is None:
            raise ServiceError("SUBMISSION_NOT_FOUND", "Submission not found", 404)
        return submission

    def list_submissions(
        self,
        task_id: str | None = None,
        worker_id: str | None = None,
        status: str | None = None,
    ) -> list[Submission]:
        """List submissions, rejecting unknown status filters."""
        if status is not None and status not in {s.value for s in SubmissionStatus}:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Unknown submission status: {status}",
                400,
                {"allowed": sorted(s.value for s in SubmissionStatus)},
            )
        if task_id is not None and self._store.get_task(task_id) is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)
        return self._store.list_submissions(task_id=task_id, worker_id=worker_id, status=status)

    def request_revision(self, submission_id: str, reason: str) -> Submission:
        """Ask the worker to revise; only from submitted."""
        if not reason.strip():
            raise ServiceError("INVALID_REASON", "Revision reason must not be empty", 400)

        deadline = utc_now() + self._revision_window
        return self._transition(
            submission_id,
            SubmissionStatus.REVISION_REQUESTED,
            {"revision_reason": reason.strip(), "revision_deadline": to_iso(deadline)},
        )

    def resubmit(self, submission_id: str, proof: str) -> Submission:
        """
        Submit revised proof; only from revision_requested and before the revision deadline.

        Raises:
            ServiceError: INVALID_PAYLOAD, SUBMISSION_NOT_FOUND,
                INVALID_STATE_TRANSITION, REVISION_WINDOW_CLOSED
        """
        if not proof.strip():
            raise ServiceError("INVALID_PAYLOAD", "Proof must not be empty", 400)

        submission = self.get_submission(submission_id)
        if submission.status is not SubmissionStatus.REVISION_REQUESTED:
            raise invalid_transition(submission.status, SubmissionStatus.REVISION_RESUBMITTED)

        now = utc_now()
        deadline = submission.revision_deadline
        if deadline is not None and parse_iso(deadline) < now:
            raise ServiceError(
                "REVISION_WINDOW_CLOSED",
                "The revision window for this submission has closed",
                409,
                {"revision_deadline": submission.revision_deadline},
            )

        return self._transition(
            submission_id,
            SubmissionStatus.REVISION_RESUBMITTED,
            {
                "proof": proof,
                "revision_number": submission.revision_number + 1,
                "resubmitted_at": to_iso(now),
            },
        )

    def reject(self, submission_id: str, reason: str) -> Submission:
        """Reject with a reason; only from submitted or revision_resubmitted."""
        if not reason.strip():
            raise ServiceError("INVALID_REASON", "Rejection reason must not be empty", 400)

        return self._transition(
            submission_id,
            SubmissionStatus.REJECTED,
            {"rejection_reason": reason.strip(), "reviewed_at": to_iso(utc_now())},
            allowed_from=frozenset(
                {SubmissionStatus.SUBMITTED, SubmissionStatus.REVISION_RESUBMITTED}
            ),
        )

    async def approve(self, submission_id: str, payment: PaymentReference) -> SettlementResult:
        """
        Approve and pay a submission; only from submitted or revision_resubmitted.

        The approved status is written by the settlement coordinator in the
        same transaction as the payout.
        """
        submission = self.get_submission(submission_id)
        if submission.status not in {
            SubmissionStatus.SUBMITTED,
            SubmissionStatus.REVISION_RESUBMITTED,
            SubmissionStatus.APPROVED,
        }:
            raise invalid_transition(submission.status, SubmissionStatus.APPROVED)

        return await self._settlement_coordinator.settle(submission_id, payment)

    def _transition(
        self,
        submission_id: str,
        target: SubmissionStatus,
        updates: dict[str, object],
        allowed_from: frozenset[SubmissionStatus] | None = None,
    ) -> Submission:
        sources = sources_for(target) if allowed_from is None else allowed_from

        submission = self.get_submission(submission_id)
        allowed = target in SUBMISSION_TRANSITIONS[submission.status]
        if submission.status not in sources or not allowed:
            raise invalid_transition(submission.status, target)

        affected = self._store.transition_submission(
            submission_id,
            from_statuses=sources,
            to_status=target,
            updates=updates,
        )
        if affected == 0:
            current = self._store.get_submission(submission_id)
            raise invalid_transition(current.status if current else None, target)

        updated = self.get_submission(submission_id)
        self._logger.info(
            "Submission status changed",
            extra={
                "submission_id": submission_id,
                "from_status": str(submission.status),
                "to_status": str(target),
            },
        )
        return updated


def duplicate_submission(existing_id: str | None) -> ServiceError:
    """Build the DUPLICATE_SUBMISSION error, naming the open submission when known."""
    details: dict[str, object] = {}
    if existing_id is not None:
        details["submission_id"] = existing_id
    return ServiceError(
        "DUPLICATE_SUBMISSION",
        "Worker already has an open submission for this task",
        409,
        details,
    )
