"""Worker appeals against rejected submissions and admin rulings."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.models import (
    OPEN_SUBMISSION_STATUSES,
    Dispute,
    DisputeResolution,
    DisputeRuling,
    DisputeStatus,
    SubmissionStatus,
)
from task_market_service.services.market_store import (
    DisputePendingError,
    DuplicateSubmissionError,
    StaleStatusError,
)
from task_market_service.services.submission_lifecycle import (
    duplicate_submission,
    invalid_transition,
)
from task_market_service.timestamps import now_iso

if TYPE_CHECKING:
    from task_market_service.models import PaymentReference, SettlementResult
    from task_market_service.services.market_store import MarketStore
    from task_market_service.services.settlement_coordinator import SettlementCoordinator


class DisputeResolver:
    """Files disputes and applies admin rulings."""

    def __init__(
        self,
        store: MarketStore,
        settlement_coordinator: SettlementCoordinator,
        min_reason_length: int,
    ) -> None:
        self._store = store
        self._settlement_coordinator = settlement_coordinator
        self._min_reason_length = min_reason_length
        self._logger = get_logger(__name__)

    def file_dispute(self, submission_id: str, reason: str) -> Dispute:
        """
        Appeal a rejection.

        The dispute is created and the submission moves from rejected to
        disputed in one transaction.

        Raises:
            ServiceError: INVALID_REASON, SUBMISSION_NOT_FOUND, TASK_NOT_FOUND,
                DISPUTE_ALREADY_PENDING, INVALID_STATE_TRANSITION, DUPLICATE_SUBMISSION
        """
        stripped = reason.strip()
        if len(stripped) < self._min_reason_length:
            raise ServiceError(
                "INVALID_REASON",
                f"Dispute reason must be at least {self._min_reason_length} characters",
                400,
                {"min_length": self._min_reason_length, "length": len(stripped)},
            )

        submission = self._store.get_submission(submission_id)
        if submission is None:
            raise ServiceError("SUBMISSION_NOT_FOUND", "Submission not found", 404)

        pending = self._store.find_pending_dispute(submission_id)
        if pending is not None:
            raise _already_pending(pending.dispute_id)

        if submission.status is not SubmissionStatus.REJECTED:
            raise invalid_transition(submission.status, SubmissionStatus.DISPUTED)

        task = self._store.get_task(submission.task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)

        # A disputed submission counts as open, so a newer one blocks the appeal.
        newer = self._store.find_open_submission(
            submission.task_id, submission.worker_id, OPEN_SUBMISSION_STATUSES
        )
        if newer is not None:
            raise duplicate_submission(newer.submission_id)

        dispute = Dispute(
            dispute_id=f"dsp-{uuid.uuid4()}",
            submission_id=submission_id,
            task_id=submission.task_id,
            worker_id=submission.worker_id,
            employer_id=task.employer_id,
            reason=stripped,
            original_rejection_reason=submission.rejection_reason,
            amount_in_dispute=submission.agreed_reward,
            status=DisputeStatus.PENDING,
            filed_at=now_iso(),
        )
        try:
            self._store.create_dispute(dispute)
        except DisputePendingError as exc:
            raise _already_pending(None) from exc
        except DuplicateSubmissionError as exc:
            raise duplicate_submission(None) from exc
        except StaleStatusError as exc:
            raise invalid_transition(exc.current_status, SubmissionStatus.DISPUTED) from exc

        self._logger.info(
            "Dispute filed",
            extra={
                "dispute_id": dispute.dispute_id,
                "submission_id": submission_id,
                "worker_id": submission.worker_id,
                "amount_in_dispute": dispute.amount_in_dispute,
            },
        )
        return dispute

    def get_dispute(self, dispute_id: str) -> Dispute:
        dispute = self._store.get_dispute(dispute_id)
        if dispute is None:
            raise ServiceError("DISPUTE_NOT_FOUND", "Dispute not found", 404)
        return dispute

    def list_disputes(self, status: str | None = None) -> list[Dispute]:
        if status is not None and status not in {s.value for s in DisputeStatus}:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Unknown dispute status: {status}",
                400,
                {"allowed": sorted(s.value for s in DisputeStatus)},
            )
        return self._store.list_disputes(status)

    async def resolve(
        self,
        dispute_id: str,
        ruling: DisputeRuling,
        admin_notes: str,
        admin_id: str | None = None,
        payment: PaymentReference | None = None,
    ) -> tuple[Dispute, SettlementResult | None]:
        """
        Apply an admin ruling to a pending dispute.

        A ruling for the worker pays the disputed amount through the
        settlement coordinator and resolves the dispute inside the same
        local transaction. A ruling for the employer returns the
        submission to rejected.

        Returns:
            The dispute as stored after the ruling, and the settlement
            result for worker-favourable rulings

        Raises:
            ServiceError: INVALID_PAYLOAD, DISPUTE_NOT_FOUND,
                DISPUTE_ALREADY_RESOLVED, plus settlement errors
        """
        notes = admin_notes.strip()
        if not notes:
            raise ServiceError("INVALID_PAYLOAD", "Admin notes must not be empty", 400)

        dispute = self.get_dispute(dispute_id)
        if dispute.status is not DisputeStatus.PENDING:
            raise _already_resolved(dispute)

        if ruling is DisputeRuling.IN_FAVOR_OF_WORKER:
            if payment is None:
                raise ServiceError(
                    "INVALID_PAYLOAD",
                    "A payment reference is required to rule in favour of the worker",
                    400,
                )
            result = await self._settlement_coordinator.settle(
                dispute.submission_id,
                payment,
                reward=dispute.amount_in_dispute,
                expected_statuses=frozenset({SubmissionStatus.DISPUTED}),
                dispute=DisputeResolution(
                    dispute_id=dispute_id,
                    ruling=ruling,
                    admin_id=admin_id,
                    admin_notes=notes,
                ),
            )
            self._logger.info(
                "Dispute resolved in favour of worker",
                extra={
                    "dispute_id": dispute_id,
                    "submission_id": dispute.submission_id,
                    "outcome": str(result.outcome),
                },
            )
            return self.get_dispute(dispute_id), result

        try:
            self._store.resolve_dispute_for_employer(
                dispute_id,
                dispute.submission_id,
                admin_id=admin_id,
                admin_notes=notes,
                now=now_iso(),
            )
        except StaleStatusError as exc:
            current = self.get_dispute(dispute_id)
            if current.status is not DisputeStatus.PENDING:
                raise _already_resolved(current) from exc
            submission = self._store.get_submission(dispute.submission_id)
            raise invalid_transition(
                submission.status if submission else None, SubmissionStatus.REJECTED
            ) from exc

        self._logger.info(
            "Dispute resolved in favour of employer",
            extra={"dispute_id": dispute_id, "submission_id": dispute.submission_id},
        )
        return self.get_dispute(dispute_id), None


def _already_pending(dispute_id: str | None) -> ServiceError:
    return ServiceError(
        "DISPUTE_ALREADY_PENDING",
        "A dispute is already pending for this submission",
        409,
        {"dispute_id": dispute_id} if dispute_id is not None else {},
    )


def _already_resolved(dispute: Dispute) -> ServiceError:
    return ServiceError(
        "DISPUTE_ALREADY_RESOLVED",
        "Dispute has already been resolved",
        409,
        {"ruling": str(dispute.ruling) if dispute.ruling else None},
    )
