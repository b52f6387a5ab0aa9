"""Task capacity accounting."""

from __future__ import annotations

from typing import TYPE_CHECKING

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.models import TaskStatus
from task_market_service.services.settlement_coordinator import APPROVABLE_STATUSES
from task_market_service.timestamps import now_iso

if TYPE_CHECKING:
    from task_market_service.models import Task
    from task_market_service.services.market_store import MarketStore


class SlotAllocator:
    """
    Tracks how many more paid submissions a task can accept.

    Slots are consumed only when a submission is paid, never at submit
    time. Before the external payment starts, the settlement reserves a
    slot with a claim; the claim is turned into a decrement inside the
    settlement transaction, or released if the payment fails. Claims
    held by other submissions do not count as free capacity, so two
    approvals racing for the last slot cannot both pay.
    """

    def __init__(self, store: MarketStore) -> None:
        self._store = store
        self._logger = get_logger(__name__)

    def reserve(self, task_id: str, submission_id: str) -> Task:
        """
        Hold one slot of the task for the submission's settlement.

        Raises:
            ServiceError: TASK_NOT_FOUND, TASK_NOT_AVAILABLE (cancelled task),
                NO_SLOTS_AVAILABLE (no unclaimed slot left)
        """
        result = self._store.claim_slot(task_id, submission_id, now_iso())
        if result is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)

        task, claimed_by_others, claimed = result
        if claimed:
            self._logger.info(
                "Slot reserved",
                extra={
                    "task_id": task_id,
                    "submission_id": submission_id,
                    "slots_remaining": task.slots_remaining,
                    "slots_claimed_by_others": claimed_by_others,
                },
            )
            return task

        if task.status is TaskStatus.CANCELLED:
            raise ServiceError("TASK_NOT_AVAILABLE", "Task has been cancelled", 409)
        raise ServiceError(
            "NO_SLOTS_AVAILABLE",
            "Task has no remaining slots",
            409,
            {
                "task_id": task_id,
                "slots_remaining": task.slots_remaining,
                "slots_claimed": claimed_by_others,
            },
        )

    def release(self, submission_id: str) -> None:
        """Give back a reserved slot whose payment did not go through."""
        self._store.release_slot(submission_id)
        self._logger.info("Slot reservation released", extra={"submission_id": submission_id})

    def reconcile(self, task_id: str) -> Task:
        """
        Recompute slots_remaining from the number of paid submissions.

        Repairs counters left behind by partially applied settlements and
        drops slot claims whose submission can no longer be paid.

        Raises:
            ServiceError: TASK_NOT_FOUND if the task does not exist
        """
        before = self._store.get_task(task_id)
        if before is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)

        cleared = self._store.clear_stale_claims(task_id, APPROVABLE_STATUSES)
        if cleared:
            self._logger.warning(
                "Stale slot claims cleared", extra={"task_id": task_id, "claims_cleared": cleared}
            )

        paid = self._store.count_paid_submissions(task_id)
        task = self._store.reset_slots(task_id, paid, now_iso())
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)

        if task.slots_remaining != before.slots_remaining or task.status != before.status:
            self._logger.warning(
                "Task slots reconciled",
                extra={
                    "task_id": task_id,
                    "paid_submissions": paid,
                    "slots_remaining_before": before.slots_remaining,
                    "slots_remaining_after": task.slots_remaining,
                    "status_before": str(before.status),
                    "status_after": str(task.status),
                },
            )
        return task
