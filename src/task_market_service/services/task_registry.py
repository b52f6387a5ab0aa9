"""Task creation, lookup and cancellation."""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.models import Task, TaskStatus
from task_market_service.timestamps import parse_iso, to_iso, utc_now

if TYPE_CHECKING:
    from task_market_service.services.market_store import MarketStore


class TaskRegistry:
    """Employer-facing task operations."""

    def __init__(
        self,
        store: MarketStore,
        min_reward: int,
        max_slots: int,
        default_deadline_seconds: int,
    ) -> None:
        self._store = store
        self._min_reward = min_reward
        self._max_slots = max_slots
        self._default_deadline = timedelta(seconds=default_deadline_seconds)
        self._logger = get_logger(__name__)

    def create_task(
        self,
        employer_id: str,
        title: str,
        description: str,
        reward: int,
        slots: int,
        deadline: str | None = None,
    ) -> Task:
        """
        Create an available task with all slots free.

        Raises:
            ServiceError: INVALID_PAYLOAD or INVALID_AMOUNT on bad input
        """
        if not title.strip():
            raise ServiceError("INVALID_PAYLOAD", "Title must not be empty", 400)
        if not description.strip():
            raise ServiceError("INVALID_PAYLOAD", "Description must not be empty", 400)
        if reward < self._min_reward:
            raise ServiceError(
                "INVALID_AMOUNT",
                f"Reward must be at least {self._min_reward} minor units",
                400,
                {"min_reward": self._min_reward},
            )
        if not 1 <= slots <= self._max_slots:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Slots must be between 1 and {self._max_slots}",
                400,
                {"max_slots": self._max_slots},
            )

        now = utc_now()
        if deadline is None:
            deadline_at = now + self._default_deadline
        else:
            try:
                deadline_at = parse_iso(deadline)
            except ValueError as exc:
                raise ServiceError(
                    "INVALID_PAYLOAD", "Deadline must be an ISO 8601 timestamp", 400
                ) from exc
            if deadline_at <= now:
                raise ServiceError("INVALID_PAYLOAD", "Deadline must be in the future", 400)

        created_at = to_iso(now)
        task = Task(
            task_id=f"t-{uuid.uuid4()}",
            employer_id=employer_id,
            title=title.strip(),
            description=description.strip(),
            reward=reward,
            slots_available=slots,
            slots_remaining=slots,
            status=TaskStatus.AVAILABLE,
            deadline=to_iso(deadline_at),
            created_at=created_at,
            updated_at=created_at,
        )
        self._store.insert_task(task)
        self._logger.info(
            "Task created",
            extra={
                "task_id": task.task_id,
                "employer_id": employer_id,
                "reward": reward,
                "slots": slots,
            },
        )
        return task

    def get_task(self, task_id: str) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)
        return task

    def list_tasks(
        self,
        status: str | None = None,
        employer_id: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Task]:
        if status is not None and status not in {s.value for s in TaskStatus}:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Unknown task status: {status}",
                400,
                {"allowed": sorted(s.value for s in TaskStatus)},
            )
        return self._store.list_tasks(status, employer_id, limit, offset)

    def cancel_task(self, task_id: str, employer_id: str) -> Task:
        """
        Cancel a task so it accepts no new submissions or approvals.

        Raises:
            ServiceError: TASK_NOT_FOUND, FORBIDDEN, INVALID_STATE_TRANSITION
        """
        task = self.get_task(task_id)
        if task.employer_id != employer_id:
            raise ServiceError("FORBIDDEN", "Only the task's employer can cancel it", 403)

        affected = self._store.update_task_status(
            task_id,
            TaskStatus.CANCELLED,
            expected_statuses=(TaskStatus.AVAILABLE, TaskStatus.FULL),
            now=to_iso(utc_now()),
        )
        if affected == 0:
            current = self.get_task(task_id)
            raise ServiceError(
                "INVALID_STATE_TRANSITION",
                f"Cannot cancel task in status {current.status}",
                409,
                {"current_status": str(current.status), "attempted_status": "cancelled"},
            )

        self._logger.info("Task cancelled", extra={"task_id": task_id})
        return self.get_task(task_id)
