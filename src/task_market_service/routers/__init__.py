"""API routers."""

from task_market_service.routers import (
    disputes,
    health,
    payments,
    recovery,
    submissions,
    tasks,
    users,
)

__all__ = ["disputes", "health", "payments", "recovery", "submissions", "tasks", "users"]
