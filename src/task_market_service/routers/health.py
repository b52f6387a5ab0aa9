"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from task_market_service.core.state import get_app_state
from task_market_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Report liveness plus the settlement figures an operator watches.

    The service is degraded while payments confirmed by the gateway still
    wait in the recovery store for their local records.
    """
    state = get_app_state()
    if state.store is None or state.recovery_store is None:
        msg = "Stores not initialized"
        raise RuntimeError(msg)

    pending_recovery = state.recovery_store.count_pending()
    return HealthResponse(
        status="degraded" if pending_recovery else "ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        tasks_by_status=state.store.count_tasks_by_status(),
        settlements_in_flight=state.store.count_slot_claims(),
        pending_recovery_records=pending_recovery,
    )
