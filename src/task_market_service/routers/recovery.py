"""Operator endpoints for settlement recovery records."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request

from task_market_service.core.state import get_app_state

if TYPE_CHECKING:
    from task_market_service.services.settlement_coordinator import SettlementCoordinator

router = APIRouter()


def _coordinator() -> SettlementCoordinator:
    state = get_app_state()
    if state.settlement_coordinator is None:
        msg = "SettlementCoordinator not initialized"
        raise RuntimeError(msg)
    return state.settlement_coordinator


@router.get("/recovery-records")
async def list_recovery_records(request: Request) -> dict[str, Any]:
    """List recovery records, optionally filtered by status."""
    status = request.query_params.get("status")
    records = _coordinator().list_recovery_records(status)
    return {"recovery_records": [record.to_dict() for record in records]}


@router.post("/recovery-records/{recovery_id}/replay")
async def replay_recovery_record(recovery_id: str) -> dict[str, Any]:
    """Re-apply the local side of a settlement from a pending record."""
    return _coordinator().replay_recovery(recovery_id).to_dict()
