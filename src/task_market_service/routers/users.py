"""Worker earnings endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from task_market_service.core.state import get_app_state
from task_market_service.schemas import EarningsResponse

router = APIRouter()


@router.get("/users/{user_id}/earnings", response_model=EarningsResponse)
async def get_earnings(user_id: str) -> EarningsResponse:
    """Cumulative earnings credited to a user."""
    state = get_app_state()
    if state.store is None:
        msg = "MarketStore not initialized"
        raise RuntimeError(msg)

    earnings = state.store.get_earnings(user_id)
    return EarningsResponse(**earnings.to_dict())


@router.get("/users/{user_id}/ledger")
async def get_ledger(user_id: str) -> dict[str, Any]:
    """Ledger entries credited to a user, oldest first."""
    state = get_app_state()
    if state.store is None:
        msg = "MarketStore not initialized"
        raise RuntimeError(msg)

    entries = state.store.list_ledger_entries(receiver_id=user_id)
    return {"user_id": user_id, "entries": [entry.to_dict() for entry in entries]}
