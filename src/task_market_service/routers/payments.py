"""Payment gateway callback endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request

from task_market_service.core.state import get_app_state
from task_market_service.routers.validation import (
    parse_json_body,
    parse_payment_reference,
    require_str,
)

if TYPE_CHECKING:
    from task_market_service.services.settlement_coordinator import SettlementCoordinator

router = APIRouter()


def _coordinator() -> SettlementCoordinator:
    state = get_app_state()
    if state.settlement_coordinator is None:
        msg = "SettlementCoordinator not initialized"
        raise RuntimeError(msg)
    return state.settlement_coordinator


@router.post("/payments/approve")
async def approve_payment(request: Request) -> dict[str, Any]:
    """Server-side approval of a user-initiated payment."""
    data = parse_json_body(await request.body())
    payment_id = require_str(data, "payment_id")
    await _coordinator().approve_payment(payment_id)
    return {"payment_id": payment_id, "approved": True}


@router.post("/payments/complete")
async def complete_payment(request: Request) -> dict[str, Any]:
    """Complete a payment and settle the submission it pays for."""
    data = parse_json_body(await request.body())
    payment = parse_payment_reference(data)
    submission_id = require_str(data, "submission_id")

    state = get_app_state()
    if state.submission_lifecycle is None:
        msg = "SubmissionLifecycle not initialized"
        raise RuntimeError(msg)

    result = await state.submission_lifecycle.approve(submission_id, payment)
    return result.to_dict()
