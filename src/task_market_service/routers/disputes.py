"""Dispute endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_market_service.core.exceptions import ServiceError
from task_market_service.core.state import get_app_state
from task_market_service.models import DisputeRuling
from task_market_service.routers.validation import (
    optional_str,
    parse_json_body,
    parse_payment_reference,
    require_str,
)

if TYPE_CHECKING:
    from task_market_service.services.dispute_resolver import DisputeResolver

router = APIRouter()


def _resolver() -> DisputeResolver:
    state = get_app_state()
    if state.dispute_resolver is None:
        msg = "DisputeResolver not initialized"
        raise RuntimeError(msg)
    return state.dispute_resolver


@router.post("/submissions/{submission_id}/disputes", status_code=201)
async def file_dispute(submission_id: str, request: Request) -> JSONResponse:
    """File a dispute against a rejected submission."""
    data = parse_json_body(await request.body())
    reason = require_str(data, "reason", error="INVALID_REASON")
    dispute = _resolver().file_dispute(submission_id, reason)
    return JSONResponse(status_code=201, content=dispute.to_dict())


@router.get("/disputes")
async def list_disputes(request: Request) -> dict[str, Any]:
    """List disputes, optionally filtered by status."""
    status = request.query_params.get("status")
    return {"disputes": [d.to_dict() for d in _resolver().list_disputes(status)]}


@router.get("/disputes/{dispute_id}")
async def get_dispute(dispute_id: str) -> dict[str, Any]:
    """Get a single dispute."""
    return _resolver().get_dispute(dispute_id).to_dict()


@router.post("/disputes/{dispute_id}/resolve")
async def resolve_dispute(dispute_id: str, request: Request) -> dict[str, Any]:
    """Apply an admin ruling; a ruling for the worker also settles payment."""
    data = parse_json_body(await request.body())
    ruling_raw = require_str(data, "ruling")
    try:
        ruling = DisputeRuling(ruling_raw)
    except ValueError as exc:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Unknown ruling: {ruling_raw}",
            400,
            {"allowed": sorted(r.value for r in DisputeRuling)},
        ) from exc
    admin_notes = require_str(data, "admin_notes")
    admin_id = optional_str(data, "admin_id")

    payment = None
    if ruling is DisputeRuling.IN_FAVOR_OF_WORKER:
        payment = parse_payment_reference(data)

    dispute, settlement = await _resolver().resolve(
        dispute_id,
        ruling,
        admin_notes,
        admin_id=admin_id,
        payment=payment,
    )
    return {
        "dispute": dispute.to_dict(),
        "settlement": settlement.to_dict() if settlement is not None else None,
    }
