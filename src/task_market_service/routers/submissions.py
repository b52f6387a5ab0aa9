"""Submission review endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_market_service.core.state import get_app_state
from task_market_service.routers.validation import (
    parse_json_body,
    parse_payment_reference,
    require_str,
)
from task_market_service.schemas import ErrorResponse

if TYPE_CHECKING:
    from task_market_service.services.submission_lifecycle import SubmissionLifecycle

router = APIRouter()

_CONFLICT_RESPONSES: dict[int | str, dict[str, Any]] = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def _lifecycle() -> SubmissionLifecycle:
    state = get_app_state()
    if state.submission_lifecycle is None:
        msg = "SubmissionLifecycle not initialized"
        raise RuntimeError(msg)
    return state.submission_lifecycle


@router.post("/tasks/{task_id}/submissions", status_code=201, responses=_CONFLICT_RESPONSES)
async def submit(task_id: str, request: Request) -> JSONResponse:
    """Submit proof of completion for a task."""
    data = parse_json_body(await request.body())
    worker_id = require_str(data, "worker_id")
    proof = require_str(data, "proof")

    submission = _lifecycle().submit(task_id, worker_id, proof)
    return JSONResponse(status_code=201, content=submission.to_dict())


@router.get("/tasks/{task_id}/submissions")
async def list_task_submissions(task_id: str, request: Request) -> dict[str, Any]:
    """List submissions for a task."""
    status = request.query_params.get("status")
    worker_id = request.query_params.get("worker_id")
    submissions = _lifecycle().list_submissions(task_id=task_id, worker_id=worker_id, status=status)
    return {"task_id": task_id, "submissions": [s.to_dict() for s in submissions]}


@router.get("/submissions/{submission_id}")
async def get_submission(submission_id: str) -> dict[str, Any]:
    """Get a single submission."""
    return _lifecycle().get_submission(submission_id).to_dict()


@router.post("/submissions/{submission_id}/request-revision", responses=_CONFLICT_RESPONSES)
async def request_revision(submission_id: str, request: Request) -> dict[str, Any]:
    """Ask the worker for a revision."""
    data = parse_json_body(await request.body())
    reason = require_str(data, "reason", error="INVALID_REASON")
    return _lifecycle().request_revision(submission_id, reason).to_dict()


@router.post("/submissions/{submission_id}/resubmit", responses=_CONFLICT_RESPONSES)
async def resubmit(submission_id: str, request: Request) -> dict[str, Any]:
    """Resubmit revised proof."""
    data = parse_json_body(await request.body())
    proof = require_str(data, "proof")
    return _lifecycle().resubmit(submission_id, proof).to_dict()


@router.post("/submissions/{submission_id}/approve", responses=_CONFLICT_RESPONSES)
async def approve(submission_id: str, request: Request) -> dict[str, Any]:
    """Approve a submission and settle its payment."""
    data = parse_json_body(await request.body())
    payment = parse_payment_reference(data)
    result = await _lifecycle().approve(submission_id, payment)
    return result.to_dict()


@router.post("/submissions/{submission_id}/reject", responses=_CONFLICT_RESPONSES)
async def reject(submission_id: str, request: Request) -> dict[str, Any]:
    """Reject a submission with a reason."""
    data = parse_json_body(await request.body())
    reason = require_str(data, "reason", error="INVALID_REASON")
    return _lifecycle().reject(submission_id, reason).to_dict()
