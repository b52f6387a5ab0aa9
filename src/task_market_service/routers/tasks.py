"""Task endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_market_service.core.state import get_app_state
from task_market_service.routers.validation import (
    optional_str,
    parse_json_body,
    parse_pagination,
    require_int,
    require_str,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks: create task (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Create a new task with all slots free."""
    data = parse_json_body(await request.body())

    employer_id = require_str(data, "employer_id")
    title = require_str(data, "title")
    description = require_str(data, "description")
    reward = require_int(data, "reward", error="INVALID_AMOUNT")
    slots = require_int(data, "slots")
    deadline = optional_str(data, "deadline")

    state = get_app_state()
    if state.task_registry is None:
        msg = "TaskRegistry not initialized"
        raise RuntimeError(msg)

    task = state.task_registry.create_task(
        employer_id=employer_id,
        title=title,
        description=description,
        reward=reward,
        slots=slots,
        deadline=deadline,
    )
    return JSONResponse(status_code=201, content=task.to_dict())


# ---------------------------------------------------------------------------
# GET /tasks: list tasks (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional filters."""
    status = request.query_params.get("status")
    employer_id = request.query_params.get("employer_id")
    limit, offset = parse_pagination(request.query_params)

    state = get_app_state()
    if state.task_registry is None:
        msg = "TaskRegistry not initialized"
        raise RuntimeError(msg)

    tasks = state.task_registry.list_tasks(
        status=status,
        employer_id=employer_id,
        limit=limit,
        offset=offset,
    )
    return {"tasks": [task.to_dict() for task in tasks]}


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    """Get a single task."""
    state = get_app_state()
    if state.task_registry is None:
        msg = "TaskRegistry not initialized"
        raise RuntimeError(msg)

    return state.task_registry.get_task(task_id).to_dict()


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> JSONResponse:
    """Cancel a task; the caller must be its employer."""
    data = parse_json_body(await request.body())
    employer_id = require_str(data, "employer_id")

    state = get_app_state()
    if state.task_registry is None:
        msg = "TaskRegistry not initialized"
        raise RuntimeError(msg)

    task = state.task_registry.cancel_task(task_id, employer_id)
    return JSONResponse(status_code=200, content=task.to_dict())


@router.post("/tasks/{task_id}/reconcile-slots")
async def reconcile_slots(task_id: str) -> dict[str, Any]:
    """Recompute remaining slots from paid submissions."""
    state = get_app_state()
    if state.slot_allocator is None:
        msg = "SlotAllocator not initialized"
        raise RuntimeError(msg)

    return state.slot_allocator.reconcile(task_id).to_dict()
