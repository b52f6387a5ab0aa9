"""Shared test helpers: config text and record factories."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from task_market_service.models import (
    Dispute,
    DisputeStatus,
    Submission,
    SubmissionStatus,
    Task,
    TaskStatus,
)
from task_market_service.timestamps import to_iso

# 1 Pi at 7 decimal places
PI = 10_000_000


def make_config(db_path: str, recovery_path: str, **overrides: Any) -> str:
    """Render a complete YAML config pointing at temp databases."""
    values: dict[str, Any] = {
        "platform_fee_bps": 1500,
        "verify_confirmed_amount": "true",
        "min_reward": 100000,
        "max_slots": 100,
        "revision_window_seconds": 604800,
        "min_reason_length": 20,
        "max_body_size": 1048576,
        "api_key_env": "PI_API_KEY",
    }
    values.update(overrides)
    return f"""\
service:
  name: "task-market"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{db_path}.logs"
database:
  path: "{db_path}"
  recovery_path: "{recovery_path}"
payment_gateway:
  base_url: "http://mock-gateway"
  api_key_env: "{values["api_key_env"]}"
  timeout_seconds: 5
settlement:
  platform_fee_bps: {values["platform_fee_bps"]}
  currency_decimals: 7
  verify_confirmed_amount: {values["verify_confirmed_amount"]}
tasks:
  min_reward: {values["min_reward"]}
  max_slots: {values["max_slots"]}
  default_deadline_seconds: 604800
submissions:
  revision_window_seconds: {values["revision_window_seconds"]}
disputes:
  min_reason_length: {values["min_reason_length"]}
request:
  max_body_size: {values["max_body_size"]}
"""


def make_task(
    *,
    task_id: str | None = None,
    employer_id: str = "u-employer",
    reward: int = 10 * PI,
    slots: int = 1,
    slots_remaining: int | None = None,
    status: TaskStatus = TaskStatus.AVAILABLE,
    deadline: datetime | None = None,
) -> Task:
    now = datetime.now(UTC)
    return Task(
        task_id=task_id or f"t-{uuid.uuid4()}",
        employer_id=employer_id,
        title="Translate a paragraph",
        description="Translate the attached paragraph into French",
        reward=reward,
        slots_available=slots,
        slots_remaining=slots if slots_remaining is None else slots_remaining,
        status=status,
        deadline=to_iso(deadline or now + timedelta(days=7)),
        created_at=to_iso(now),
        updated_at=to_iso(now),
    )


def make_submission(
    task: Task,
    *,
    worker_id: str = "u-worker",
    status: SubmissionStatus = SubmissionStatus.SUBMITTED,
    rejection_reason: str | None = None,
) -> Submission:
    return Submission(
        submission_id=f"sub-{uuid.uuid4()}",
        task_id=task.task_id,
        worker_id=worker_id,
        proof="https://example.com/proof.png",
        status=status,
        revision_number=0,
        agreed_reward=task.reward,
        submitted_at=to_iso(datetime.now(UTC)),
        rejection_reason=rejection_reason,
    )


def make_dispute_record(
    task: Task,
    submission: Submission,
    *,
    reason: str = "The proof shows the work was completed as described",
) -> Dispute:
    return Dispute(
        dispute_id=f"dsp-{uuid.uuid4()}",
        submission_id=submission.submission_id,
        task_id=task.task_id,
        worker_id=submission.worker_id,
        employer_id=task.employer_id,
        reason=reason,
        original_rejection_reason=submission.rejection_reason,
        amount_in_dispute=submission.agreed_reward,
        status=DisputeStatus.PENDING,
        filed_at=to_iso(datetime.now(UTC)),
    )
