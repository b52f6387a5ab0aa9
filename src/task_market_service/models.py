"""Canonical record types and status enums for tasks, submissions and settlement."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    """Task capacity status."""

    AVAILABLE = "available"
    FULL = "full"
    CANCELLED = "cancelled"


class SubmissionStatus(StrEnum):
    """Lifecycle status of one worker's attempt at one task."""

    SUBMITTED = "submitted"
    REVISION_REQUESTED = "revision_requested"
    REVISION_RESUBMITTED = "revision_resubmitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISPUTED = "disputed"


# Single authoritative transition table. APPROVED means "paid" and is terminal.
SUBMISSION_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.SUBMITTED: frozenset(
        {
            SubmissionStatus.REVISION_REQUESTED,
            SubmissionStatus.APPROVED,
            SubmissionStatus.REJECTED,
        }
    ),
    SubmissionStatus.REVISION_REQUESTED: frozenset({SubmissionStatus.REVISION_RESUBMITTED}),
    SubmissionStatus.REVISION_RESUBMITTED: frozenset(
        {SubmissionStatus.APPROVED, SubmissionStatus.REJECTED}
    ),
    SubmissionStatus.REJECTED: frozenset({SubmissionStatus.DISPUTED}),
    SubmissionStatus.DISPUTED: frozenset({SubmissionStatus.APPROVED, SubmissionStatus.REJECTED}),
    SubmissionStatus.APPROVED: frozenset(),
}

# Statuses that block the same worker from submitting to the same task again.
OPEN_SUBMISSION_STATUSES: frozenset[SubmissionStatus] = frozenset(
    {
        SubmissionStatus.SUBMITTED,
        SubmissionStatus.REVISION_REQUESTED,
        SubmissionStatus.REVISION_RESUBMITTED,
        SubmissionStatus.DISPUTED,
    }
)


def sources_for(target: SubmissionStatus) -> frozenset[SubmissionStatus]:
    """Return every status from which `target` can be reached."""
    return frozenset(
        source for source, targets in SUBMISSION_TRANSITIONS.items() if target in targets
    )


class LedgerStatus(StrEnum):
    """Ledger entry status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class DisputeStatus(StrEnum):
    """Dispute status; RESOLVED is terminal."""

    PENDING = "pending"
    RESOLVED = "resolved"


class DisputeRuling(StrEnum):
    """Admin ruling on a dispute."""

    IN_FAVOR_OF_WORKER = "in_favor_of_worker"
    IN_FAVOR_OF_EMPLOYER = "in_favor_of_employer"


class RecoveryStatus(StrEnum):
    """Whether a recovery record still awaits reconciliation."""

    PENDING = "pending"
    REPLAYED = "replayed"


class SettlementOutcome(StrEnum):
    """Caller-visible result of a settlement attempt."""

    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    RECORDED_FOR_RECOVERY = "recorded_for_recovery"


class _Record:
    def to_dict(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]


@dataclass(frozen=True)
class Task(_Record):
    """A unit of paid work with a fixed reward and a slot capacity."""

    task_id: str
    employer_id: str
    title: str
    description: str
    reward: int
    slots_available: int
    slots_remaining: int
    status: TaskStatus
    deadline: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Submission(_Record):
    """One worker's attempt at one task."""

    submission_id: str
    task_id: str
    worker_id: str
    proof: str
    status: SubmissionStatus
    revision_number: int
    agreed_reward: int
    submitted_at: str
    revision_reason: str | None = None
    revision_deadline: str | None = None
    resubmitted_at: str | None = None
    rejection_reason: str | None = None
    reviewed_at: str | None = None
    worker_payout: int | None = None
    platform_fee: int | None = None
    payment_id: str | None = None
    external_tx_id: str | None = None
    paid_at: str | None = None


@dataclass(frozen=True)
class LedgerEntry(_Record):
    """Append-only record of money credited to a receiver."""

    entry_id: str
    sender_id: str | None
    receiver_id: str
    amount: int
    platform_fee: int
    task_id: str
    submission_id: str
    payment_id: str
    external_tx_id: str | None
    status: LedgerStatus
    created_at: str
    # Payout computed from the fee split when the gateway confirmed a different amount
    computed_payout: int | None = None


@dataclass(frozen=True)
class Dispute(_Record):
    """A worker appeal against a rejected submission."""

    dispute_id: str
    submission_id: str
    task_id: str
    worker_id: str
    employer_id: str
    reason: str
    original_rejection_reason: str | None
    amount_in_dispute: int
    status: DisputeStatus
    filed_at: str
    ruling: DisputeRuling | None = None
    admin_id: str | None = None
    admin_notes: str | None = None
    resolved_at: str | None = None


@dataclass(frozen=True)
class UserEarnings(_Record):
    """Cumulative earnings for one worker."""

    user_id: str
    total_earnings: int
    total_tasks_completed: int
    updated_at: str | None


@dataclass(frozen=True)
class PaymentReference:
    """Identifiers of an external payment the gateway has been asked to complete."""

    payment_id: str
    external_tx_id: str


@dataclass(frozen=True)
class DisputeResolution:
    """Dispute update applied together with a worker-favourable settlement."""

    dispute_id: str
    ruling: DisputeRuling
    admin_id: str | None
    admin_notes: str


@dataclass(frozen=True)
class SettlementWrite:
    """Every input needed to apply (or replay) the local side of a settlement."""

    submission_id: str
    task_id: str
    worker_id: str
    employer_id: str | None
    payment_id: str
    external_tx_id: str
    amount: int
    platform_fee: int
    expected_statuses: frozenset[SubmissionStatus]
    dispute: DisputeResolution | None = None
    computed_payout: int | None = None


@dataclass(frozen=True)
class AppliedSettlement:
    """What the local settlement transaction changed."""

    ledger_entry_id: str
    slots_remaining: int
    task_now_full: bool
    slot_consumed: bool


@dataclass(frozen=True)
class RecoveryRecord(_Record):
    """External payment confirmed while the local write failed."""

    recovery_id: str
    payment_id: str
    external_tx_id: str
    submission_id: str
    worker_id: str
    task_id: str
    employer_id: str | None
    amount: int
    platform_fee: int
    expected_statuses: list[str]
    error: str
    status: RecoveryStatus
    created_at: str
    dispute_id: str | None = None
    ruling: DisputeRuling | None = None
    admin_id: str | None = None
    admin_notes: str | None = None
    computed_payout: int | None = None
    replayed_at: str | None = None

    def to_settlement_write(self) -> SettlementWrite:
        """Rebuild the settlement write captured by this record."""
        dispute = None
        if self.dispute_id is not None and self.ruling is not None:
            dispute = DisputeResolution(
                dispute_id=self.dispute_id,
                ruling=self.ruling,
                admin_id=self.admin_id,
                admin_notes=self.admin_notes or "",
            )
        return SettlementWrite(
            submission_id=self.submission_id,
            task_id=self.task_id,
            worker_id=self.worker_id,
            employer_id=self.employer_id,
            payment_id=self.payment_id,
            external_tx_id=self.external_tx_id,
            amount=self.amount,
            platform_fee=self.platform_fee,
            expected_statuses=frozenset(SubmissionStatus(s) for s in self.expected_statuses),
            dispute=dispute,
            computed_payout=self.computed_payout,
        )


@dataclass
class SettlementResult:
    """Result returned to the caller of a settlement."""

    outcome: SettlementOutcome
    submission_id: str
    payment_id: str
    external_tx_id: str
    worker_payout: int
    platform_fee: int
    ledger_entry_id: str | None = None
    slots_remaining: int | None = None
    recovery_id: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcome"] = str(self.outcome)
        return data
