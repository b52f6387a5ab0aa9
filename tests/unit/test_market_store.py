"""Unit tests for MarketStore."""

from __future__ import annotations

import sqlite3
from dataclasses import replace

import pytest

from task_market_service.models import (
    DisputeResolution,
    DisputeRuling,
    DisputeStatus,
    LedgerStatus,
    SettlementWrite,
    SubmissionStatus,
    TaskStatus,
)
from task_market_service.services.market_store import (
    DisputePendingError,
    DuplicateSubmissionError,
    SlotsExhaustedError,
    StaleStatusError,
)
from task_market_service.timestamps import now_iso
from tests.helpers import PI, make_dispute_record, make_submission, make_task


def _write(submission, *, amount=85_000_000, fee=15_000_000, expected=None, dispute=None):
    return SettlementWrite(
        submission_id=submission.submission_id,
        task_id=submission.task_id,
        worker_id=submission.worker_id,
        employer_id="u-employer",
        payment_id="pay-1",
        external_tx_id="tx-1",
        amount=amount,
        platform_fee=fee,
        expected_statuses=expected
        or frozenset({SubmissionStatus.SUBMITTED, SubmissionStatus.REVISION_RESUBMITTED}),
        dispute=dispute,
    )


@pytest.mark.unit
def test_insert_and_get_task(store) -> None:
    task = make_task(slots=3)
    store.insert_task(task)

    fetched = store.get_task(task.task_id)
    assert fetched == task
    assert fetched.status is TaskStatus.AVAILABLE
    assert store.get_task("t-missing") is None


@pytest.mark.unit
def test_slots_check_constraint_rejects_remaining_above_available(store) -> None:
    with pytest.raises(sqlite3.IntegrityError):
        store.insert_task(make_task(slots=1, slots_remaining=2))


@pytest.mark.unit
def test_list_tasks_filters_and_paginates(store) -> None:
    first = make_task(employer_id="u-a")
    second = make_task(employer_id="u-b")
    third = make_task(employer_id="u-a", status=TaskStatus.CANCELLED)
    for task in (first, second, third):
        store.insert_task(task)

    assert {t.task_id for t in store.list_tasks(None, "u-a", None, None)} == {
        first.task_id,
        third.task_id,
    }
    assert [t.task_id for t in store.list_tasks("cancelled", None, None, None)] == [third.task_id]
    assert len(store.list_tasks(None, None, 2, 0)) == 2
    assert len(store.list_tasks(None, None, 2, 2)) == 1


@pytest.mark.unit
def test_claim_slot_holds_capacity_for_one_submission(store) -> None:
    task = make_task(slots=1)
    store.insert_task(task)
    first = make_submission(task)
    second = make_submission(task, worker_id="u-other")
    store.insert_submission(first)
    store.insert_submission(second)

    _, others, claimed = store.claim_slot(task.task_id, first.submission_id, now_iso())
    assert (others, claimed) == (0, True)

    _, others, claimed = store.claim_slot(task.task_id, second.submission_id, now_iso())
    assert (others, claimed) == (1, False)

    # The same submission joins its own claim
    _, _, claimed = store.claim_slot(task.task_id, first.submission_id, now_iso())
    assert claimed is True
    assert store.count_slot_claims(task.task_id) == 1

    store.release_slot(first.submission_id)
    assert store.count_slot_claims(task.task_id) == 1
    store.release_slot(first.submission_id)
    assert store.count_slot_claims(task.task_id) == 0

    _, _, claimed = store.claim_slot(task.task_id, second.submission_id, now_iso())
    assert claimed is True
    assert store.get_task(task.task_id).slots_remaining == 1


@pytest.mark.unit
def test_claim_slot_refused_on_cancelled_or_missing_task(store) -> None:
    task = make_task(status=TaskStatus.CANCELLED)
    store.insert_task(task)
    submission = make_submission(task)
    store.insert_submission(submission)

    _, _, claimed = store.claim_slot(task.task_id, submission.submission_id, now_iso())

    assert claimed is False
    assert store.count_slot_claims(task.task_id) == 0
    assert store.claim_slot("t-missing", submission.submission_id, now_iso()) is None


@pytest.mark.unit
def test_clear_stale_claims_keeps_live_submissions(store) -> None:
    task = make_task(slots=2)
    store.insert_task(task)
    live = make_submission(task)
    stale = make_submission(task, worker_id="u-other")
    store.insert_submission(live)
    store.insert_submission(stale)
    store.claim_slot(task.task_id, live.submission_id, now_iso())
    store.claim_slot(task.task_id, stale.submission_id, now_iso())
    store.transition_submission(
        stale.submission_id,
        from_statuses={SubmissionStatus.SUBMITTED},
        to_status=SubmissionStatus.REJECTED,
        updates={"rejection_reason": "blurry"},
    )

    cleared = store.clear_stale_claims(task.task_id, {SubmissionStatus.SUBMITTED})

    assert cleared == 1
    assert store.count_slot_claims(task.task_id) == 1


@pytest.mark.unit
def test_settlement_keeps_cancelled_status(store) -> None:
    task = make_task(slots=1, status=TaskStatus.CANCELLED)
    store.insert_task(task)
    submission = make_submission(task)
    store.insert_submission(submission)

    applied = store.apply_settlement(_write(submission), now_iso())

    assert applied.slot_consumed is True
    assert store.get_task(task.task_id).status is TaskStatus.CANCELLED


@pytest.mark.unit
def test_open_submission_unique_index(store) -> None:
    task = make_task()
    store.insert_task(task)
    store.insert_submission(make_submission(task))

    with pytest.raises(DuplicateSubmissionError):
        store.insert_submission(make_submission(task))

    # A different worker is unaffected
    store.insert_submission(make_submission(task, worker_id="u-other"))


@pytest.mark.unit
def test_rejected_submission_does_not_block_a_new_one(store) -> None:
    task = make_task()
    store.insert_task(task)
    store.insert_submission(make_submission(task, status=SubmissionStatus.REJECTED))

    store.insert_submission(make_submission(task))

    assert len(store.list_submissions(task_id=task.task_id)) == 2


@pytest.mark.unit
def test_disputed_submission_blocks_a_new_one(store, make_dispute) -> None:
    dispute = make_dispute()
    task = store.get_task(dispute.task_id)

    with pytest.raises(DuplicateSubmissionError):
        store.insert_submission(make_submission(task))


@pytest.mark.unit
def test_dispute_refused_while_a_newer_submission_is_open(store) -> None:
    task = make_task()
    store.insert_task(task)
    rejected = make_submission(task, status=SubmissionStatus.REJECTED, rejection_reason="blurry")
    store.insert_submission(rejected)
    store.insert_submission(make_submission(task))

    with pytest.raises(DuplicateSubmissionError):
        store.create_dispute(make_dispute_record(task, rejected))

    assert store.get_submission(rejected.submission_id).status is SubmissionStatus.REJECTED
    assert store.find_pending_dispute(rejected.submission_id) is None


@pytest.mark.unit
def test_transition_submission_is_conditional(store) -> None:
    task = make_task()
    store.insert_task(task)
    submission = make_submission(task)
    store.insert_submission(submission)

    affected = store.transition_submission(
        submission.submission_id,
        from_statuses={SubmissionStatus.SUBMITTED},
        to_status=SubmissionStatus.REJECTED,
        updates={"rejection_reason": "blurry"},
    )
    assert affected == 1

    again = store.transition_submission(
        submission.submission_id,
        from_statuses={SubmissionStatus.SUBMITTED},
        to_status=SubmissionStatus.REVISION_REQUESTED,
        updates={},
    )
    assert again == 0

    current = store.get_submission(submission.submission_id)
    assert current.status is SubmissionStatus.REJECTED
    assert current.rejection_reason == "blurry"


@pytest.mark.unit
def test_transition_submission_rejects_unknown_columns(store) -> None:
    with pytest.raises(ValueError, match="unknown submission column"):
        store.transition_submission(
            "sub-x",
            from_statuses={SubmissionStatus.SUBMITTED},
            to_status=SubmissionStatus.REJECTED,
            updates={"worker_payout": 1},
        )


@pytest.mark.unit
def test_apply_settlement_groups_every_write(store) -> None:
    task = make_task(slots=1)
    store.insert_task(task)
    submission = make_submission(task)
    store.insert_submission(submission)

    applied = store.apply_settlement(_write(submission), now_iso())

    assert applied.slots_remaining == 0
    assert applied.task_now_full is True
    assert applied.slot_consumed is True

    paid = store.get_submission(submission.submission_id)
    assert paid.status is SubmissionStatus.APPROVED
    assert paid.worker_payout == 85_000_000
    assert paid.platform_fee == 15_000_000
    assert paid.worker_payout + paid.platform_fee == paid.agreed_reward
    assert paid.payment_id == "pay-1"
    assert paid.external_tx_id == "tx-1"
    assert paid.paid_at is not None

    [entry] = store.list_ledger_entries(receiver_id=submission.worker_id)
    assert entry.entry_id == applied.ledger_entry_id
    assert entry.status is LedgerStatus.COMPLETED
    assert entry.sender_id == "u-employer"
    assert entry.amount == 85_000_000

    earnings = store.get_earnings(submission.worker_id)
    assert earnings.total_earnings == 85_000_000
    assert earnings.total_tasks_completed == 1

    assert store.get_task(task.task_id).status is TaskStatus.FULL


@pytest.mark.unit
def test_apply_settlement_twice_raises_without_second_write(store) -> None:
    task = make_task(slots=2)
    store.insert_task(task)
    submission = make_submission(task)
    store.insert_submission(submission)
    store.apply_settlement(_write(submission), now_iso())

    with pytest.raises(StaleStatusError) as exc_info:
        store.apply_settlement(_write(submission), now_iso())

    assert exc_info.value.current_status == "approved"
    assert len(store.list_ledger_entries(submission_id=submission.submission_id)) == 1
    assert store.get_task(task.task_id).slots_remaining == 1
    assert store.get_earnings(submission.worker_id).total_tasks_completed == 1


@pytest.mark.unit
def test_apply_settlement_rolls_back_when_a_late_step_fails(store) -> None:
    """A failure after the submission update leaves nothing behind."""
    task = make_task(slots=1)
    store.insert_task(task)
    submission = make_submission(task)
    store.insert_submission(submission)
    dispute = DisputeResolution(
        dispute_id="dsp-missing",
        ruling=DisputeRuling.IN_FAVOR_OF_WORKER,
        admin_id="u-admin",
        admin_notes="notes",
    )

    with pytest.raises(StaleStatusError):
        store.apply_settlement(_write(submission, dispute=dispute), now_iso())

    assert store.get_submission(submission.submission_id).status is SubmissionStatus.SUBMITTED
    assert store.list_ledger_entries(receiver_id=submission.worker_id) == []
    assert store.get_earnings(submission.worker_id).total_earnings == 0
    assert store.get_task(task.task_id).slots_remaining == 1


@pytest.mark.unit
def test_apply_settlement_refuses_approval_without_a_slot(store) -> None:
    task = make_task(slots=1, slots_remaining=0, status=TaskStatus.FULL)
    store.insert_task(task)
    submission = make_submission(task)
    store.insert_submission(submission)

    with pytest.raises(SlotsExhaustedError):
        store.apply_settlement(_write(submission), now_iso())

    assert store.get_submission(submission.submission_id).status is SubmissionStatus.SUBMITTED
    assert store.list_ledger_entries(receiver_id=submission.worker_id) == []
    assert store.get_earnings(submission.worker_id).total_earnings == 0


@pytest.mark.unit
def test_dispute_settlement_leaves_claimed_slot_alone(store, make_dispute) -> None:
    dispute = make_dispute(slots=1)
    task = store.get_task(dispute.task_id)
    other = make_submission(task, worker_id="u-other")
    store.insert_submission(other)
    store.claim_slot(task.task_id, other.submission_id, now_iso())
    disputed = store.get_submission(dispute.submission_id)
    resolution = DisputeResolution(
        dispute_id=dispute.dispute_id,
        ruling=DisputeRuling.IN_FAVOR_OF_WORKER,
        admin_id="u-admin",
        admin_notes="Proof matches",
    )

    ruling = store.apply_settlement(
        _write(disputed, expected=frozenset({SubmissionStatus.DISPUTED}), dispute=resolution),
        now_iso(),
    )

    assert ruling.slot_consumed is False
    assert ruling.slots_remaining == 1

    approval = store.apply_settlement(_write(other), now_iso())

    assert approval.slot_consumed is True
    assert approval.task_now_full is True
    assert store.count_slot_claims(task.task_id) == 0


@pytest.mark.unit
def test_ledger_entry_keeps_computed_payout_on_mismatch(store) -> None:
    task = make_task(slots=1)
    store.insert_task(task)
    submission = make_submission(task)
    store.insert_submission(submission)
    write = replace(_write(submission, amount=84_000_000), computed_payout=85_000_000)

    store.apply_settlement(write, now_iso())

    [entry] = store.list_ledger_entries(submission_id=submission.submission_id)
    assert entry.amount == 84_000_000
    assert entry.computed_payout == 85_000_000


@pytest.mark.unit
def test_earnings_accumulate_across_tasks(store) -> None:
    for _ in range(2):
        task = make_task(reward=2 * PI)
        store.insert_task(task)
        submission = make_submission(task)
        store.insert_submission(submission)
        store.apply_settlement(_write(submission, amount=17_000_000, fee=3_000_000), now_iso())

    earnings = store.get_earnings("u-worker")
    assert earnings.total_earnings == 34_000_000
    assert earnings.total_tasks_completed == 2


@pytest.mark.unit
def test_get_earnings_for_unknown_user_is_zero(store) -> None:
    earnings = store.get_earnings("u-nobody")
    assert earnings.total_earnings == 0
    assert earnings.total_tasks_completed == 0
    assert earnings.updated_at is None


@pytest.mark.unit
def test_create_dispute_moves_submission_to_disputed(store, make_dispute) -> None:
    dispute = make_dispute()

    assert store.get_dispute(dispute.dispute_id) == dispute
    assert store.find_pending_dispute(dispute.submission_id) == dispute
    submission = store.get_submission(dispute.submission_id)
    assert submission.status is SubmissionStatus.DISPUTED


@pytest.mark.unit
def test_second_pending_dispute_is_rejected(store, make_dispute) -> None:
    dispute = make_dispute()
    duplicate = replace(dispute, dispute_id="dsp-2")

    with pytest.raises(DisputePendingError):
        store.create_dispute(duplicate)


@pytest.mark.unit
def test_create_dispute_requires_rejected_submission(store) -> None:
    task = make_task()
    store.insert_task(task)
    submission = make_submission(task)
    store.insert_submission(submission)

    with pytest.raises(StaleStatusError) as exc_info:
        store.create_dispute(make_dispute_record(task, submission))

    assert exc_info.value.current_status == "submitted"
    assert store.find_pending_dispute(submission.submission_id) is None


@pytest.mark.unit
def test_resolve_dispute_for_employer(store, make_dispute) -> None:
    dispute = make_dispute()

    store.resolve_dispute_for_employer(
        dispute.dispute_id,
        dispute.submission_id,
        admin_id="u-admin",
        admin_notes="Proof does not match the task",
        now=now_iso(),
    )

    resolved = store.get_dispute(dispute.dispute_id)
    assert resolved.status is DisputeStatus.RESOLVED
    assert resolved.ruling is DisputeRuling.IN_FAVOR_OF_EMPLOYER
    assert resolved.resolved_at is not None
    assert store.get_submission(dispute.submission_id).status is SubmissionStatus.REJECTED

    with pytest.raises(StaleStatusError):
        store.resolve_dispute_for_employer(
            dispute.dispute_id,
            dispute.submission_id,
            admin_id="u-admin",
            admin_notes="again",
            now=now_iso(),
        )


@pytest.mark.unit
def test_reset_slots_recomputes_from_paid_submissions(store) -> None:
    task = make_task(slots=3, slots_remaining=0, status=TaskStatus.FULL)
    store.insert_task(task)
    submission = make_submission(task, status=SubmissionStatus.APPROVED)
    store.insert_submission(submission)

    paid = store.count_paid_submissions(task.task_id)
    reset = store.reset_slots(task.task_id, paid, now_iso())

    assert paid == 1
    assert reset.slots_remaining == 2
    assert reset.status is TaskStatus.AVAILABLE
    assert store.reset_slots("t-missing", 0, now_iso()) is None


@pytest.mark.unit
def test_count_tasks_by_status(store) -> None:
    store.insert_task(make_task())
    store.insert_task(make_task())
    store.insert_task(make_task(status=TaskStatus.CANCELLED))

    assert store.count_tasks_by_status() == {"available": 2, "cancelled": 1}
