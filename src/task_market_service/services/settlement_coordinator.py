"""Settlement of approved submissions against the external payment gateway."""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.models import (
    PaymentReference,
    RecoveryRecord,
    RecoveryStatus,
    SettlementOutcome,
    SettlementResult,
    SettlementWrite,
    SubmissionStatus,
)
from task_market_service.money import compute_fee_split, to_minor_units
from task_market_service.services.market_store import StaleStatusError
from task_market_service.timestamps import now_iso

if TYPE_CHECKING:
    from task_market_service.clients.payment_gateway import PaymentGateway
    from task_market_service.models import DisputeResolution, Submission
    from task_market_service.services.market_store import MarketStore
    from task_market_service.services.recovery_store import RecoveryStore
    from task_market_service.services.slot_allocator import SlotAllocator

# Statuses from which a plain (non-dispute) approval may settle.
APPROVABLE_STATUSES: frozenset[SubmissionStatus] = frozenset(
    {SubmissionStatus.SUBMITTED, SubmissionStatus.REVISION_RESUBMITTED}
)


class SettlementCoordinator:
    """
    Turns an approval into moved money and consistent local records.

    The external payment cannot be rolled back, so the order is fixed:
    reserve a task slot, complete the payment, then apply every local
    change in one store transaction. If that transaction fails after the payment went
    through, the inputs are written to the recovery store instead.
    """

    def __init__(
        self,
        store: MarketStore,
        recovery_store: RecoveryStore,
        slot_allocator: SlotAllocator,
        payment_gateway: PaymentGateway,
        platform_fee_bps: int,
        currency_decimals: int,
        verify_confirmed_amount: bool,
    ) -> None:
        self._store = store
        self._recovery_store = recovery_store
        self._slot_allocator = slot_allocator
        self._payment_gateway = payment_gateway
        self._platform_fee_bps = platform_fee_bps
        self._currency_decimals = currency_decimals
        self._verify_confirmed_amount = verify_confirmed_amount
        self._logger = get_logger(__name__)

    @property
    def platform_fee_bps(self) -> int:
        return self._platform_fee_bps

    def set_payment_gateway(self, payment_gateway: PaymentGateway) -> None:
        self._payment_gateway = payment_gateway

    async def approve_payment(self, payment_id: str) -> dict[str, Any]:
        """
        Approve a user-initiated payment with the gateway.

        Raises ServiceError("EXTERNAL_PAYMENT_ERROR", ..., 502) on failure.
        """
        try:
            result = await self._payment_gateway.approve_payment(payment_id)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "EXTERNAL_PAYMENT_ERROR",
                "Payment approval failed",
                502,
                {"payment_id": payment_id},
            ) from exc
        self._logger.info("Payment approved", extra={"payment_id": payment_id})
        return result

    async def settle(
        self,
        submission_id: str,
        payment: PaymentReference,
        *,
        reward: int | None = None,
        expected_statuses: frozenset[SubmissionStatus] = APPROVABLE_STATUSES,
        dispute: DisputeResolution | None = None,
    ) -> SettlementResult:
        """
        Settle a submission: complete the payment and apply local updates.

        Args:
            submission_id: Submission being paid
            payment: Gateway payment id and blockchain transaction id
            reward: Gross amount to split; defaults to the submission's agreed reward
            expected_statuses: Statuses the submission must be in
            dispute: Dispute to resolve inside the same local transaction

        Returns:
            SettlementResult with outcome settled, already_settled or
            recorded_for_recovery

        Raises:
            ServiceError: SUBMISSION_NOT_FOUND, INVALID_STATE_TRANSITION,
                TASK_NOT_FOUND, TASK_NOT_AVAILABLE, NO_SLOTS_AVAILABLE,
                EXTERNAL_PAYMENT_ERROR, SETTLEMENT_NOT_RECORDED
        """
        submission = self._store.get_submission(submission_id)
        if submission is None:
            raise ServiceError("SUBMISSION_NOT_FOUND", "Submission not found", 404)

        if submission.status is SubmissionStatus.APPROVED:
            return self._already_settled(submission, payment)

        if submission.status not in expected_statuses:
            raise ServiceError(
                "INVALID_STATE_TRANSITION",
                f"Cannot move submission from {submission.status} to approved",
                409,
                {
                    "current_status": str(submission.status),
                    "attempted_status": str(SubmissionStatus.APPROVED),
                },
            )

        gross = submission.agreed_reward if reward is None else reward
        try:
            split = compute_fee_split(gross, self._platform_fee_bps)
        except ValueError as exc:
            raise ServiceError("INVALID_AMOUNT", str(exc), 400) from exc

        # Dispute rulings pay regardless of capacity and hold no reservation.
        if dispute is None:
            self._slot_allocator.reserve(submission.task_id, submission.submission_id)

        # Once the gateway call starts, caller cancellation must not stop the local writes.
        return await asyncio.shield(
            self._complete_and_apply(
                submission,
                payment,
                split.worker_payout,
                split.platform_fee,
                expected_statuses,
                dispute,
            )
        )

    async def _complete_and_apply(
        self,
        submission: Submission,
        payment: PaymentReference,
        worker_payout: int,
        platform_fee: int,
        expected_statuses: frozenset[SubmissionStatus],
        dispute: DisputeResolution | None,
    ) -> SettlementResult:
        try:
            await self._payment_gateway.complete_payment(
                payment.payment_id, payment.external_tx_id
            )
        except ServiceError:
            self._release_slot(submission, dispute)
            raise
        except Exception as exc:
            self._release_slot(submission, dispute)
            raise ServiceError(
                "EXTERNAL_PAYMENT_ERROR",
                "Payment completion failed",
                502,
                {"payment_id": payment.payment_id},
            ) from exc

        self._logger.info(
            "Payment completed with gateway",
            extra={
                "payment_id": payment.payment_id,
                "external_tx_id": payment.external_tx_id,
                "submission_id": submission.submission_id,
            },
        )

        warnings: list[str] = []
        amount = worker_payout
        computed_payout: int | None = None
        if self._verify_confirmed_amount:
            confirmed = await self._confirmed_amount(payment.payment_id)
            if confirmed is not None and confirmed != worker_payout:
                self._logger.warning(
                    "Confirmed payment amount differs from computed payout",
                    extra={
                        "payment_id": payment.payment_id,
                        "submission_id": submission.submission_id,
                        "computed_payout": worker_payout,
                        "confirmed_amount": confirmed,
                    },
                )
                warnings.append(
                    f"Gateway confirmed {confirmed} minor units; computed payout was "
                    f"{worker_payout}"
                )
                amount = confirmed
                computed_payout = worker_payout

        employer_id = self._employer_id(submission.task_id)

        write = SettlementWrite(
            submission_id=submission.submission_id,
            task_id=submission.task_id,
            worker_id=submission.worker_id,
            employer_id=employer_id,
            payment_id=payment.payment_id,
            external_tx_id=payment.external_tx_id,
            amount=amount,
            platform_fee=platform_fee,
            expected_statuses=expected_statuses,
            dispute=dispute,
            computed_payout=computed_payout,
        )

        try:
            applied = self._store.apply_settlement(write, now_iso())
        except StaleStatusError as exc:
            current = self._store.get_submission(submission.submission_id)
            if current is not None and current.status is SubmissionStatus.APPROVED:
                self._logger.info(
                    "Submission settled concurrently",
                    extra={
                        "submission_id": submission.submission_id,
                        "payment_id": payment.payment_id,
                    },
                )
                return self._already_settled(current, payment)
            return self._record_for_recovery(write, exc, warnings)
        except Exception as exc:
            return self._record_for_recovery(write, exc, warnings)

        self._logger.info(
            "Settlement applied",
            extra={
                "submission_id": submission.submission_id,
                "payment_id": payment.payment_id,
                "worker_id": submission.worker_id,
                "worker_payout": amount,
                "platform_fee": platform_fee,
                "ledger_entry_id": applied.ledger_entry_id,
                "slots_remaining": applied.slots_remaining,
                "task_now_full": applied.task_now_full,
            },
        )
        return SettlementResult(
            outcome=SettlementOutcome.SETTLED,
            submission_id=submission.submission_id,
            payment_id=payment.payment_id,
            external_tx_id=payment.external_tx_id,
            worker_payout=amount,
            platform_fee=platform_fee,
            ledger_entry_id=applied.ledger_entry_id,
            slots_remaining=applied.slots_remaining,
            warnings=warnings,
        )

    def _release_slot(self, submission: Submission, dispute: DisputeResolution | None) -> None:
        if dispute is None:
            self._slot_allocator.release(submission.submission_id)

    async def _confirmed_amount(self, payment_id: str) -> int | None:
        """Return the gateway-confirmed amount in minor units, or None if unavailable."""
        try:
            details = await self._payment_gateway.get_payment(payment_id)
        except Exception as exc:
            self._logger.warning(
                "Could not fetch payment details, using computed payout",
                extra={"payment_id": payment_id, "error": str(exc)},
            )
            return None

        raw = details.get("amount") if isinstance(details, dict) else None
        if raw is None:
            return None
        try:
            return to_minor_units(raw, self._currency_decimals)
        except ValueError as exc:
            self._logger.warning(
                "Gateway reported an unusable amount, using computed payout",
                extra={"payment_id": payment_id, "amount": str(raw), "error": str(exc)},
            )
            return None

    def _employer_id(self, task_id: str) -> str | None:
        try:
            task = self._store.get_task(task_id)
        except Exception as exc:
            self._logger.warning(
                "Failed to look up employer for task",
                extra={"task_id": task_id, "error": str(exc)},
            )
            return None
        if task is None:
            self._logger.warning("Task not found for employer lookup", extra={"task_id": task_id})
            return None
        return task.employer_id

    def _record_for_recovery(
        self,
        write: SettlementWrite,
        exc: Exception,
        warnings: list[str],
    ) -> SettlementResult:
        record = RecoveryRecord(
            recovery_id=f"rec-{uuid.uuid4()}",
            payment_id=write.payment_id,
            external_tx_id=write.external_tx_id,
            submission_id=write.submission_id,
            worker_id=write.worker_id,
            task_id=write.task_id,
            employer_id=write.employer_id,
            amount=write.amount,
            platform_fee=write.platform_fee,
            expected_statuses=sorted(str(s) for s in write.expected_statuses),
            error=f"{type(exc).__name__}: {exc}",
            status=RecoveryStatus.PENDING,
            created_at=now_iso(),
            dispute_id=write.dispute.dispute_id if write.dispute else None,
            ruling=write.dispute.ruling if write.dispute else None,
            admin_id=write.dispute.admin_id if write.dispute else None,
            admin_notes=write.dispute.admin_notes if write.dispute else None,
            computed_payout=write.computed_payout,
        )

        try:
            self._recovery_store.insert(record)
        except Exception as recovery_exc:
            payload = record.to_dict()
            payload["status"] = str(record.status)
            payload["ruling"] = str(record.ruling) if record.ruling else None
            self._logger.critical(
                "Payment completed but neither settlement nor recovery record was written",
                extra={
                    "recovery_payload": payload,
                    "settlement_error": str(exc),
                    "recovery_error": str(recovery_exc),
                },
            )
            raise ServiceError(
                "SETTLEMENT_NOT_RECORDED",
                "Payment completed but could not be recorded; manual reconciliation required",
                500,
                {"payment_id": write.payment_id, "submission_id": write.submission_id},
            ) from recovery_exc

        self._logger.error(
            "Local settlement failed after payment completed, recovery record written",
            extra={
                "recovery_id": record.recovery_id,
                "submission_id": write.submission_id,
                "payment_id": write.payment_id,
                "error": record.error,
            },
        )
        return SettlementResult(
            outcome=SettlementOutcome.RECORDED_FOR_RECOVERY,
            submission_id=write.submission_id,
            payment_id=write.payment_id,
            external_tx_id=write.external_tx_id,
            worker_payout=write.amount,
            platform_fee=write.platform_fee,
            recovery_id=record.recovery_id,
            warnings=[
                *warnings,
                "Payment completed but local records were not updated; "
                f"recovery record {record.recovery_id} awaits replay",
            ],
        )

    @staticmethod
    def _already_settled(submission: Submission, payment: PaymentReference) -> SettlementResult:
        return SettlementResult(
            outcome=SettlementOutcome.ALREADY_SETTLED,
            submission_id=submission.submission_id,
            payment_id=submission.payment_id or payment.payment_id,
            external_tx_id=submission.external_tx_id or payment.external_tx_id,
            worker_payout=submission.worker_payout or 0,
            platform_fee=submission.platform_fee or 0,
        )

    def list_recovery_records(self, status: str | None) -> list[RecoveryRecord]:
        """List recovery records, optionally filtered by status."""
        if status is not None and status not in {s.value for s in RecoveryStatus}:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Unknown recovery status: {status}",
                400,
                {"allowed": sorted(s.value for s in RecoveryStatus)},
            )
        return self._recovery_store.list_records(status)

    def replay_recovery(self, recovery_id: str) -> SettlementResult:
        """
        Re-apply the local side of a settlement from a pending recovery record.

        If the submission is already approved the record is only marked replayed.

        Raises:
            ServiceError: RECOVERY_RECORD_NOT_FOUND, RECOVERY_ALREADY_REPLAYED,
                INVALID_STATE_TRANSITION
        """
        record = self._recovery_store.get(recovery_id)
        if record is None:
            raise ServiceError("RECOVERY_RECORD_NOT_FOUND", "Recovery record not found", 404)
        if record.status is RecoveryStatus.REPLAYED:
            raise ServiceError(
                "RECOVERY_ALREADY_REPLAYED",
                "Recovery record has already been replayed",
                409,
                {"replayed_at": record.replayed_at},
            )

        write = record.to_settlement_write()
        try:
            applied = self._store.apply_settlement(write, now_iso())
        except StaleStatusError as exc:
            current = self._store.get_submission(record.submission_id)
            if current is None or current.status is not SubmissionStatus.APPROVED:
                raise ServiceError(
                    "INVALID_STATE_TRANSITION",
                    f"Cannot replay settlement: {exc}",
                    409,
                    {
                        "current_status": exc.current_status,
                        "attempted_status": str(SubmissionStatus.APPROVED),
                    },
                ) from exc
            self._recovery_store.mark_replayed(recovery_id, now_iso())
            self._logger.info(
                "Recovery record already applied",
                extra={"recovery_id": recovery_id, "submission_id": record.submission_id},
            )
            reference = PaymentReference(
                payment_id=record.payment_id, external_tx_id=record.external_tx_id
            )
            return self._already_settled(current, reference)

        self._recovery_store.mark_replayed(recovery_id, now_iso())
        self._logger.info(
            "Recovery record replayed",
            extra={
                "recovery_id": recovery_id,
                "submission_id": record.submission_id,
                "ledger_entry_id": applied.ledger_entry_id,
            },
        )
        return SettlementResult(
            outcome=SettlementOutcome.SETTLED,
            submission_id=record.submission_id,
            payment_id=record.payment_id,
            external_tx_id=record.external_tx_id,
            worker_payout=record.amount,
            platform_fee=record.platform_fee,
            ledger_entry_id=applied.ledger_entry_id,
            slots_remaining=applied.slots_remaining,
            recovery_id=recovery_id,
        )
