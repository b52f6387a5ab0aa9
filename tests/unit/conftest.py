"""Unit test fixtures: stores, services and a mocked payment gateway."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest

from task_market_service.config import clear_settings_cache
from task_market_service.core.state import reset_app_state
from task_market_service.models import SubmissionStatus
from task_market_service.services.dispute_resolver import DisputeResolver
from task_market_service.services.market_store import MarketStore
from task_market_service.services.recovery_store import RecoveryStore
from task_market_service.services.settlement_coordinator import SettlementCoordinator
from task_market_service.services.slot_allocator import SlotAllocator
from task_market_service.services.submission_lifecycle import SubmissionLifecycle
from tests.helpers import PI, make_dispute_record, make_submission, make_task

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from task_market_service.models import Dispute


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[MarketStore]:
    market_store = MarketStore(db_path=str(tmp_path / "market.db"))
    yield market_store
    market_store.close()


@pytest.fixture
def recovery_store(tmp_path: Path) -> Iterator[RecoveryStore]:
    rec_store = RecoveryStore(db_path=str(tmp_path / "recovery.db"))
    yield rec_store
    rec_store.close()


@pytest.fixture
def gateway() -> AsyncMock:
    """Payment gateway mock; by default every call succeeds and confirms nothing."""
    mock_gateway = AsyncMock()
    mock_gateway.approve_payment = AsyncMock(return_value={"status": "approved"})
    mock_gateway.complete_payment = AsyncMock(return_value={"status": "completed"})
    mock_gateway.get_payment = AsyncMock(return_value={})
    mock_gateway.close = AsyncMock()
    return mock_gateway


@pytest.fixture
def coordinator(
    store: MarketStore,
    recovery_store: RecoveryStore,
    allocator: SlotAllocator,
    gateway: AsyncMock,
) -> SettlementCoordinator:
    return SettlementCoordinator(
        store=store,
        recovery_store=recovery_store,
        slot_allocator=allocator,
        payment_gateway=gateway,
        platform_fee_bps=1500,
        currency_decimals=7,
        verify_confirmed_amount=True,
    )


@pytest.fixture
def lifecycle(store: MarketStore, coordinator: SettlementCoordinator) -> SubmissionLifecycle:
    return SubmissionLifecycle(
        store=store,
        settlement_coordinator=coordinator,
        revision_window_seconds=7 * 24 * 3600,
    )


@pytest.fixture
def resolver(store: MarketStore, coordinator: SettlementCoordinator) -> DisputeResolver:
    return DisputeResolver(store=store, settlement_coordinator=coordinator, min_reason_length=20)


@pytest.fixture
def allocator(store: MarketStore) -> SlotAllocator:
    return SlotAllocator(store=store)


@pytest.fixture
def make_dispute(store: MarketStore) -> Callable[..., Dispute]:
    """Factory: store a task, a rejected submission and a pending dispute against it."""

    def _make(*, slots: int = 1, reward: int = 10 * PI) -> Dispute:
        task = make_task(slots=slots, reward=reward)
        store.insert_task(task)
        submission = make_submission(
            task, status=SubmissionStatus.REJECTED, rejection_reason="Proof is incomplete"
        )
        store.insert_submission(submission)
        dispute = make_dispute_record(task, submission)
        store.create_dispute(dispute)
        return dispute

    return _make
