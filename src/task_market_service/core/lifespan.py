"""Application lifecycle management."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from task_market_service.clients.payment_gateway import PiNetworkGateway
from task_market_service.config import get_settings
from task_market_service.core.state import init_app_state
from task_market_service.logging import get_logger, setup_logging
from task_market_service.services.dispute_resolver import DisputeResolver
from task_market_service.services.market_store import MarketStore
from task_market_service.services.recovery_store import RecoveryStore
from task_market_service.services.settlement_coordinator import SettlementCoordinator
from task_market_service.services.slot_allocator import SlotAllocator
from task_market_service.services.submission_lifecycle import SubmissionLifecycle
from task_market_service.services.task_registry import TaskRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    api_key = os.environ.get(settings.payment_gateway.api_key_env)
    if not api_key:
        msg = (
            f"Payment gateway API key not set: environment variable "
            f"{settings.payment_gateway.api_key_env} is empty or missing"
        )
        raise RuntimeError(msg)

    state = init_app_state()

    store = MarketStore(db_path=settings.database.path)
    state.store = store
    recovery_store = RecoveryStore(db_path=settings.database.recovery_path)
    state.recovery_store = recovery_store

    payment_gateway = PiNetworkGateway(
        base_url=settings.payment_gateway.base_url,
        api_key=api_key,
        timeout_seconds=settings.payment_gateway.timeout_seconds,
    )
    state.payment_gateway = payment_gateway

    slot_allocator = SlotAllocator(store=store)
    state.slot_allocator = slot_allocator
    settlement_coordinator = SettlementCoordinator(
        store=store,
        recovery_store=recovery_store,
        slot_allocator=slot_allocator,
        payment_gateway=payment_gateway,
        platform_fee_bps=settings.settlement.platform_fee_bps,
        currency_decimals=settings.settlement.currency_decimals,
        verify_confirmed_amount=settings.settlement.verify_confirmed_amount,
    )
    state.settlement_coordinator = settlement_coordinator
    state.submission_lifecycle = SubmissionLifecycle(
        store=store,
        settlement_coordinator=settlement_coordinator,
        revision_window_seconds=settings.submissions.revision_window_seconds,
    )
    state.dispute_resolver = DisputeResolver(
        store=store,
        settlement_coordinator=settlement_coordinator,
        min_reason_length=settings.disputes.min_reason_length,
    )
    state.task_registry = TaskRegistry(
        store=store,
        min_reward=settings.tasks.min_reward,
        max_slots=settings.tasks.max_slots,
        default_deadline_seconds=settings.tasks.default_deadline_seconds,
    )

    pending_recovery = recovery_store.count_pending()
    if pending_recovery:
        logger.warning(
            "Pending recovery records found at startup",
            extra={"pending_recovery_records": pending_recovery},
        )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "recovery_path": settings.database.recovery_path,
            "payment_gateway_base_url": settings.payment_gateway.base_url,
            "platform_fee_bps": settings.settlement.platform_fee_bps,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    store.close()
    recovery_store.close()
    if state.payment_gateway is not None:
        await state.payment_gateway.close()
