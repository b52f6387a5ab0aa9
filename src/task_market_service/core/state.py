"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from task_market_service.clients.payment_gateway import PaymentGateway
    from task_market_service.services.dispute_resolver import DisputeResolver
    from task_market_service.services.market_store import MarketStore
    from task_market_service.services.recovery_store import RecoveryStore
    from task_market_service.services.settlement_coordinator import SettlementCoordinator
    from task_market_service.services.slot_allocator import SlotAllocator
    from task_market_service.services.submission_lifecycle import SubmissionLifecycle
    from task_market_service.services.task_registry import TaskRegistry


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: MarketStore | None = None
    recovery_store: RecoveryStore | None = None
    payment_gateway: PaymentGateway | None = None
    slot_allocator: SlotAllocator | None = None
    settlement_coordinator: SettlementCoordinator | None = None
    submission_lifecycle: SubmissionLifecycle | None = None
    dispute_resolver: DisputeResolver | None = None
    task_registry: TaskRegistry | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep the coordinator's gateway in sync with the payment_gateway field."""
        super().__setattr__(name, value)

        coordinator = self.__dict__.get("settlement_coordinator")
        if name == "payment_gateway" and value is not None and coordinator is not None:
            coordinator.set_payment_gateway(value)
        elif name == "settlement_coordinator" and value is not None:
            gateway = self.__dict__.get("payment_gateway")
            if gateway is not None:
                value.set_payment_gateway(gateway)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
