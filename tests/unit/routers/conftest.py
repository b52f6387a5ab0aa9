"""Router test fixtures with a mocked payment gateway."""

from __future__ import annotations

import os
import uuid
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from task_market_service.app import create_app
from task_market_service.config import clear_settings_cache
from task_market_service.core.lifespan import lifespan
from task_market_service.core.state import get_app_state, reset_app_state
from tests.helpers import PI, make_config

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator
    from pathlib import Path

EMPLOYER_ID = "u-employer"
WORKER_ID = "u-worker"
ADMIN_ID = "u-admin"
DISPUTE_REASON = "The screenshot clearly shows the finished translation"


def make_payment() -> dict[str, str]:
    """Generate a unique gateway payment reference."""
    return {"payment_id": f"pay-{uuid.uuid4()}", "txid": f"tx-{uuid.uuid4()}"}


@pytest.fixture
def config_path(tmp_path: Path) -> Iterator[Path]:
    """Write a test config and point CONFIG_PATH and the API key at it."""
    path = tmp_path / "config.yaml"
    path.write_text(make_config(str(tmp_path / "market.db"), str(tmp_path / "recovery.db")))

    old_config = os.environ.get("CONFIG_PATH")
    old_key = os.environ.get("PI_API_KEY")
    os.environ["CONFIG_PATH"] = str(path)
    os.environ["PI_API_KEY"] = "test-api-key"

    yield path

    for name, old in (("CONFIG_PATH", old_config), ("PI_API_KEY", old_key)):
        if old is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = old


@pytest.fixture
async def app(config_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp databases and a mocked payment gateway."""
    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Mock gateway: default, every call succeeds and confirms no amount
        await state.payment_gateway.close()
        mock_gateway = AsyncMock()
        mock_gateway.close = AsyncMock()
        mock_gateway.approve_payment = AsyncMock(return_value={"status": "approved"})
        mock_gateway.complete_payment = AsyncMock(return_value={"status": "completed"})
        mock_gateway.get_payment = AsyncMock(return_value={})
        state.payment_gateway = mock_gateway

        yield test_app

    reset_app_state()
    clear_settings_cache()


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def gateway(app: Any) -> AsyncMock:
    """The mocked payment gateway installed on the running app."""
    return get_app_state().payment_gateway


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------
async def create_task(
    client: AsyncClient,
    *,
    reward: int = 10 * PI,
    slots: int = 1,
    employer_id: str = EMPLOYER_ID,
) -> dict[str, Any]:
    """Create a task via the API and return its JSON."""
    response = await client.post(
        "/tasks",
        json={
            "employer_id": employer_id,
            "title": "Translate a paragraph",
            "description": "Translate the attached paragraph into French",
            "reward": reward,
            "slots": slots,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


async def submit(
    client: AsyncClient,
    task_id: str,
    *,
    worker_id: str = WORKER_ID,
) -> dict[str, Any]:
    """Submit proof for a task via the API and return the submission JSON."""
    response = await client.post(
        f"/tasks/{task_id}/submissions",
        json={"worker_id": worker_id, "proof": "https://example.com/proof.png"},
    )
    assert response.status_code == 201, response.text
    return response.json()


async def rejected_submission(client: AsyncClient, **task_kwargs: Any) -> dict[str, Any]:
    """Create a task and a rejected submission for it."""
    task = await create_task(client, **task_kwargs)
    submission = await submit(client, task["task_id"])
    response = await client.post(
        f"/submissions/{submission['submission_id']}/reject",
        json={"reason": "Proof is incomplete"},
    )
    assert response.status_code == 200, response.text
    return response.json()


async def file_dispute(client: AsyncClient, **task_kwargs: Any) -> dict[str, Any]:
    """Create a rejected submission and file a dispute against it."""
    submission = await rejected_submission(client, **task_kwargs)
    response = await client.post(
        f"/submissions/{submission['submission_id']}/disputes",
        json={"reason": DISPUTE_REASON},
    )
    assert response.status_code == 201, response.text
    return response.json()
