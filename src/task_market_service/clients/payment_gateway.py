"""Async clients for the external payment gateway."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger


class PaymentGateway(ABC):
    """
    Abstract payment gateway.

    Implementations move real money and are not idempotent from the
    caller's point of view: a completed payment cannot be taken back.
    """

    @abstractmethod
    async def approve_payment(self, payment_id: str) -> dict[str, Any]:
        """Approve a payment the user has initiated."""

    @abstractmethod
    async def complete_payment(self, payment_id: str, external_tx_id: str) -> dict[str, Any]:
        """Complete a payment with its blockchain transaction id."""

    @abstractmethod
    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        """Fetch a payment as the gateway reports it."""

    async def close(self) -> None:
        """Release any underlying resources."""
        return None


class PiNetworkGateway(PaymentGateway):
    """Pi Network platform API client (``/v2/payments``)."""

    def __init__(self, base_url: str, api_key: str, timeout_seconds: int) -> None:
        self._base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Key {api_key}"},
        )

    async def approve_payment(self, payment_id: str) -> dict[str, Any]:
        """
        Approve a user-initiated payment.

        Raises:
            ServiceError: EXTERNAL_PAYMENT_ERROR (502) on connection, timeout or non-200 status
        """
        return await self._request(
            "POST", f"/v2/payments/{payment_id}/approve", "approve", payment_id
        )

    async def complete_payment(self, payment_id: str, external_tx_id: str) -> dict[str, Any]:
        """
        Complete a payment. Once this succeeds, funds have moved.

        Raises:
            ServiceError: EXTERNAL_PAYMENT_ERROR (502) on connection, timeout or non-200 status
        """
        return await self._request(
            "POST",
            f"/v2/payments/{payment_id}/complete",
            "complete",
            payment_id,
            json={"txid": external_tx_id},
        )

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        """
        Fetch payment details, including the confirmed amount.

        Raises:
            ServiceError: EXTERNAL_PAYMENT_ERROR (502) on connection, timeout or non-200 status
        """
        return await self._request("GET", f"/v2/payments/{payment_id}", "lookup", payment_id)

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        payment_id: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        logger = get_logger(__name__)

        try:
            response = await self._client.request(method, path, json=json)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Payment gateway connection failed",
                extra={
                    "error": str(exc),
                    "operation": operation,
                    "payment_id": payment_id,
                    "base_url": self._base_url,
                },
            )
            raise ServiceError(
                error="EXTERNAL_PAYMENT_ERROR",
                message=f"Cannot connect to payment gateway for payment {operation}",
                status_code=502,
                details={"payment_id": payment_id},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment gateway HTTP error",
                extra={
                    "error": str(exc),
                    "operation": operation,
                    "payment_id": payment_id,
                    "base_url": self._base_url,
                },
            )
            raise ServiceError(
                error="EXTERNAL_PAYMENT_ERROR",
                message=f"Payment gateway {operation} request failed",
                status_code=502,
                details={"payment_id": payment_id},
            ) from exc

        if response.status_code == 200:
            try:
                result: dict[str, Any] = response.json()
            except ValueError:
                result = {}
            return result

        logger.warning(
            "Payment gateway unexpected status",
            extra={
                "status_code": response.status_code,
                "operation": operation,
                "payment_id": payment_id,
                "base_url": self._base_url,
            },
        )
        raise ServiceError(
            error="EXTERNAL_PAYMENT_ERROR",
            message=f"Payment gateway returned unexpected status on payment {operation}",
            status_code=502,
            details={
                "payment_id": payment_id,
                "upstream_status": response.status_code,
                "upstream_body": response.text[:500],
            },
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
