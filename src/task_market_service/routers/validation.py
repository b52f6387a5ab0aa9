"""Shared request validation helpers for routers."""

from __future__ import annotations

import json
from typing import Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.models import PaymentReference


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def require_str(data: dict[str, Any], field_name: str, *, error: str = "INVALID_PAYLOAD") -> str:
    """Extract a required non-empty string field."""
    if field_name not in data or data[field_name] is None:
        raise ServiceError(error, f"Missing required field: {field_name}", 400, {})

    value = data[field_name]
    if not isinstance(value, str):
        raise ServiceError(error, f"Field '{field_name}' must be a string", 400, {})
    if not value.strip():
        raise ServiceError(error, f"Field '{field_name}' must not be empty", 400, {})

    return value


def optional_str(data: dict[str, Any], field_name: str) -> str | None:
    """Extract an optional string field; null and absent are both None."""
    value = data.get(field_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ServiceError(
            "INVALID_PAYLOAD", f"Field '{field_name}' must be a string", 400, {}
        )
    return value


def require_int(data: dict[str, Any], field_name: str, *, error: str = "INVALID_PAYLOAD") -> int:
    """Extract a required integer field. Booleans and floats are rejected."""
    if field_name not in data or data[field_name] is None:
        raise ServiceError(error, f"Missing required field: {field_name}", 400, {})

    value = data[field_name]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ServiceError(error, f"Field '{field_name}' must be an integer", 400, {})

    return value


def parse_payment_reference(data: dict[str, Any]) -> PaymentReference:
    """Extract payment_id and txid from a request body."""
    return PaymentReference(
        payment_id=require_str(data, "payment_id"),
        external_tx_id=require_str(data, "txid"),
    )


def parse_pagination(query: Any) -> tuple[int | None, int | None]:
    """Parse optional limit/offset query parameters."""
    offset_raw = query.get("offset")
    limit_raw = query.get("limit")

    offset: int | None = None
    limit: int | None = None

    if offset_raw is not None:
        try:
            offset = int(offset_raw)
        except ValueError as exc:
            raise ServiceError("INVALID_PAYLOAD", "offset must be an integer", 400, {}) from exc
        if offset < 0:
            raise ServiceError("INVALID_PAYLOAD", "offset must be >= 0", 400, {})

    if limit_raw is not None:
        try:
            limit = int(limit_raw)
        except ValueError as exc:
            raise ServiceError("INVALID_PAYLOAD", "limit must be an integer", 400, {}) from exc
        if limit <= 0:
            raise ServiceError("INVALID_PAYLOAD", "limit must be >= 1", 400, {})

    return limit, offset
