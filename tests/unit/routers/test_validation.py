"""Unit tests for shared router validation helpers."""

from __future__ import annotations

import pytest

from task_market_service.core.exceptions import ServiceError
from task_market_service.routers.validation import (
    parse_json_body,
    parse_pagination,
    parse_payment_reference,
    require_int,
    require_str,
)


@pytest.mark.unit
def test_parse_json_body_valid_object() -> None:
    assert parse_json_body(b'{"reason":"abc"}') == {"reason": "abc"}


@pytest.mark.unit
@pytest.mark.parametrize("raw", [b"{", b'["not", "object"]', b""])
def test_parse_json_body_rejects(raw: bytes) -> None:
    with pytest.raises(ServiceError) as exc_info:
        parse_json_body(raw)
    assert exc_info.value.error == "INVALID_JSON"
    assert exc_info.value.status_code == 400


@pytest.mark.unit
def test_require_str_uses_given_error_code() -> None:
    with pytest.raises(ServiceError) as exc_info:
        require_str({"reason": "   "}, "reason", error="INVALID_REASON")
    assert exc_info.value.error == "INVALID_REASON"


@pytest.mark.unit
@pytest.mark.parametrize("value", [True, 1.0, "5", None])
def test_require_int_rejects_non_integers(value: object) -> None:
    with pytest.raises(ServiceError):
        require_int({"slots": value}, "slots")


@pytest.mark.unit
def test_parse_payment_reference() -> None:
    reference = parse_payment_reference({"payment_id": "pay-1", "txid": "tx-1"})
    assert reference.payment_id == "pay-1"
    assert reference.external_tx_id == "tx-1"


@pytest.mark.unit
def test_parse_pagination() -> None:
    assert parse_pagination({}) == (None, None)
    assert parse_pagination({"limit": "5", "offset": "10"}) == (5, 10)
    with pytest.raises(ServiceError):
        parse_pagination({"offset": "-1"})
