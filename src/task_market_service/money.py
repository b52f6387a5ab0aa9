"""Fixed-point amount helpers.

Amounts are integer minor units (for Pi, 1 Pi = 10**7 minor units).
Fee rates are integer basis points.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

BASIS_POINTS = 10_000


@dataclass(frozen=True)
class FeeSplit:
    """How a reward divides between the worker and the platform."""

    reward: int
    worker_payout: int
    platform_fee: int


def compute_fee_split(reward: int, fee_bps: int) -> FeeSplit:
    """
    Split a reward into worker payout and platform fee.

    The fee is rounded half-up to the minor unit and the payout is the
    remainder, so payout + fee == reward exactly.
    """
    if reward < 0:
        msg = "reward must be non-negative"
        raise ValueError(msg)
    if not 0 <= fee_bps <= BASIS_POINTS:
        msg = "fee_bps must be between 0 and 10000"
        raise ValueError(msg)

    platform_fee = (reward * fee_bps + BASIS_POINTS // 2) // BASIS_POINTS
    return FeeSplit(reward=reward, worker_payout=reward - platform_fee, platform_fee=platform_fee)


def to_minor_units(value: object, decimals: int) -> int:
    """
    Convert a major-unit amount as reported by the gateway (e.g. 8.5) to minor units.

    Raises:
        ValueError: If the value is not numeric or has more precision than the currency
    """
    if isinstance(value, bool):
        msg = f"Not a monetary amount: {value!r}"
        raise ValueError(msg)
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        msg = f"Not a monetary amount: {value!r}"
        raise ValueError(msg) from exc
    if not amount.is_finite():
        msg = f"Not a monetary amount: {value!r}"
        raise ValueError(msg)

    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        msg = f"Amount {value!r} has more than {decimals} decimal places"
        raise ValueError(msg)
    return int(scaled)
