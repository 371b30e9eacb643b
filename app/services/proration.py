"""Remaining-value and plan-change charge calculation.

Cycle lengths are nominal (365 days for yearly plans, 30 days otherwise), not
calendar accurate. Proration is always computed against the plan the user paid
for at the start of the cycle, which callers pass as ``original_price``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal


YEARLY_CYCLE_DAYS = 365
DEFAULT_CYCLE_DAYS = 30
CENT = Decimal('0.01')


@dataclass(frozen=True)
class RemainingValue:
    remaining_days: int
    total_days: int
    value: Decimal


def _to_money(value: Decimal | int | float | str | None) -> Decimal:
    return Decimal(str(value or 0))


def cycle_length_days(interval: str | None) -> int:
    return YEARLY_CYCLE_DAYS if 'year' in (interval or '').lower() else DEFAULT_CYCLE_DAYS


def calculate_remaining_value(
    *,
    next_billing_date: datetime | None,
    interval: str | None,
    original_price: Decimal | int | float | str | None,
    now: datetime | None = None,
) -> RemainingValue:
    total_days = cycle_length_days(interval)
    current = now or datetime.now(UTC)

    remaining_days = 0
    if next_billing_date is not None:
        if next_billing_date.tzinfo is None:
            next_billing_date = next_billing_date.replace(tzinfo=UTC)
        remaining_days = max(0, (next_billing_date - current).days)

    ratio = Decimal(remaining_days) / Decimal(total_days)
    value = (ratio * _to_money(original_price)).quantize(CENT, rounding=ROUND_HALF_UP)
    return RemainingValue(remaining_days=remaining_days, total_days=total_days, value=value)


def calculate_new_charge(new_price: Decimal | int | float | str | None, remaining: RemainingValue) -> Decimal:
    charge = _to_money(new_price) - remaining.value
    return max(Decimal('0'), charge).quantize(CENT, rounding=ROUND_HALF_UP)
