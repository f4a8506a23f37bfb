from __future__ import annotations

from calendar import monthrange
from datetime import date
from decimal import Decimal

MONTHS_PER_CYCLE = {"monthly": 1, "annual": 12}
CYCLE_ALIASES = {"yearly": "annual", "annually": "annual"}
MONTHS_PER_YEAR = Decimal("12")


class BillingCycle:
    values = set(MONTHS_PER_CYCLE)

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        normalized = CYCLE_ALIASES.get(normalized, normalized)
        if normalized not in cls.values:
            raise ValueError("Only monthly or annual billing cycles are supported.")
        return normalized


def next_billing_date(billing_date: date, billing_cycle: str) -> date:
    """Return the date one billing cycle after ``billing_date``.

    Days past the end of the target month clamp to its last day, so
    2024-01-31 monthly gives 2024-02-29 and 2024-02-29 annual gives
    2025-02-28.
    """
    months = MONTHS_PER_CYCLE[BillingCycle.validate(billing_cycle)]
    return _add_months(billing_date, months, billing_date.day)


def monthly_equivalent(cost: Decimal | int | float | str, billing_cycle: str) -> Decimal:
    amount = _coerce_amount(cost)
    if BillingCycle.validate(billing_cycle) == "annual":
        return amount / MONTHS_PER_YEAR
    return amount


def switch_billing_cycle(
    cost: Decimal | int | float | str, current_cycle: str, new_cycle: str
) -> Decimal:
    """Rescale ``cost`` when a subscription's cycle is toggled.

    Monthly to annual multiplies by twelve, annual to monthly divides by
    twelve, so the price the user typed keeps its per-period meaning.
    """
    amount = _coerce_amount(cost)
    current = BillingCycle.validate(current_cycle)
    new = BillingCycle.validate(new_cycle)
    if current == new:
        return amount
    if new == "annual":
        return amount * MONTHS_PER_YEAR
    return amount / MONTHS_PER_YEAR


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
