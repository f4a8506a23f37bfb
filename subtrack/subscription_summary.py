from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from subtrack.billing_projection import BillingCycle, monthly_equivalent
from subtrack.currency_conversion import convert_amount, normalize_currency

ZERO = Decimal("0")
RENEWAL_WINDOW_DAYS = 30
NEAR_TERM_DAYS = 7
CATEGORIES = ("streaming", "software", "gaming", "other")


class Category:
    values = set(CATEGORIES)

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Category must be streaming, software, gaming, or other.")
        return normalized


@dataclass(frozen=True)
class SubscriptionRecord:
    service_name: str
    cost: Decimal
    currency: str
    billing_cycle: str
    billing_date: date
    next_billing_date: date
    category: str
    payment_method: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class SubscriptionSummary:
    reporting_currency: str
    monthly_total: Decimal
    per_category_monthly_total: Dict[str, Decimal]
    upcoming_renewals: List[SubscriptionRecord] = field(default_factory=list)


def summarize(
    subscriptions: Iterable[SubscriptionRecord],
    rates: Optional[Mapping[str, Decimal]],
    reporting_currency: str,
    today: Optional[date] = None,
    window_days: int = RENEWAL_WINDOW_DAYS,
) -> SubscriptionSummary:
    """Fold subscriptions into totals in ``reporting_currency``.

    Totals are accumulated on unrounded amounts; callers format the final
    figures. An unknown currency on any record propagates as
    ``UnknownCurrency``.
    """
    records = list(subscriptions)
    target = normalize_currency(reporting_currency)

    monthly_total = ZERO
    per_category: Dict[str, Decimal] = {category: ZERO for category in CATEGORIES}
    for record in records:
        converted = _monthly_cost_in(record, rates, target)
        monthly_total += converted
        per_category[record.category] = per_category.get(record.category, ZERO) + converted

    return SubscriptionSummary(
        reporting_currency=target,
        monthly_total=monthly_total,
        per_category_monthly_total=per_category,
        upcoming_renewals=upcoming_renewals(records, today=today, window_days=window_days),
    )


def upcoming_renewals(
    subscriptions: Iterable[SubscriptionRecord],
    today: Optional[date] = None,
    window_days: int = RENEWAL_WINDOW_DAYS,
) -> List[SubscriptionRecord]:
    start = _as_date(today or date.today())
    end = start + timedelta(days=window_days)
    due = [
        record
        for record in subscriptions
        if start <= _as_date(record.next_billing_date) <= end
    ]
    return sorted(due, key=lambda record: _as_date(record.next_billing_date))


def relative_date_label(target: date, today: Optional[date] = None) -> str:
    target_date = _as_date(target)
    reference = _as_date(today or date.today())
    offset = (target_date - reference).days
    if offset == 0:
        return "Today"
    if offset == 1:
        return "Tomorrow"
    if 2 <= offset <= NEAR_TERM_DAYS:
        return f"In {offset} days"
    label = f"{target_date:%b} {target_date.day}"
    if target_date.year != reference.year:
        label += f", {target_date.year}"
    return label


def monthly_spending_trend(
    subscriptions: Iterable[SubscriptionRecord],
    rates: Optional[Mapping[str, Decimal]],
    reporting_currency: str,
) -> List[tuple[str, Decimal]]:
    target = normalize_currency(reporting_currency)
    totals: Dict[str, Decimal] = {}
    for record in subscriptions:
        month_key = f"{_as_date(record.billing_date):%Y-%m}"
        totals[month_key] = totals.get(month_key, ZERO) + _monthly_cost_in(record, rates, target)
    return sorted(totals.items())


def billing_cycle_distribution(subscriptions: Iterable[SubscriptionRecord]) -> Dict[str, int]:
    counts = {cycle: 0 for cycle in sorted(BillingCycle.values)}
    for record in subscriptions:
        cycle = BillingCycle.validate(record.billing_cycle)
        counts[cycle] += 1
    return counts


def _monthly_cost_in(
    record: SubscriptionRecord,
    rates: Optional[Mapping[str, Decimal]],
    target_currency: str,
) -> Decimal:
    monthly_cost = monthly_equivalent(record.cost, record.billing_cycle)
    return convert_amount(monthly_cost, record.currency, target_currency, rates)


def _as_date(value: date) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
