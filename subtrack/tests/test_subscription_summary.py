import unittest
from datetime import date, datetime
from decimal import Decimal

from subtrack.currency_conversion import UnknownCurrency
from subtrack.subscription_summary import (
    Category,
    SubscriptionRecord,
    billing_cycle_distribution,
    monthly_spending_trend,
    relative_date_label,
    summarize,
    upcoming_renewals,
)

RATES = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.5"),
    "BTC": Decimal("0.0001"),
}


def make_record(
    service_name: str,
    next_date: date,
    cost: str = "10",
    currency: str = "USD",
    billing_cycle: str = "monthly",
    category: str = "streaming",
    billing_date: date | None = None,
) -> SubscriptionRecord:
    return SubscriptionRecord(
        service_name=service_name,
        cost=Decimal(cost),
        currency=currency,
        billing_cycle=billing_cycle,
        billing_date=billing_date or date(2024, 5, 1),
        next_billing_date=next_date,
        category=category,
    )


class SummarizeTests(unittest.TestCase):
    def test_totals_convert_monthly_equivalents(self) -> None:
        records = [
            make_record("Video", date(2024, 6, 5), cost="10", currency="USD"),
            make_record(
                "Editor",
                date(2025, 1, 1),
                cost="120",
                currency="EUR",
                billing_cycle="annual",
                category="software",
            ),
            make_record("Node", date(2024, 7, 1), cost="0.0001", currency="BTC", category="other"),
        ]

        summary = summarize(records, RATES, "USD", today=date(2024, 6, 1))

        # 10 USD + (120 / 12) EUR -> 20 USD + 0.0001 BTC -> 1 USD
        self.assertEqual(summary.monthly_total, Decimal("31"))
        self.assertEqual(
            summary.per_category_monthly_total,
            {
                "streaming": Decimal("10"),
                "software": Decimal("20"),
                "gaming": Decimal("0"),
                "other": Decimal("1"),
            },
        )
        self.assertEqual(summary.reporting_currency, "USD")

    def test_reporting_currency_conversion(self) -> None:
        records = [make_record("Video", date(2024, 6, 5), cost="10", currency="USD")]

        summary = summarize(records, RATES, "eur", today=date(2024, 6, 1))

        self.assertEqual(summary.reporting_currency, "EUR")
        self.assertEqual(summary.monthly_total, Decimal("5"))

    def test_sums_unrounded_amounts(self) -> None:
        records = [
            make_record("A", date(2024, 6, 5), cost="0.004"),
            make_record("B", date(2024, 6, 5), cost="0.004"),
        ]

        summary = summarize(records, RATES, "USD", today=date(2024, 6, 1))

        self.assertEqual(summary.monthly_total, Decimal("0.008"))

    def test_empty_collection_has_zero_categories(self) -> None:
        summary = summarize([], RATES, "USD", today=date(2024, 6, 1))

        self.assertEqual(summary.monthly_total, Decimal("0"))
        self.assertEqual(set(summary.per_category_monthly_total), {"streaming", "software", "gaming", "other"})
        self.assertEqual(summary.upcoming_renewals, [])

    def test_unknown_currency_propagates(self) -> None:
        records = [make_record("Odd", date(2024, 6, 5), currency="XYZ")]

        with self.assertRaises(UnknownCurrency):
            summarize(records, RATES, "USD", today=date(2024, 6, 1))


class UpcomingRenewalTests(unittest.TestCase):
    def test_window_is_inclusive_and_sorted(self) -> None:
        records = [
            make_record("Late", date(2024, 6, 30)),
            make_record("Past", date(2024, 5, 31)),
            make_record("Beyond", date(2024, 7, 2)),
            make_record("Now", date(2024, 6, 1)),
        ]

        due = upcoming_renewals(records, today=date(2024, 6, 1))

        self.assertEqual([record.service_name for record in due], ["Now", "Late"])

    def test_ties_keep_input_order(self) -> None:
        records = [
            make_record("First", date(2024, 6, 10)),
            make_record("Earlier", date(2024, 6, 3)),
            make_record("Second", date(2024, 6, 10)),
        ]

        due = upcoming_renewals(records, today=date(2024, 6, 1))

        self.assertEqual(
            [record.service_name for record in due],
            ["Earlier", "First", "Second"],
        )

    def test_datetimes_are_truncated(self) -> None:
        records = [make_record("Evening", datetime(2024, 7, 1, 23, 30))]

        due = upcoming_renewals(records, today=datetime(2024, 6, 1, 18, 0))

        self.assertEqual(len(due), 1)


class RelativeDateLabelTests(unittest.TestCase):
    def test_labels(self) -> None:
        today = date(2024, 6, 1)

        self.assertEqual(relative_date_label(date(2024, 6, 1), today), "Today")
        self.assertEqual(relative_date_label(date(2024, 6, 2), today), "Tomorrow")
        self.assertEqual(relative_date_label(date(2024, 6, 3), today), "In 2 days")
        self.assertEqual(relative_date_label(date(2024, 6, 8), today), "In 7 days")
        self.assertEqual(relative_date_label(date(2024, 6, 9), today), "Jun 9")
        self.assertEqual(relative_date_label(date(2024, 5, 30), today), "May 30")
        self.assertEqual(relative_date_label(date(2025, 1, 4), today), "Jan 4, 2025")


class ChartDataTests(unittest.TestCase):
    def test_monthly_spending_trend_groups_by_billing_month(self) -> None:
        records = [
            make_record("A", date(2024, 6, 5), cost="10", billing_date=date(2024, 5, 5)),
            make_record("B", date(2024, 6, 9), cost="24", billing_cycle="annual", billing_date=date(2024, 3, 9)),
            make_record("C", date(2024, 6, 20), cost="5", currency="EUR", billing_date=date(2024, 5, 20)),
        ]

        trend = monthly_spending_trend(records, RATES, "USD")

        self.assertEqual(trend, [("2024-03", Decimal("2")), ("2024-05", Decimal("20"))])

    def test_billing_cycle_distribution(self) -> None:
        records = [
            make_record("A", date(2024, 6, 5)),
            make_record("B", date(2024, 6, 5), billing_cycle="annual"),
            make_record("C", date(2024, 6, 5), billing_cycle="annual"),
        ]

        self.assertEqual(billing_cycle_distribution(records), {"annual": 2, "monthly": 1})
        self.assertEqual(billing_cycle_distribution([]), {"annual": 0, "monthly": 0})

    def test_category_validation(self) -> None:
        self.assertEqual(Category.validate(" Gaming "), "gaming")
        with self.assertRaises(ValueError):
            Category.validate("music")


if __name__ == "__main__":
    unittest.main()
