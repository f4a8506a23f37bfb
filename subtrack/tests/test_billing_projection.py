import unittest
from datetime import date
from decimal import Decimal

from subtrack.billing_projection import (
    BillingCycle,
    monthly_equivalent,
    next_billing_date,
    switch_billing_cycle,
)


class NextBillingDateTests(unittest.TestCase):
    def test_monthly_adds_one_calendar_month(self) -> None:
        self.assertEqual(next_billing_date(date(2024, 5, 15), "monthly"), date(2024, 6, 15))

    def test_monthly_clamps_to_leap_day(self) -> None:
        self.assertEqual(next_billing_date(date(2024, 1, 31), "monthly"), date(2024, 2, 29))

    def test_monthly_clamps_in_common_year(self) -> None:
        self.assertEqual(next_billing_date(date(2023, 1, 31), "monthly"), date(2023, 2, 28))

    def test_monthly_rolls_over_year_end(self) -> None:
        self.assertEqual(next_billing_date(date(2024, 12, 10), "monthly"), date(2025, 1, 10))

    def test_annual_adds_one_year(self) -> None:
        self.assertEqual(next_billing_date(date(2024, 3, 1), "annual"), date(2025, 3, 1))

    def test_annual_clamps_leap_day(self) -> None:
        self.assertEqual(next_billing_date(date(2024, 2, 29), "annual"), date(2025, 2, 28))

    def test_yearly_alias_is_annual(self) -> None:
        self.assertEqual(BillingCycle.validate(" Yearly "), "annual")

    def test_only_documented_aliases_are_accepted(self) -> None:
        self.assertEqual(BillingCycle.validate("annually"), "annual")
        with self.assertRaises(ValueError):
            BillingCycle.validate("month")

    def test_unknown_cycle_raises(self) -> None:
        with self.assertRaises(ValueError):
            next_billing_date(date(2024, 3, 1), "weekly")


class MonthlyEquivalentTests(unittest.TestCase):
    def test_monthly_is_unchanged(self) -> None:
        self.assertEqual(monthly_equivalent(Decimal("9.99"), "monthly"), Decimal("9.99"))

    def test_annual_is_divided_by_twelve(self) -> None:
        self.assertEqual(monthly_equivalent(Decimal("120"), "annual"), Decimal("10"))

    def test_coerces_numbers(self) -> None:
        self.assertEqual(monthly_equivalent(60, "annual"), Decimal("5"))


class SwitchBillingCycleTests(unittest.TestCase):
    def test_monthly_to_annual_multiplies(self) -> None:
        self.assertEqual(switch_billing_cycle(Decimal("120"), "monthly", "annual"), Decimal("1440"))

    def test_annual_to_monthly_divides(self) -> None:
        self.assertEqual(switch_billing_cycle(Decimal("1440"), "annual", "monthly"), Decimal("120"))

    def test_same_cycle_is_identity(self) -> None:
        self.assertEqual(switch_billing_cycle(Decimal("7.5"), "monthly", "monthly"), Decimal("7.5"))


if __name__ == "__main__":
    unittest.main()
