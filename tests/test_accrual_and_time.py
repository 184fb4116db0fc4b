from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from leaveflow.services.accrual import calculate_accrual_reference, is_stale_balance_year, make_balance_id
from leaveflow.services.leave_time import (
    compute_minutes,
    format_datetime,
    format_duration,
    format_duration_with_days,
    has_overlap,
    overlaps,
)


class AccrualReferenceTests(unittest.TestCase):
    def test_joined_in_march_checked_in_june(self) -> None:
        reference = calculate_accrual_reference(7200, 3, 6)
        self.assertEqual(reference.monthly_rate_minutes, 600)
        self.assertEqual(reference.months_since_join, 4)
        self.assertEqual(reference.entitlement_minutes, 2400)
        self.assertTrue(reference.is_valid)

    def test_rounds_half_up(self) -> None:
        reference = calculate_accrual_reference(100, 1, 6)
        self.assertEqual(reference.entitlement_minutes, 50)
        # 1.5 minutes per month rounds up to 2.
        self.assertEqual(calculate_accrual_reference(18, 1, 1).entitlement_minutes, 2)

    def test_negative_entitlement_is_clamped(self) -> None:
        reference = calculate_accrual_reference(-500, 1, 12)
        self.assertEqual(reference.monthly_rate_minutes, 0)
        self.assertEqual(reference.entitlement_minutes, 0)
        self.assertTrue(reference.is_valid)

    def test_invalid_months_never_raise(self) -> None:
        for join_month, current_month in ((0, 5), (13, 5), (5, 4), (2.5, 6), (None, 3)):
            reference = calculate_accrual_reference(7200, join_month, current_month)  # type: ignore[arg-type]
            self.assertFalse(reference.is_valid)
            self.assertEqual(reference.months_since_join, 0)
            self.assertEqual(reference.entitlement_minutes, 0)

    def test_to_dict(self) -> None:
        data = calculate_accrual_reference(1200, 1, 1).to_dict()
        self.assertEqual(data["months_since_join"], 1)
        self.assertEqual(data["entitlement_minutes"], 100)


class BalanceKeyTests(unittest.TestCase):
    def test_balance_id(self) -> None:
        self.assertEqual(make_balance_id("u1", "annual", 2026), "u1__annual__2026")

    def test_stale_year(self) -> None:
        self.assertTrue(is_stale_balance_year(2024, 2026))
        self.assertFalse(is_stale_balance_year(2025, 2026))


class LeaveTimeTests(unittest.TestCase):
    def test_compute_minutes_uses_calendar_time(self) -> None:
        start = datetime(2026, 3, 6, 9, 0, tzinfo=timezone.utc)
        self.assertEqual(compute_minutes(start, start + timedelta(hours=1)), 60)
        self.assertEqual(compute_minutes(start, start + timedelta(days=3)), 3 * 24 * 60)
        self.assertEqual(compute_minutes(start, start + timedelta(seconds=89)), 1)

    def test_compute_minutes_across_offsets(self) -> None:
        start = datetime(2026, 3, 6, 9, 0, tzinfo=timezone(timedelta(hours=3)))
        end = datetime(2026, 3, 6, 7, 0, tzinfo=timezone.utc)
        self.assertEqual(compute_minutes(start, end), 60)

    def test_overlap_is_half_open(self) -> None:
        base = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        self.assertFalse(overlaps(base, base + timedelta(hours=1), base + timedelta(hours=1), base + timedelta(hours=2)))
        self.assertTrue(overlaps(base, base + timedelta(hours=2), base + timedelta(hours=1), base + timedelta(hours=3)))

    def test_has_overlap_accepts_naive_database_values(self) -> None:
        existing = SimpleNamespace(start_at=datetime(2026, 1, 5, 9, 0), end_at=datetime(2026, 1, 5, 12, 0))
        start = datetime(2026, 1, 5, 11, 0, tzinfo=timezone.utc)
        self.assertTrue(has_overlap([existing], start, start + timedelta(hours=1)))
        self.assertFalse(has_overlap([existing], start + timedelta(hours=1), start + timedelta(hours=2)))

    def test_duration_formatting(self) -> None:
        self.assertEqual(format_duration(0), "0m")
        self.assertEqual(format_duration(90), "1h 30m")
        self.assertEqual(format_duration(120), "2h")
        self.assertEqual(format_duration_with_days(0), "0m")
        self.assertEqual(format_duration_with_days(960), "2d")
        self.assertEqual(format_duration_with_days(720), "1.5d")
        self.assertEqual(format_duration_with_days(510), "1d 30m")
        self.assertEqual(format_duration_with_days(45), "45m")

    def test_format_datetime(self) -> None:
        self.assertEqual(format_datetime(None), "-")
        self.assertEqual(format_datetime(datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)), "2026-01-05 09:00 UTC")


if __name__ == "__main__":
    unittest.main()
