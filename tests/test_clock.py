from datetime import date, datetime, timedelta, timezone
import unittest
from zoneinfo import ZoneInfo

from timekeeping.clock import (
    FixedClock,
    SystemClock,
    month_bounds,
    parse_date,
    parse_instant,
    previous_month,
)
from timekeeping.errors import ValidationError

ZONE = ZoneInfo("Asia/Ho_Chi_Minh")


class ClockTests(unittest.TestCase):
    def test_fixed_clock_today_follows_business_zone(self) -> None:
        # 18:30 UTC on the 31st is already the 1st in UTC+7.
        clock = FixedClock(datetime(2025, 3, 31, 18, 30, tzinfo=timezone.utc), ZONE)

        self.assertEqual(clock.today(), date(2025, 4, 1))
        self.assertEqual(clock.now().utcoffset(), timedelta(hours=7))

    def test_fixed_clock_combine_and_advance(self) -> None:
        clock = FixedClock(datetime(2025, 3, 12, 9, 0, tzinfo=ZONE), ZONE)

        self.assertEqual(clock.combine(date(2025, 3, 12), "15:30"), datetime(2025, 3, 12, 15, 30, tzinfo=ZONE))
        clock.advance(timedelta(hours=2))
        self.assertEqual(clock.now(), datetime(2025, 3, 12, 11, 0, tzinfo=ZONE))

    def test_naive_fixed_instant_is_interpreted_in_zone(self) -> None:
        clock = FixedClock(datetime(2025, 3, 12, 9, 0), ZONE)

        self.assertEqual(clock.now(), datetime(2025, 3, 12, 9, 0, tzinfo=ZONE))

    def test_system_clock_is_aware(self) -> None:
        now = SystemClock(ZONE).now()

        self.assertIsNotNone(now.tzinfo)

    def test_parse_date(self) -> None:
        self.assertEqual(parse_date("2025-02-28"), date(2025, 2, 28))
        with self.assertRaises(ValidationError):
            parse_date("2025-02-30")
        with self.assertRaises(ValidationError):
            parse_date("28/02/2025")

    def test_parse_instant_accepts_rfc3339(self) -> None:
        self.assertEqual(
            parse_instant("2025-03-12T01:30:00Z"),
            datetime(2025, 3, 12, 1, 30, tzinfo=timezone.utc),
        )
        self.assertEqual(
            parse_instant("2025-03-12T08:30:00+07:00"),
            datetime(2025, 3, 12, 1, 30, tzinfo=timezone.utc),
        )

    def test_parse_instant_rejects_missing_offset(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_instant("2025-03-12T08:30:00", field="checkInAt")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.details["field"], "checkInAt")

        with self.assertRaises(ValidationError):
            parse_instant("not-a-time")

    def test_month_helpers(self) -> None:
        self.assertEqual(month_bounds(2024, 2), (date(2024, 2, 1), date(2024, 2, 29)))
        self.assertEqual(previous_month(date(2025, 1, 1)), (2024, 12))
        self.assertEqual(previous_month(date(2025, 7, 15)), (2025, 6))


if __name__ == "__main__":
    unittest.main()
