from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
import unittest
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from timekeeping.clock import FixedClock
from timekeeping.db import Base
from timekeeping.errors import ValidationError
from timekeeping.models import AttendanceSession, SessionStatus, User
from timekeeping.services.stats import get_me_stats, parse_stats_range

ZONE = ZoneInfo("Asia/Ho_Chi_Minh")


class StatsServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.db = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)()
        self.user = User(name="Hoa", email="hoa@example.com")
        self.db.add(self.user)
        self.db.commit()
        self.clock = FixedClock(datetime(2025, 3, 12, 10, 0, tzinfo=ZONE), ZONE)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _add(self, work_date: date, *, minutes: int, unit: float, closed: bool = True) -> None:
        check_in = datetime.combine(work_date, datetime.min.time(), tzinfo=ZONE) + timedelta(hours=8, minutes=30)
        self.db.add(
            AttendanceSession(
                user_id=self.user.id,
                work_date=work_date,
                check_in_at=check_in.astimezone(timezone.utc),
                check_out_at=(check_in + timedelta(minutes=minutes)).astimezone(timezone.utc) if closed else None,
                worked_minutes=minutes if closed else 0,
                day_unit=unit,
                status=SessionStatus.CLOSED if closed else SessionStatus.OPEN,
            )
        )
        self.db.commit()

    def test_parse_range_defaults_to_current_month_capped_at_today(self) -> None:
        self.assertEqual(
            parse_stats_range(self.clock, None, None),
            ("month", date(2025, 3, 1), date(2025, 3, 12)),
        )
        self.assertEqual(
            parse_stats_range(self.clock, "2025-02", None),
            ("month", date(2025, 2, 1), date(2025, 2, 28)),
        )
        self.assertEqual(
            parse_stats_range(self.clock, None, "2024"),
            ("year", date(2024, 1, 1), date(2024, 12, 31)),
        )

    def test_parse_range_rejects_bad_formats(self) -> None:
        for month in ("2025-13", "2025-3", "March"):
            with self.assertRaises(ValidationError):
                parse_stats_range(self.clock, month, None)
        with self.assertRaises(ValidationError):
            parse_stats_range(self.clock, None, "25")

    def test_parse_range_rejects_years_outside_supported_span(self) -> None:
        for year in ("0000", "1999", "2101"):
            with self.assertRaises(ValidationError) as ctx:
                parse_stats_range(self.clock, None, year)
            self.assertEqual(ctx.exception.details["field"], "year")
        for month in ("0000-05", "1999-12", "2101-01"):
            with self.assertRaises(ValidationError) as ctx:
                parse_stats_range(self.clock, month, None)
            self.assertEqual(ctx.exception.details["field"], "month")

    def test_month_totals_and_anomalies(self) -> None:
        self._add(date(2025, 3, 3), minutes=480, unit=1.0)
        self._add(date(2025, 3, 4), minutes=180, unit=0.5)
        self._add(date(2025, 3, 5), minutes=120, unit=0.0)
        self._add(date(2025, 3, 6), minutes=0, unit=0.5, closed=False)
        self._add(date(2025, 3, 12), minutes=0, unit=0.5, closed=False)

        stats = get_me_stats(self.db, self.clock, self.user.id)

        self.assertEqual(stats.range, "month")
        self.assertEqual(stats.total_worked_minutes, 780)
        self.assertEqual(stats.worked_days, 3)
        self.assertEqual(stats.total_day_unit, 2.5)
        self.assertEqual((stats.full_days, stats.half_days, stats.missing_days), (1, 3, 1))
        self.assertEqual(stats.open_sessions, 2)
        self.assertEqual(stats.anomalies.missing_check_out, 1)
        self.assertEqual([point.work_date.day for point in stats.series], [3, 4, 5, 6, 12])
        self.assertIsNone(stats.prev_month_comparison)

    def test_previous_month_comparison(self) -> None:
        self._add(date(2025, 2, 20), minutes=480, unit=1.0)
        self._add(date(2025, 3, 3), minutes=480, unit=1.0)
        self._add(date(2025, 3, 4), minutes=480, unit=1.0)

        stats = get_me_stats(self.db, self.clock, self.user.id, month="2025-03")

        comparison = stats.prev_month_comparison
        self.assertIsNotNone(comparison)
        self.assertEqual(comparison.prev_total_worked_minutes, 480)
        self.assertEqual(comparison.worked_minutes_delta, 480)
        self.assertEqual(comparison.day_unit_delta, 1.0)
        self.assertEqual(comparison.worked_days_delta, 1)

        yearly = get_me_stats(self.db, self.clock, self.user.id, year="2025")
        self.assertEqual(yearly.worked_days, 3)
        self.assertIsNone(yearly.prev_month_comparison)


if __name__ == "__main__":
    unittest.main()
