from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
import unittest
from unittest.mock import patch
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from timekeeping.clock import FixedClock, month_bounds
from timekeeping.db import Base
from timekeeping.errors import NotFoundError, ValidationError
from timekeeping.models import (
    AttendanceSession,
    LeaveGrant,
    LeaveGrantType,
    LeaveMonthlySummary,
    SessionStatus,
    User,
    UserStatus,
)
from timekeeping.services.attendance import AttendanceUnitsSource
from timekeeping.services.leave import (
    adjust_paid_leave,
    apportion_missing,
    expected_units,
    list_grants,
    list_summaries,
    process_monthly_grant,
    process_previous_month_deduction,
    process_summary_backfill,
    project_monthly_summary,
    recalculate_month_summaries,
    summary_window_end,
)
from timekeeping.services.work_calendar import CalendarDayInput, ensure_year, upsert_day

ZONE = ZoneInfo("Asia/Ho_Chi_Minh")


class _FixedUnits:
    """Units source that reports ``expected - missing`` worked units."""

    def __init__(self, db, missing_by_month: dict[tuple[int, int], float]):  # type: ignore[no-untyped-def]
        self.db = db
        self.missing_by_month = missing_by_month
        self.calls: list[tuple[int, date, date]] = []

    def sum_closed_day_units(self, user_id: int, from_date: date, to_date: date) -> float:
        self.calls.append((user_id, from_date, to_date))
        missing = self.missing_by_month.get((from_date.year, from_date.month), 0.0)
        return expected_units(self.db, from_date, to_date) - missing

    def months_with_sessions(self) -> list[tuple[int, int]]:
        return sorted(self.missing_by_month)


class LeaveServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.db = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)()

        self.alice = User(name="Alice", email="alice@example.com", birthday=date(1988, 7, 14), paid_leave=0.0)
        self.bob = User(name="Bob", email="bob@example.com", paid_leave=2.0)
        self.carol = User(name="Carol", email="carol@example.com", status=UserStatus.disabled, paid_leave=5.0)
        self.db.add_all([self.alice, self.bob, self.carol])
        self.db.commit()

        self.clock = FixedClock(datetime(2025, 9, 10, 10, 0, tzinfo=ZONE), ZONE)
        self.units = AttendanceUnitsSource(self.db)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _paid_leave(self, user: User) -> float:
        self.db.expire_all()
        return float(self.db.get(User, user.id).paid_leave)

    def _add_closed_session(self, user: User, work_date: date, day_unit: float) -> None:
        check_in = datetime.combine(work_date, datetime.min.time(), tzinfo=ZONE) + timedelta(hours=8)
        self.db.add(
            AttendanceSession(
                user_id=user.id,
                work_date=work_date,
                check_in_at=check_in.astimezone(timezone.utc),
                check_out_at=(check_in + timedelta(hours=10)).astimezone(timezone.utc),
                worked_minutes=480,
                day_unit=day_unit,
                status=SessionStatus.CLOSED,
            )
        )
        self.db.commit()

    def test_apportion_missing(self) -> None:
        split = apportion_missing(1.5, 0.0, False)
        self.assertEqual((split.paid_used, split.unpaid), (0.0, 1.5))

        split = apportion_missing(1.5, 0.0, True)
        self.assertEqual((split.paid_used, split.unpaid), (0.0, 0.5))

        split = apportion_missing(3.0, 2.0, False)
        self.assertEqual((split.paid_used, split.unpaid), (2.0, 1.0))

        split = apportion_missing(0.5, -1.0, True)
        self.assertEqual((split.paid_used, split.unpaid), (0.0, 0.0))

    def test_birthday_absorbs_one_unit_in_birthday_month(self) -> None:
        units = _FixedUnits(self.db, {(2025, 3): 1.5, (2025, 7): 1.5})

        march = project_monthly_summary(self.db, self.clock, units, user_id=self.alice.id, year=2025, month=3)
        july = project_monthly_summary(self.db, self.clock, units, user_id=self.alice.id, year=2025, month=7)

        self.assertFalse(march.is_birthday)
        self.assertEqual(march.missing_units, 1.5)
        self.assertEqual((march.paid_used_units, march.unpaid_units), (0.0, 1.5))
        self.assertTrue(july.is_birthday)
        self.assertEqual(july.missing_units, 1.5)
        self.assertEqual((july.paid_used_units, july.unpaid_units), (0.0, 0.5))
        self.assertEqual(self._paid_leave(self.alice), 0.0)

    def test_projection_uses_calendar_and_closed_sessions(self) -> None:
        ensure_year(self.db, 2025)
        for day in range(3, 8):
            self._add_closed_session(self.bob, date(2025, 3, day), 1.0)
        self._add_closed_session(self.bob, date(2025, 3, 10), 0.5)

        summary = project_monthly_summary(self.db, self.clock, self.units, user_id=self.bob.id, year=2025, month=3)

        self.assertEqual(summary.expected_units, 21.0)
        self.assertEqual(summary.worked_units, 5.5)
        self.assertEqual(summary.missing_units, 15.5)
        self.assertEqual(summary.paid_used_units, 2.0)
        self.assertEqual(summary.unpaid_units, 13.5)
        self.assertEqual(self._paid_leave(self.bob), 2.0)

    def test_projection_is_repeatable(self) -> None:
        units = _FixedUnits(self.db, {(2025, 3): 1.0})

        first = project_monthly_summary(self.db, self.clock, units, user_id=self.bob.id, year=2025, month=3)
        first_values = (first.expected_units, first.worked_units, first.missing_units, first.paid_used_units, first.unpaid_units)
        second = project_monthly_summary(self.db, self.clock, units, user_id=self.bob.id, year=2025, month=3)

        self.assertEqual(
            first_values,
            (second.expected_units, second.worked_units, second.missing_units, second.paid_used_units, second.unpaid_units),
        )
        count = self.db.scalar(select(func.count()).select_from(LeaveMonthlySummary))
        self.assertEqual(count, 1)

    def test_current_month_window_ends_today(self) -> None:
        self.assertEqual(summary_window_end(self.clock, 2025, 9), date(2025, 9, 10))
        self.assertEqual(summary_window_end(self.clock, 2025, 8), date(2025, 8, 31))

        units = _FixedUnits(self.db, {})
        summary = project_monthly_summary(self.db, self.clock, units, user_id=self.bob.id, year=2025, month=9)

        # September 1-10, 2025 holds eight weekdays.
        self.assertEqual(summary.expected_units, 8.0)
        self.assertEqual(units.calls[-1][1:], (date(2025, 9, 1), date(2025, 9, 10)))

    def test_projection_validates_inputs(self) -> None:
        with self.assertRaises(NotFoundError):
            project_monthly_summary(self.db, self.clock, self.units, user_id=999, year=2025, month=3)
        with self.assertRaises(ValidationError):
            project_monthly_summary(self.db, self.clock, self.units, user_id=self.bob.id, year=2025, month=13)

    def test_monthly_grant_is_idempotent(self) -> None:
        first = process_monthly_grant(self.db, self.clock, self.units, 2025, 3)
        second = process_monthly_grant(self.db, self.clock, self.units, 2025, 3)

        self.assertTrue(first)
        self.assertFalse(second)
        grants = self.db.scalar(
            select(func.count()).select_from(LeaveGrant).where(
                LeaveGrant.grant_year == 2025,
                LeaveGrant.grant_month == 3,
                LeaveGrant.grant_type == LeaveGrantType.MONTHLY,
            )
        )
        self.assertEqual(grants, 1)
        self.assertEqual(self._paid_leave(self.alice), 1.0)
        self.assertEqual(self._paid_leave(self.bob), 3.0)
        self.assertEqual(self._paid_leave(self.carol), 5.0)

        summaries = {row.summary.user_id for row in list_summaries(self.db, year=2025, month=3)}
        self.assertEqual(summaries, {self.alice.id, self.bob.id})

    def test_monthly_grant_aborts_when_fence_insert_races(self) -> None:
        self.db.add(LeaveGrant(grant_year=2025, grant_month=4, grant_type=LeaveGrantType.MONTHLY))
        self.db.commit()

        with patch("timekeeping.services.leave._fence_exists", return_value=False):
            applied = process_monthly_grant(self.db, self.clock, self.units, 2025, 4)

        self.assertFalse(applied)
        self.assertEqual(self._paid_leave(self.bob), 2.0)

    def test_monthly_grant_with_no_active_users_still_records_fence(self) -> None:
        for user in (self.alice, self.bob):
            user.status = UserStatus.disabled
        self.db.commit()

        self.assertTrue(process_monthly_grant(self.db, self.clock, self.units, 2025, 5))
        self.assertEqual([(g.grant_year, g.grant_month) for g in list_grants(self.db)], [(2025, 5)])

    def test_monthly_grant_rejects_invalid_month(self) -> None:
        with self.assertRaises(ValidationError):
            process_monthly_grant(self.db, self.clock, self.units, 2025, 0)

    def test_deduction_runs_only_on_first_day(self) -> None:
        self.assertFalse(process_previous_month_deduction(self.db, self.clock, self.units))
        self.assertEqual(list_grants(self.db), [])

    def test_deduction_charges_paid_usage_once(self) -> None:
        self.clock.set(datetime(2025, 4, 1, 7, 0, tzinfo=ZONE))
        self.alice.paid_leave = 1.0
        self.db.commit()
        units = _FixedUnits(self.db, {(2025, 3): 1.5})

        applied = process_previous_month_deduction(self.db, self.clock, units)
        replay = process_previous_month_deduction(self.db, self.clock, units)

        self.assertTrue(applied)
        self.assertFalse(replay)
        self.assertEqual(self._paid_leave(self.bob), 0.5)
        self.assertEqual(self._paid_leave(self.alice), 0.0)
        self.assertEqual(self._paid_leave(self.carol), 5.0)
        fence_types = [grant.grant_type for grant in list_grants(self.db)]
        self.assertEqual(fence_types, [LeaveGrantType.DEDUCTION])

    def test_deduction_skips_user_whose_projection_fails(self) -> None:
        self.clock.set(datetime(2025, 4, 1, 7, 0, tzinfo=ZONE))
        self.alice.paid_leave = 1.0
        self.db.commit()
        failing_user_id = self.alice.id

        class _FailingForOneUser(_FixedUnits):
            def sum_closed_day_units(self, user_id: int, from_date: date, to_date: date) -> float:
                if user_id == failing_user_id:
                    raise RuntimeError("units unavailable")
                return super().sum_closed_day_units(user_id, from_date, to_date)

        units = _FailingForOneUser(self.db, {(2025, 3): 1.5})

        with self.assertLogs("timekeeping.leave", level="ERROR") as logs:
            applied = process_previous_month_deduction(self.db, self.clock, units)

        self.assertTrue(applied)
        self.assertTrue(any("summary_projection_failed" in line for line in logs.output))
        self.assertEqual(self._paid_leave(self.alice), 1.0)
        self.assertEqual(self._paid_leave(self.bob), 0.5)
        self.assertIsNone(self.db.get(LeaveMonthlySummary, (self.alice.id, 2025, 3)))

    def test_deduction_aborts_when_fence_insert_races(self) -> None:
        self.clock.set(datetime(2025, 4, 1, 7, 0, tzinfo=ZONE))
        self.db.add(LeaveGrant(grant_year=2025, grant_month=3, grant_type=LeaveGrantType.DEDUCTION))
        self.db.commit()
        units = _FixedUnits(self.db, {(2025, 3): 1.5})

        with patch("timekeeping.services.leave._fence_exists", return_value=False):
            applied = process_previous_month_deduction(self.db, self.clock, units)

        self.assertFalse(applied)
        self.assertEqual(self._paid_leave(self.bob), 2.0)

    def test_backfill_projects_months_without_summaries(self) -> None:
        units = _FixedUnits(self.db, {(2025, 1): 0.0, (2025, 2): 2.0})
        project_monthly_summary(self.db, self.clock, units, user_id=self.bob.id, year=2025, month=1)

        filled = process_summary_backfill(self.db, self.clock, units)

        self.assertEqual(filled, [(2025, 2)])
        rows = list_summaries(self.db, year=2025, month=2)
        self.assertEqual([row.user_name for row in rows], ["Alice", "Bob"])
        self.assertEqual(process_summary_backfill(self.db, self.clock, units), [])

    def test_recalculate_only_touches_existing_summaries(self) -> None:
        units = AttendanceUnitsSource(self.db)
        project_monthly_summary(self.db, self.clock, units, user_id=self.bob.id, year=2025, month=3)

        upsert_day(
            self.db,
            CalendarDayInput(work_date=date(2025, 3, 3), is_working_day=False, work_unit=0.0),
            on_month_changed=lambda year, month: recalculate_month_summaries(self.db, self.clock, units, year, month),
        )

        summary = self.db.get(LeaveMonthlySummary, (self.bob.id, 2025, 3))
        self.assertEqual(summary.expected_units, 20.0)
        self.assertIsNone(self.db.get(LeaveMonthlySummary, (self.alice.id, 2025, 3)))

    def test_adjust_paid_leave_updates_balance_and_projects(self) -> None:
        units = _FixedUnits(self.db, {(2025, 3): 3.0})

        summary = adjust_paid_leave(
            self.db,
            self.clock,
            units,
            user_id=self.bob.id,
            year=2025,
            month=3,
            paid_leave=4.0,
            reason="carry-over from last year",
        )

        self.assertEqual(self._paid_leave(self.bob), 4.0)
        self.assertEqual((summary.paid_used_units, summary.unpaid_units), (3.0, 0.0))

        with self.assertRaises(ValidationError):
            adjust_paid_leave(self.db, self.clock, units, user_id=self.bob.id, year=2025, month=3, paid_leave=-1, reason="x")
        with self.assertRaises(ValidationError):
            adjust_paid_leave(
                self.db, self.clock, units, user_id=self.bob.id, year=2025, month=3, paid_leave=10000, reason="x"
            )
        with self.assertRaises(ValidationError):
            adjust_paid_leave(self.db, self.clock, units, user_id=self.bob.id, year=2025, month=3, paid_leave=1, reason=" ")
        with self.assertRaises(NotFoundError):
            adjust_paid_leave(self.db, self.clock, units, user_id=999, year=2025, month=3, paid_leave=1, reason="x")

    def test_list_grants_newest_first(self) -> None:
        process_monthly_grant(self.db, self.clock, self.units, 2025, 1)
        process_monthly_grant(self.db, self.clock, self.units, 2025, 3)
        process_monthly_grant(self.db, self.clock, self.units, 2024, 12)

        periods = [(grant.grant_year, grant.grant_month) for grant in list_grants(self.db)]
        self.assertEqual(periods, [(2025, 3), (2025, 1), (2024, 12)])

    def test_march_has_expected_working_days(self) -> None:
        ensure_year(self.db, 2025)
        first, last = month_bounds(2025, 3)

        self.assertEqual(expected_units(self.db, first, last), 21.0)


if __name__ == "__main__":
    unittest.main()
