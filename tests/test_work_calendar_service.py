from __future__ import annotations

from datetime import date
import unittest

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from timekeeping.db import Base
from timekeeping.errors import ValidationError
from timekeeping.models import WorkCalendarDay
from timekeeping.services.work_calendar import (
    CalendarDayInput,
    bulk_upsert,
    ensure_year,
    get_day,
    list_range,
    upsert_day,
    validate_day,
)


class WorkCalendarServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.db = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _count(self) -> int:
        return self.db.scalar(select(func.count()).select_from(WorkCalendarDay))

    def test_ensure_year_seeds_weekday_defaults(self) -> None:
        inserted = ensure_year(self.db, 2024)

        self.assertEqual(inserted, 366)
        monday = get_day(self.db, date(2024, 3, 4))
        sunday = get_day(self.db, date(2024, 3, 3))
        self.assertTrue(monday.is_working_day)
        self.assertEqual(monday.work_unit, 1.0)
        self.assertFalse(sunday.is_working_day)
        self.assertEqual(sunday.work_unit, 0.0)

    def test_ensure_year_is_idempotent(self) -> None:
        ensure_year(self.db, 2025)

        self.assertEqual(ensure_year(self.db, 2025), 0)
        self.assertEqual(self._count(), 365)

    def test_ensure_year_completes_partial_year_without_overwriting(self) -> None:
        upsert_day(
            self.db,
            CalendarDayInput(work_date=date(2025, 1, 1), is_working_day=False, work_unit=0.0, note="New Year"),
        )

        inserted = ensure_year(self.db, 2025)

        self.assertEqual(inserted, 364)
        holiday = get_day(self.db, date(2025, 1, 1))
        self.assertFalse(holiday.is_working_day)
        self.assertEqual(holiday.note, "New Year")

    def test_ensure_year_fills_dates_removed_later(self) -> None:
        ensure_year(self.db, 2025)
        self.db.execute(delete(WorkCalendarDay).where(WorkCalendarDay.work_date == date(2025, 6, 2)))
        self.db.commit()

        self.assertEqual(ensure_year(self.db, 2025), 1)
        self.assertTrue(get_day(self.db, date(2025, 6, 2)).is_working_day)

    def test_upsert_day_is_idempotent_and_notifies_month(self) -> None:
        notified: list[tuple[int, int]] = []
        payload = CalendarDayInput(work_date=date(2025, 4, 30), is_working_day=True, work_unit=0.5, note="half day")

        upsert_day(self.db, payload, on_month_changed=lambda year, month: notified.append((year, month)))
        row = upsert_day(self.db, payload, on_month_changed=lambda year, month: notified.append((year, month)))

        self.assertEqual(self._count(), 1)
        self.assertEqual(row.work_unit, 0.5)
        self.assertEqual(row.note, "half day")
        self.assertEqual(notified, [(2025, 4), (2025, 4)])

    def test_upsert_day_rejects_unit_outside_range(self) -> None:
        with self.assertRaises(ValidationError):
            upsert_day(self.db, CalendarDayInput(work_date=date(2025, 4, 30), is_working_day=True, work_unit=1.5))
        with self.assertRaises(ValidationError):
            validate_day(work_date="2025-04-30", is_working_day=True, work_unit=-0.5)
        self.assertIsNone(get_day(self.db, date(2025, 4, 30)))

    def test_failing_callback_does_not_fail_upsert(self) -> None:
        def _boom(year: int, month: int) -> None:
            raise RuntimeError("recalculation down")

        row = upsert_day(
            self.db,
            CalendarDayInput(work_date=date(2025, 5, 1), is_working_day=False, work_unit=0.0),
            on_month_changed=_boom,
        )

        self.assertFalse(row.is_working_day)

    def test_validate_day_parses_date_and_trims_note(self) -> None:
        day = validate_day(work_date="2025-09-02", is_working_day=False, work_unit=0, note="  National Day ")

        self.assertEqual(day.work_date, date(2025, 9, 2))
        self.assertEqual(day.note, "National Day")
        with self.assertRaises(ValidationError):
            validate_day(work_date="2025-13-01", is_working_day=False, work_unit=0)

    def test_bulk_upsert_groups_months(self) -> None:
        notified: list[tuple[int, int]] = []
        days = [
            CalendarDayInput(work_date=date(2025, 4, 30), is_working_day=False, work_unit=0.0),
            CalendarDayInput(work_date=date(2025, 5, 1), is_working_day=False, work_unit=0.0),
            CalendarDayInput(work_date=date(2025, 5, 2), is_working_day=True, work_unit=0.5),
            CalendarDayInput(work_date=date(2025, 5, 2), is_working_day=True, work_unit=1.0),
        ]

        months = bulk_upsert(self.db, days, on_month_changed=lambda year, month: notified.append((year, month)))

        self.assertEqual(months, [(2025, 4), (2025, 5)])
        self.assertEqual(notified, [(2025, 4), (2025, 5)])
        self.assertEqual(self._count(), 3)
        self.assertEqual(get_day(self.db, date(2025, 5, 2)).work_unit, 1.0)

    def test_bulk_upsert_rejects_empty_and_invalid_batches(self) -> None:
        with self.assertRaises(ValidationError):
            bulk_upsert(self.db, [])
        with self.assertRaises(ValidationError):
            bulk_upsert(
                self.db,
                [
                    CalendarDayInput(work_date=date(2025, 4, 29), is_working_day=True, work_unit=1.0),
                    CalendarDayInput(work_date=date(2025, 4, 30), is_working_day=True, work_unit=2.0),
                ],
            )
        self.assertEqual(self._count(), 0)

    def test_list_range_is_inclusive_and_ascending(self) -> None:
        ensure_year(self.db, 2025)

        rows = list_range(self.db, date(2025, 2, 27), date(2025, 3, 2))

        self.assertEqual(
            [row.work_date for row in rows],
            [date(2025, 2, 27), date(2025, 2, 28), date(2025, 3, 1), date(2025, 3, 2)],
        )
        with self.assertRaises(ValidationError):
            list_range(self.db, date(2025, 3, 2), date(2025, 3, 1))


if __name__ == "__main__":
    unittest.main()
