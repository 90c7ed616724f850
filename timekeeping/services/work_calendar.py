from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, timedelta
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timekeeping.clock import parse_date
from timekeeping.errors import ValidationError
from timekeeping.models import WorkCalendarDay

logger = logging.getLogger("timekeeping.calendar")

MonthChangedCallback = Callable[[int, int], object]


@dataclass(frozen=True, slots=True)
class CalendarDayInput:
    work_date: date
    is_working_day: bool
    work_unit: float
    note: str | None = None


def default_day(day: date) -> CalendarDayInput:
    # Monday-Friday are full working days, weekends are off.
    if day.weekday() < 5:
        return CalendarDayInput(work_date=day, is_working_day=True, work_unit=1.0)
    return CalendarDayInput(work_date=day, is_working_day=False, work_unit=0.0)


def _year_days(year: int) -> list[date]:
    first = date(year, 1, 1)
    last = date(year, 12, 31)
    return [first + timedelta(days=offset) for offset in range((last - first).days + 1)]


def ensure_year(db: Session, year: int) -> int:
    """Seed every missing date of ``year`` with the weekday default.

    Existing rows are left untouched, so admin overrides survive and a
    complete year is a no-op. Returns the number of inserted rows.
    """
    days = _year_days(year)
    existing = set(
        db.scalars(
            select(WorkCalendarDay.work_date).where(
                WorkCalendarDay.work_date >= days[0],
                WorkCalendarDay.work_date <= days[-1],
            )
        ).all()
    )
    if len(existing) >= len(days):
        return 0

    missing = [day for day in days if day not in existing]
    for day in missing:
        seeded = default_day(day)
        db.add(
            WorkCalendarDay(
                work_date=seeded.work_date,
                is_working_day=seeded.is_working_day,
                work_unit=seeded.work_unit,
            )
        )
    try:
        db.commit()
    except IntegrityError:
        # Another worker seeded the same year concurrently.
        db.rollback()
        logger.info("calendar_year_seed_raced", extra={"year": year})
        return 0

    logger.info("calendar_year_seeded", extra={"year": year, "inserted": len(missing)})
    return len(missing)


def validate_day(
    *,
    work_date: str | date,
    is_working_day: bool,
    work_unit: float,
    note: str | None = None,
) -> CalendarDayInput:
    parsed_date = work_date if isinstance(work_date, date) else parse_date(work_date, field="date")
    if work_unit < 0 or work_unit > 1:
        raise ValidationError(
            "workUnit must be between 0 and 1",
            details={"field": "workUnit", "value": work_unit},
        )
    cleaned_note = note.strip() if note else None
    return CalendarDayInput(
        work_date=parsed_date,
        is_working_day=is_working_day,
        work_unit=float(work_unit),
        note=cleaned_note or None,
    )


def _write_day(db: Session, payload: CalendarDayInput) -> WorkCalendarDay:
    row = db.get(WorkCalendarDay, payload.work_date)
    if row is None:
        row = WorkCalendarDay(work_date=payload.work_date)
        db.add(row)
    row.is_working_day = payload.is_working_day
    row.work_unit = payload.work_unit
    row.note = payload.note
    return row


def _notify_months(months: Iterable[tuple[int, int]], on_month_changed: MonthChangedCallback | None) -> None:
    if on_month_changed is None:
        return
    for year, month in months:
        try:
            on_month_changed(year, month)
        except Exception:
            logger.exception(
                "calendar_summary_recalculation_failed",
                extra={"year": year, "month": month},
            )


def upsert_day(
    db: Session,
    payload: CalendarDayInput,
    *,
    on_month_changed: MonthChangedCallback | None = None,
) -> WorkCalendarDay:
    if payload.work_unit < 0 or payload.work_unit > 1:
        raise ValidationError(
            "workUnit must be between 0 and 1",
            details={"field": "workUnit", "value": payload.work_unit},
        )

    row = _write_day(db, payload)
    try:
        db.commit()
    except IntegrityError:
        # Lost an insert race on the same date; last writer wins.
        db.rollback()
        row = _write_day(db, payload)
        db.commit()
    db.refresh(row)

    logger.info(
        "calendar_day_upserted",
        extra={
            "work_date": payload.work_date.isoformat(),
            "is_working_day": payload.is_working_day,
            "work_unit": payload.work_unit,
        },
    )
    _notify_months([(payload.work_date.year, payload.work_date.month)], on_month_changed)
    return row


def bulk_upsert(
    db: Session,
    days: list[CalendarDayInput],
    *,
    on_month_changed: MonthChangedCallback | None = None,
) -> list[tuple[int, int]]:
    """Write several days in one transaction; returns the affected months."""
    if not days:
        raise ValidationError("days must not be empty", details={"field": "days"})
    for payload in days:
        if payload.work_unit < 0 or payload.work_unit > 1:
            raise ValidationError(
                "workUnit must be between 0 and 1",
                details={"field": "workUnit", "date": payload.work_date.isoformat()},
            )

    # Last entry wins when a date is listed twice.
    latest = {payload.work_date: payload for payload in days}
    for payload in latest.values():
        _write_day(db, payload)
    db.commit()

    months = sorted({(payload.work_date.year, payload.work_date.month) for payload in days})
    logger.info("calendar_days_bulk_upserted", extra={"count": len(days), "months": months})
    _notify_months(months, on_month_changed)
    return months


def list_range(db: Session, from_date: date, to_date: date) -> list[WorkCalendarDay]:
    if to_date < from_date:
        raise ValidationError("from must be on or before to", details={"from": from_date.isoformat(), "to": to_date.isoformat()})
    return list(
        db.scalars(
            select(WorkCalendarDay)
            .where(
                WorkCalendarDay.work_date >= from_date,
                WorkCalendarDay.work_date <= to_date,
            )
            .order_by(WorkCalendarDay.work_date.asc())
        ).all()
    )


def get_day(db: Session, day: date) -> WorkCalendarDay | None:
    return db.get(WorkCalendarDay, day)
