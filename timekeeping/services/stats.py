from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
import re

from sqlalchemy import select
from sqlalchemy.orm import Session

from timekeeping.clock import Clock, month_bounds
from timekeeping.errors import ValidationError
from timekeeping.models import AttendanceSession, SessionStatus
from timekeeping.schemas import MeStatsRead, MonthComparison, StatsAnomalies, StatsPoint
from timekeeping.services.attendance_rules import HALF_DAY_UNIT

_MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")
_YEAR_PATTERN = re.compile(r"^(\d{4})$")
MIN_YEAR = 2000
MAX_YEAR = 2100


@dataclass
class _Totals:
    worked_minutes: int = 0
    worked_days: int = 0
    day_unit: float = 0.0
    full_days: int = 0
    half_days: int = 0
    missing_days: int = 0
    open_sessions: int = 0
    missing_check_out: int = 0
    series: list[StatsPoint] = field(default_factory=list)


def parse_stats_range(clock: Clock, month: str | None, year: str | None) -> tuple[str, date, date]:
    """Resolve ``month=YYYY-MM`` or ``year=YYYY`` into a range capped at today."""
    today = clock.today()
    if year:
        match = _YEAR_PATTERN.match(year.strip())
        if match is None or not MIN_YEAR <= int(match.group(1)) <= MAX_YEAR:
            raise ValidationError("Invalid year format", details={"field": "year", "value": year})
        value = int(match.group(1))
        range_name = "year"
        from_date, to_date = date(value, 1, 1), date(value, 12, 31)
    else:
        range_name = "month"
        if month:
            match = _MONTH_PATTERN.match(month.strip())
            if (
                match is None
                or not MIN_YEAR <= int(match.group(1)) <= MAX_YEAR
                or not 1 <= int(match.group(2)) <= 12
            ):
                raise ValidationError("Invalid month format", details={"field": "month", "value": month})
            from_date, to_date = month_bounds(int(match.group(1)), int(match.group(2)))
        else:
            from_date, to_date = month_bounds(today.year, today.month)

    if to_date > today:
        to_date = today
    return range_name, from_date, to_date


def _effective_day_unit(session: AttendanceSession) -> float:
    # An open session counts as half a day until it is closed.
    if session.status == SessionStatus.OPEN and session.check_out_at is None:
        return HALF_DAY_UNIT
    return float(session.day_unit or 0)


def _sessions(db: Session, user_id: int, from_date: date, to_date: date) -> list[AttendanceSession]:
    return list(
        db.scalars(
            select(AttendanceSession)
            .where(
                AttendanceSession.user_id == user_id,
                AttendanceSession.work_date >= from_date,
                AttendanceSession.work_date <= to_date,
            )
            .order_by(AttendanceSession.work_date.asc())
        ).all()
    )


def _accumulate(sessions: list[AttendanceSession], today: date) -> _Totals:
    totals = _Totals()
    for session in sessions:
        unit = _effective_day_unit(session)
        totals.worked_minutes += session.worked_minutes
        if session.worked_minutes > 0:
            totals.worked_days += 1
        totals.day_unit += unit
        if unit >= 1.0:
            totals.full_days += 1
        elif unit >= HALF_DAY_UNIT:
            totals.half_days += 1
        else:
            totals.missing_days += 1
        if session.status == SessionStatus.OPEN:
            totals.open_sessions += 1
            if session.work_date < today:
                totals.missing_check_out += 1
        totals.series.append(
            StatsPoint(
                work_date=session.work_date,
                worked_minutes=session.worked_minutes,
                day_unit=unit,
                status=session.status.value,
            )
        )
    return totals


def get_me_stats(
    db: Session,
    clock: Clock,
    user_id: int,
    *,
    month: str | None = None,
    year: str | None = None,
) -> MeStatsRead:
    today = clock.today()
    range_name, from_date, to_date = parse_stats_range(clock, month, year)
    current = _accumulate(_sessions(db, user_id, from_date, to_date), today)

    comparison: MonthComparison | None = None
    if range_name == "month" and from_date <= to_date:
        prev_to = from_date - timedelta(days=1)
        prev_from = prev_to.replace(day=1)
        previous = _accumulate(_sessions(db, user_id, prev_from, prev_to), today)
        if previous.series:
            comparison = MonthComparison(
                current_total_worked_minutes=current.worked_minutes,
                current_worked_days=current.worked_days,
                prev_total_worked_minutes=previous.worked_minutes,
                prev_worked_days=previous.worked_days,
                worked_minutes_delta=current.worked_minutes - previous.worked_minutes,
                day_unit_delta=round(current.day_unit - previous.day_unit, 2),
                worked_days_delta=current.worked_days - previous.worked_days,
            )

    return MeStatsRead(
        range=range_name,
        range_from=from_date,
        range_to=to_date,
        total_worked_minutes=current.worked_minutes,
        worked_days=current.worked_days,
        total_day_unit=round(current.day_unit, 2),
        full_days=current.full_days,
        half_days=current.half_days,
        missing_days=current.missing_days,
        open_sessions=current.open_sessions,
        anomalies=StatsAnomalies(
            total=current.missing_check_out,
            missing_check_out=current.missing_check_out,
        ),
        prev_month_comparison=comparison,
        series=current.series,
    )
