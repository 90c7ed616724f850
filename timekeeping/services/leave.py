"""Monthly leave reconciliation.

A monthly summary is a projection over the working calendar, the user's
closed sessions and the paid-leave balance. It can be rebuilt at any time.
The only writers of ``users.paid_leave`` are the monthly grant, the
previous-month deduction and explicit admin adjustments; the grant and the
deduction are fenced by a uniquely keyed ``leave_grants`` row that is
committed before any balance changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
from typing import Protocol

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timekeeping.clock import Clock, month_bounds, previous_month, to_utc
from timekeeping.errors import NotFoundError, ValidationError
from timekeeping.models import (
    Department,
    LeaveGrant,
    LeaveGrantType,
    LeaveMonthlySummary,
    User,
    UserStatus,
    WorkCalendarDay,
)
from timekeeping.services.work_calendar import ensure_year

logger = logging.getLogger("timekeeping.leave")

BIRTHDAY_CREDIT_UNITS = 1.0
MONTHLY_GRANT_UNITS = 1.0
MAX_PAID_LEAVE = 9999.9


class SessionUnitsSource(Protocol):
    def sum_closed_day_units(self, user_id: int, from_date: date, to_date: date) -> float: ...

    def months_with_sessions(self) -> list[tuple[int, int]]: ...


@dataclass(frozen=True, slots=True)
class Apportionment:
    paid_used: float
    unpaid: float


@dataclass(frozen=True, slots=True)
class AdminSummaryRow:
    summary: LeaveMonthlySummary
    user_name: str
    department_name: str | None
    paid_leave: float


def _units(value: float) -> float:
    return round(float(value), 2)


def validate_period(year: int, month: int) -> None:
    if month < 1 or month > 12:
        raise ValidationError("month must be between 1 and 12", details={"field": "month", "value": month})
    if year < 1 or year > 9999:
        raise ValidationError("year is out of range", details={"field": "year", "value": year})


def apportion_missing(missing: float, paid_leave: float, is_birthday: bool) -> Apportionment:
    """Split missing units between the birthday credit, paid leave and unpaid."""
    remaining = max(0.0, missing)
    if is_birthday:
        remaining -= min(BIRTHDAY_CREDIT_UNITS, remaining)

    paid_available = max(0.0, paid_leave)
    if remaining <= paid_available:
        return Apportionment(paid_used=_units(remaining), unpaid=0.0)
    return Apportionment(paid_used=_units(paid_available), unpaid=_units(remaining - paid_available))


def summary_window_end(clock: Clock, year: int, month: int) -> date:
    _, last_day = month_bounds(year, month)
    today = clock.today()
    if today.year == year and today.month == month:
        return min(last_day, today)
    return last_day


def expected_units(db: Session, from_date: date, to_date: date) -> float:
    total = db.scalar(
        select(func.coalesce(func.sum(WorkCalendarDay.work_unit), 0)).where(
            WorkCalendarDay.work_date >= from_date,
            WorkCalendarDay.work_date <= to_date,
            WorkCalendarDay.is_working_day.is_(True),
            WorkCalendarDay.work_unit > 0,
        )
    )
    return float(total or 0)


def _active_user_ids(db: Session) -> list[int]:
    return list(
        db.scalars(
            select(User.id).where(User.status == UserStatus.active).order_by(User.id.asc())
        ).all()
    )


def _write_summary(db: Session, user_id: int, year: int, month: int, values: dict[str, object]) -> LeaveMonthlySummary:
    row = db.get(LeaveMonthlySummary, (user_id, year, month))
    if row is None:
        row = LeaveMonthlySummary(user_id=user_id, year=year, month=month)
        db.add(row)
    for key, value in values.items():
        setattr(row, key, value)
    return row


def project_monthly_summary(
    db: Session,
    clock: Clock,
    units: SessionUnitsSource,
    *,
    user_id: int,
    year: int,
    month: int,
) -> LeaveMonthlySummary:
    validate_period(year, month)
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")

    ensure_year(db, year)

    first_day, _ = month_bounds(year, month)
    window_end = summary_window_end(clock, year, month)
    expected = _units(expected_units(db, first_day, window_end))
    worked = _units(units.sum_closed_day_units(user_id, first_day, window_end))
    missing = _units(max(0.0, expected - worked))
    is_birthday = user.birthday is not None and user.birthday.month == month
    split = apportion_missing(missing, float(user.paid_leave or 0), is_birthday)

    values: dict[str, object] = {
        "expected_units": expected,
        "worked_units": worked,
        "missing_units": missing,
        "paid_used_units": split.paid_used,
        "unpaid_units": split.unpaid,
        "is_birthday": is_birthday,
        "updated_at": to_utc(clock.now()),
    }
    row = _write_summary(db, user_id, year, month, values)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent projection inserted the row first; overwrite it.
        db.rollback()
        row = _write_summary(db, user_id, year, month, values)
        db.commit()
    db.refresh(row)
    return row


def _project_users(
    db: Session,
    clock: Clock,
    units: SessionUnitsSource,
    user_ids: list[int],
    year: int,
    month: int,
) -> int:
    projected = 0
    for user_id in user_ids:
        try:
            project_monthly_summary(db, clock, units, user_id=user_id, year=year, month=month)
        except Exception:
            db.rollback()
            logger.exception(
                "summary_projection_failed",
                extra={"user_id": user_id, "year": year, "month": month},
            )
            continue
        projected += 1
    return projected


def recalculate_month_summaries(
    db: Session,
    clock: Clock,
    units: SessionUnitsSource,
    year: int,
    month: int,
) -> int:
    """Re-project every user that already has a summary for the month."""
    validate_period(year, month)
    user_ids = list(
        db.scalars(
            select(LeaveMonthlySummary.user_id).where(
                LeaveMonthlySummary.year == year,
                LeaveMonthlySummary.month == month,
            )
        ).all()
    )
    projected = _project_users(db, clock, units, user_ids, year, month)
    logger.info(
        "month_summaries_recalculated",
        extra={"year": year, "month": month, "users": projected},
    )
    return projected


def refresh_existing_summary(
    db: Session,
    clock: Clock,
    units: SessionUnitsSource,
    *,
    user_id: int,
    year: int,
    month: int,
) -> LeaveMonthlySummary | None:
    if db.get(LeaveMonthlySummary, (user_id, year, month)) is None:
        return None
    return project_monthly_summary(db, clock, units, user_id=user_id, year=year, month=month)


def _fence_exists(db: Session, year: int, month: int, grant_type: LeaveGrantType) -> bool:
    grant_id = db.scalar(
        select(LeaveGrant.id).where(
            LeaveGrant.grant_year == year,
            LeaveGrant.grant_month == month,
            LeaveGrant.grant_type == grant_type,
        )
    )
    return grant_id is not None


def _insert_fence(db: Session, clock: Clock, year: int, month: int, grant_type: LeaveGrantType) -> bool:
    db.add(
        LeaveGrant(
            grant_year=year,
            grant_month=month,
            grant_type=grant_type,
            created_at=to_utc(clock.now()),
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def process_monthly_grant(
    db: Session,
    clock: Clock,
    units: SessionUnitsSource,
    year: int,
    month: int,
) -> bool:
    """Grant one paid-leave unit to every active user, once per month.

    Returns True only for the call that applied the grant.
    """
    validate_period(year, month)
    if _fence_exists(db, year, month, LeaveGrantType.MONTHLY):
        logger.info("monthly_grant_already_applied", extra={"year": year, "month": month})
        return False

    user_ids = _active_user_ids(db)

    if not _insert_fence(db, clock, year, month, LeaveGrantType.MONTHLY):
        logger.info("monthly_grant_raced", extra={"year": year, "month": month})
        return False

    if user_ids:
        db.execute(
            update(User)
            .where(User.id.in_(user_ids))
            .values(paid_leave=User.paid_leave + MONTHLY_GRANT_UNITS)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.expire_all()

    logger.info(
        "monthly_grant_applied",
        extra={"year": year, "month": month, "users": len(user_ids)},
    )
    _project_users(db, clock, units, user_ids, year, month)
    return True


def process_previous_month_deduction(
    db: Session,
    clock: Clock,
    units: SessionUnitsSource,
) -> bool:
    """On the first day of a month, charge last month's paid usage to balances."""
    today = clock.today()
    if today.day != 1:
        return False

    year, month = previous_month(today)
    if _fence_exists(db, year, month, LeaveGrantType.DEDUCTION):
        logger.info("leave_deduction_already_applied", extra={"year": year, "month": month})
        return False

    deductions: list[tuple[int, float]] = []
    for user_id in _active_user_ids(db):
        try:
            summary = project_monthly_summary(db, clock, units, user_id=user_id, year=year, month=month)
        except Exception:
            db.rollback()
            logger.exception(
                "summary_projection_failed",
                extra={"user_id": user_id, "year": year, "month": month},
            )
            continue
        if summary.paid_used_units > 0:
            deductions.append((user_id, float(summary.paid_used_units)))

    if not _insert_fence(db, clock, year, month, LeaveGrantType.DEDUCTION):
        logger.info("leave_deduction_raced", extra={"year": year, "month": month})
        return False

    for user_id, amount in deductions:
        remaining = User.paid_leave - amount
        db.execute(
            update(User)
            .where(User.id == user_id)
            .values(paid_leave=case((remaining > 0, remaining), else_=0))
            .execution_options(synchronize_session=False)
        )
    db.commit()
    db.expire_all()

    logger.info(
        "leave_deduction_applied",
        extra={
            "year": year,
            "month": month,
            "users": len(deductions),
            "units": _units(sum(amount for _, amount in deductions)),
        },
    )
    return True


def process_summary_backfill(
    db: Session,
    clock: Clock,
    units: SessionUnitsSource,
) -> list[tuple[int, int]]:
    """Project all active users for months that have sessions but no summaries."""
    summarized = {
        (int(year), int(month))
        for year, month in db.execute(
            select(LeaveMonthlySummary.year, LeaveMonthlySummary.month).distinct()
        ).all()
    }
    missing_months = [period for period in units.months_with_sessions() if period not in summarized]
    if not missing_months:
        return []

    user_ids = _active_user_ids(db)
    for year, month in missing_months:
        ensure_year(db, year)
        _project_users(db, clock, units, user_ids, year, month)

    logger.info(
        "summary_backfill_completed",
        extra={"months": [f"{year:04d}-{month:02d}" for year, month in missing_months], "users": len(user_ids)},
    )
    return missing_months


def adjust_paid_leave(
    db: Session,
    clock: Clock,
    units: SessionUnitsSource,
    *,
    user_id: int,
    year: int,
    month: int,
    paid_leave: float,
    reason: str,
) -> LeaveMonthlySummary:
    validate_period(year, month)
    cleaned_reason = (reason or "").strip()
    if not cleaned_reason:
        raise ValidationError("reason is required", details={"field": "reason"})
    if paid_leave < 0 or paid_leave > MAX_PAID_LEAVE:
        raise ValidationError(
            f"paidLeave must be between 0 and {MAX_PAID_LEAVE}",
            details={"field": "paidLeave", "value": paid_leave},
        )

    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")

    previous = float(user.paid_leave or 0)
    user.paid_leave = round(float(paid_leave), 1)
    db.commit()

    logger.info(
        "paid_leave_adjusted",
        extra={
            "user_id": user_id,
            "previous": previous,
            "paid_leave": user.paid_leave,
            "reason": cleaned_reason,
        },
    )
    return project_monthly_summary(db, clock, units, user_id=user_id, year=year, month=month)


def list_summaries(
    db: Session,
    *,
    year: int,
    month: int,
    user_id: int | None = None,
    department_id: int | None = None,
) -> list[AdminSummaryRow]:
    validate_period(year, month)
    stmt = (
        select(LeaveMonthlySummary, User.name, Department.name, User.paid_leave)
        .join(User, User.id == LeaveMonthlySummary.user_id)
        .outerjoin(Department, Department.id == User.department_id)
        .where(
            LeaveMonthlySummary.year == year,
            LeaveMonthlySummary.month == month,
        )
        .order_by(User.name.asc(), User.id.asc())
    )
    if user_id is not None:
        stmt = stmt.where(LeaveMonthlySummary.user_id == user_id)
    if department_id is not None:
        stmt = stmt.where(User.department_id == department_id)

    return [
        AdminSummaryRow(
            summary=summary,
            user_name=user_name,
            department_name=department_name,
            paid_leave=float(paid_leave or 0),
        )
        for summary, user_name, department_name, paid_leave in db.execute(stmt).all()
    ]


def list_grants(db: Session) -> list[LeaveGrant]:
    return list(
        db.scalars(
            select(LeaveGrant).order_by(
                LeaveGrant.grant_year.desc(),
                LeaveGrant.grant_month.desc(),
                LeaveGrant.id.desc(),
            )
        ).all()
    )
