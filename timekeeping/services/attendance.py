from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
import logging
from zoneinfo import ZoneInfo

from sqlalchemy import extract, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timekeeping.clock import Clock, month_bounds, parse_date, parse_instant, to_utc
from timekeeping.errors import ConflictError, NotFoundError, ValidationError
from timekeeping.models import (
    AttendanceSession,
    Department,
    SessionStatus,
    User,
    WorkCalendarDay,
)
from timekeeping.schemas import AdminSessionClose, AdminSessionCreate, AdminSessionUpdate
from timekeeping.services.attendance_rules import (
    CHECK_IN_END,
    WORK_START,
    compute_day_unit,
    compute_worked_minutes,
    is_check_in_allowed,
)

logger = logging.getLogger("timekeeping.attendance")

NOT_CHECKED_IN = "NOT_CHECKED_IN"


@dataclass(frozen=True, slots=True)
class AdminSessionRow:
    session: AttendanceSession
    user_name: str | None
    department_id: int | None
    department_name: str | None


def _require_reason(reason: str | None) -> str:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationError("reason is required", details={"field": "reason"})
    return cleaned


def apply_times(
    session: AttendanceSession,
    *,
    check_in_at: datetime,
    check_out_at: datetime | None,
    zone: ZoneInfo,
) -> AttendanceSession:
    """Set both instants and derive status, worked minutes and day unit."""
    session.check_in_at = to_utc(check_in_at)
    session.check_out_at = to_utc(check_out_at) if check_out_at is not None else None
    if session.check_out_at is None:
        session.status = SessionStatus.OPEN
        session.worked_minutes = 0
    else:
        session.status = SessionStatus.CLOSED
        session.worked_minutes = compute_worked_minutes(session.check_in_at, session.check_out_at, zone)
    session.day_unit = compute_day_unit(session.check_in_at, session.check_out_at, zone)
    return session


def _find_for_day(db: Session, user_id: int, work_date: date) -> AttendanceSession | None:
    return db.scalar(
        select(AttendanceSession).where(
            AttendanceSession.user_id == user_id,
            AttendanceSession.work_date == work_date,
        )
    )


def get_today(db: Session, clock: Clock, user_id: int) -> AttendanceSession | None:
    return _find_for_day(db, user_id, clock.today())


def check_in(db: Session, clock: Clock, user_id: int) -> AttendanceSession:
    now = clock.now()
    if not is_check_in_allowed(now, clock.zone):
        raise ValidationError(f"Check-in is only allowed between {WORK_START} and {CHECK_IN_END}")

    today = clock.today()
    if _find_for_day(db, user_id, today) is not None:
        raise ConflictError("Already checked in")

    session = AttendanceSession(user_id=user_id, work_date=today)
    apply_times(session, check_in_at=now, check_out_at=None, zone=clock.zone)
    db.add(session)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Already checked in") from exc
    db.refresh(session)

    logger.info(
        "checkin_recorded",
        extra={"user_id": user_id, "work_date": today.isoformat(), "session_id": session.id},
    )
    return session


def check_out(
    db: Session,
    clock: Clock,
    user_id: int,
    reason: str | None = None,
) -> AttendanceSession:
    session = _find_for_day(db, user_id, clock.today())
    if session is None:
        session = db.scalar(
            select(AttendanceSession)
            .where(
                AttendanceSession.user_id == user_id,
                AttendanceSession.status == SessionStatus.OPEN,
            )
            .order_by(AttendanceSession.work_date.desc())
            .limit(1)
        )
    if session is None:
        raise ConflictError("No open session found to check out")

    apply_times(session, check_in_at=session.check_in_at, check_out_at=clock.now(), zone=clock.zone)
    cleaned_reason = (reason or "").strip()
    if cleaned_reason:
        session.checkout_reason = cleaned_reason
    db.commit()
    db.refresh(session)

    logger.info(
        "checkout_recorded",
        extra={
            "user_id": user_id,
            "session_id": session.id,
            "work_date": session.work_date.isoformat(),
            "worked_minutes": session.worked_minutes,
            "day_unit": session.day_unit,
        },
    )
    return session


def resolve_range(clock: Clock, from_raw: str | None, to_raw: str | None) -> tuple[date, date]:
    today = clock.today()
    month_start, month_end = month_bounds(today.year, today.month)
    from_date = parse_date(from_raw, field="from") if from_raw else month_start
    to_date = parse_date(to_raw, field="to") if to_raw else month_end
    if to_date < from_date:
        raise ValidationError(
            "from must be on or before to",
            details={"from": from_date.isoformat(), "to": to_date.isoformat()},
        )
    return from_date, to_date


def list_mine(
    db: Session,
    clock: Clock,
    user_id: int,
    *,
    from_raw: str | None = None,
    to_raw: str | None = None,
) -> tuple[date, date, list[AttendanceSession]]:
    from_date, to_date = resolve_range(clock, from_raw, to_raw)
    rows = db.scalars(
        select(AttendanceSession)
        .where(
            AttendanceSession.user_id == user_id,
            AttendanceSession.work_date >= from_date,
            AttendanceSession.work_date <= to_date,
        )
        .order_by(AttendanceSession.work_date.desc())
    ).all()
    return from_date, to_date, list(rows)


def list_admin(
    db: Session,
    *,
    from_date: date | None = None,
    to_date: date | None = None,
    user_id: int | None = None,
    department_id: int | None = None,
    status: str | None = None,
) -> list[AdminSessionRow]:
    stmt = (
        select(AttendanceSession, User.name, Department.id, Department.name)
        .join(User, User.id == AttendanceSession.user_id)
        .outerjoin(Department, Department.id == User.department_id)
    )
    if from_date is not None:
        stmt = stmt.where(AttendanceSession.work_date >= from_date)
    if to_date is not None:
        stmt = stmt.where(AttendanceSession.work_date <= to_date)
    if user_id is not None:
        stmt = stmt.where(AttendanceSession.user_id == user_id)
    if department_id is not None:
        stmt = stmt.where(User.department_id == department_id)
    if status:
        normalized = status.strip().upper()
        if normalized not in SessionStatus.__members__:
            raise ValidationError("status must be OPEN or CLOSED", details={"field": "status", "value": status})
        stmt = stmt.where(AttendanceSession.status == SessionStatus(normalized))

    stmt = stmt.order_by(AttendanceSession.work_date.desc(), AttendanceSession.created_at.desc())
    return [
        AdminSessionRow(
            session=session,
            user_name=user_name,
            department_id=dept_id,
            department_name=dept_name,
        )
        for session, user_name, dept_id, dept_name in db.execute(stmt).all()
    ]


def _create_session(
    db: Session,
    clock: Clock,
    *,
    user_id: int,
    work_date_raw: str,
    check_in_raw: str,
    check_out_raw: str | None,
    reason: str,
) -> AttendanceSession:
    if db.get(User, user_id) is None:
        raise NotFoundError("User not found")

    work_date = parse_date(work_date_raw, field="workDate")
    check_in_at = parse_instant(check_in_raw, field="checkInAt")
    check_out_at = parse_instant(check_out_raw, field="checkOutAt") if check_out_raw else None
    if check_out_at is not None and check_out_at < check_in_at:
        raise ValidationError("checkOutAt must not be before checkInAt", details={"field": "checkOutAt"})

    if _find_for_day(db, user_id, work_date) is not None:
        raise ConflictError("Session already exists for this user and date")

    session = AttendanceSession(user_id=user_id, work_date=work_date, checkout_reason=reason)
    apply_times(session, check_in_at=check_in_at, check_out_at=check_out_at, zone=clock.zone)
    db.add(session)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Session already exists for this user and date") from exc
    db.refresh(session)

    logger.info(
        "admin_session_created",
        extra={
            "session_id": session.id,
            "user_id": user_id,
            "work_date": work_date.isoformat(),
            "reason": reason,
        },
    )
    return session


def admin_create(db: Session, clock: Clock, payload: AdminSessionCreate) -> AttendanceSession:
    reason = _require_reason(payload.reason)
    return _create_session(
        db,
        clock,
        user_id=payload.user_id,
        work_date_raw=payload.work_date,
        check_in_raw=payload.check_in_at,
        check_out_raw=payload.check_out_at,
        reason=reason,
    )


def admin_update(
    db: Session,
    clock: Clock,
    session_id: int,
    payload: AdminSessionUpdate,
) -> AttendanceSession:
    """Patch a session; unknown ids are created when userId and workDate are given.

    A field missing from the body is left as is. ``checkOutAt: null`` reopens
    the session.
    """
    reason = _require_reason(payload.reason)
    session = db.get(AttendanceSession, session_id)
    if session is None:
        if payload.user_id is None or not payload.work_date:
            raise NotFoundError("Session not found; provide userId and workDate to create one")
        if not payload.check_in_at:
            raise ValidationError(
                "checkInAt is required when creating a new session",
                details={"field": "checkInAt"},
            )
        return _create_session(
            db,
            clock,
            user_id=payload.user_id,
            work_date_raw=payload.work_date,
            check_in_raw=payload.check_in_at,
            check_out_raw=payload.check_out_at,
            reason=reason,
        )

    check_in_at = session.check_in_at
    if payload.check_in_at:
        check_in_at = parse_instant(payload.check_in_at, field="checkInAt")

    check_out_at = session.check_out_at
    if "check_out_at" in payload.model_fields_set:
        check_out_at = parse_instant(payload.check_out_at, field="checkOutAt") if payload.check_out_at else None

    if check_out_at is not None and to_utc(check_out_at) < to_utc(check_in_at):
        raise ValidationError("checkOutAt must not be before checkInAt", details={"field": "checkOutAt"})

    apply_times(session, check_in_at=check_in_at, check_out_at=check_out_at, zone=clock.zone)
    session.checkout_reason = reason
    db.commit()
    db.refresh(session)

    logger.info(
        "admin_session_updated",
        extra={"session_id": session.id, "user_id": session.user_id, "status": session.status.value, "reason": reason},
    )
    return session


def admin_close(
    db: Session,
    clock: Clock,
    session_id: int,
    payload: AdminSessionClose,
) -> AttendanceSession:
    reason = _require_reason(payload.reason)
    session = db.get(AttendanceSession, session_id)
    if session is None:
        raise NotFoundError("Session not found")

    check_out_at = parse_instant(payload.check_out_at, field="checkOutAt")
    if to_utc(check_out_at) < to_utc(session.check_in_at):
        raise ValidationError("checkOutAt must not be before checkInAt", details={"field": "checkOutAt"})

    apply_times(session, check_in_at=session.check_in_at, check_out_at=check_out_at, zone=clock.zone)
    session.checkout_reason = reason
    db.commit()
    db.refresh(session)

    logger.info(
        "admin_session_closed",
        extra={"session_id": session.id, "user_id": session.user_id, "reason": reason},
    )
    return session


def admin_delete(db: Session, session_id: int, reason: str | None) -> AttendanceSession:
    cleaned_reason = _require_reason(reason)
    session = db.get(AttendanceSession, session_id)
    if session is None:
        raise NotFoundError("Session not found")

    db.delete(session)
    db.commit()

    logger.info(
        "admin_session_deleted",
        extra={
            "session_id": session_id,
            "user_id": session.user_id,
            "work_date": session.work_date.isoformat(),
            "reason": cleaned_reason,
        },
    )
    return session


def sum_closed_day_units(db: Session, user_id: int, from_date: date, to_date: date) -> float:
    total = db.scalar(
        select(func.coalesce(func.sum(AttendanceSession.day_unit), 0))
        .join(WorkCalendarDay, WorkCalendarDay.work_date == AttendanceSession.work_date)
        .where(
            AttendanceSession.user_id == user_id,
            AttendanceSession.work_date >= from_date,
            AttendanceSession.work_date <= to_date,
            AttendanceSession.status == SessionStatus.CLOSED,
            WorkCalendarDay.is_working_day.is_(True),
        )
    )
    return float(total or 0)


def months_with_sessions(db: Session) -> list[tuple[int, int]]:
    year_col = extract("year", AttendanceSession.work_date)
    month_col = extract("month", AttendanceSession.work_date)
    rows = db.execute(select(year_col, month_col).distinct().order_by(year_col, month_col)).all()
    return [(int(year), int(month)) for year, month in rows]


class AttendanceUnitsSource:
    """Closed-session figures the leave engine reads, bound to one DB session."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def sum_closed_day_units(self, user_id: int, from_date: date, to_date: date) -> float:
        return sum_closed_day_units(self.db, user_id, from_date, to_date)

    def months_with_sessions(self) -> list[tuple[int, int]]:
        return months_with_sessions(self.db)
