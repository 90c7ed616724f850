from datetime import date

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from timekeeping.clock import Clock, get_clock
from timekeeping.db import get_db
from timekeeping.dependencies import get_units_source
from timekeeping.models import AttendanceSession, LeaveMonthlySummary, User
from timekeeping.schemas import (
    CheckOutRequest,
    DataEnvelope,
    LeaveSummaryRead,
    MeStatsRead,
    SessionList,
    SessionRead,
)
from timekeeping.security import require_user
from timekeeping.services.attendance import (
    NOT_CHECKED_IN,
    check_in,
    check_out,
    get_today,
    list_mine,
)
from timekeeping.services.leave import SessionUnitsSource, project_monthly_summary
from timekeeping.services.stats import get_me_stats

router = APIRouter(prefix="/api/v1", tags=["attendance"])


def to_session_read(session: AttendanceSession) -> SessionRead:
    return SessionRead(
        id=session.id,
        user_id=session.user_id,
        work_date=session.work_date,
        check_in_at=session.check_in_at,
        check_out_at=session.check_out_at,
        worked_minutes=session.worked_minutes,
        day_unit=float(session.day_unit),
        status=session.status.value,
        checkout_reason=session.checkout_reason,
    )


def not_checked_in(user_id: int, work_date: date) -> SessionRead:
    return SessionRead(user_id=user_id, work_date=work_date, status=NOT_CHECKED_IN)


def to_summary_read(summary: LeaveMonthlySummary) -> LeaveSummaryRead:
    return LeaveSummaryRead(
        user_id=summary.user_id,
        year=summary.year,
        month=summary.month,
        expected_units=float(summary.expected_units),
        worked_units=float(summary.worked_units),
        missing_units=float(summary.missing_units),
        paid_used_units=float(summary.paid_used_units),
        unpaid_units=float(summary.unpaid_units),
        is_birthday=summary.is_birthday,
        updated_at=summary.updated_at,
    )


@router.get("/attendance/today", response_model=DataEnvelope[SessionRead])
def attendance_today(
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DataEnvelope[SessionRead]:
    session = get_today(db, clock, user.id)
    if session is None:
        return DataEnvelope(data=not_checked_in(user.id, clock.today()))
    return DataEnvelope(data=to_session_read(session))


@router.post("/attendance/check-in", response_model=DataEnvelope[SessionRead])
def attendance_check_in(
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DataEnvelope[SessionRead]:
    session = check_in(db, clock, user.id)
    return DataEnvelope(data=to_session_read(session))


@router.post("/attendance/check-out", response_model=DataEnvelope[SessionRead])
def attendance_check_out(
    payload: CheckOutRequest | None = Body(default=None),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DataEnvelope[SessionRead]:
    reason = payload.reason if payload is not None else None
    session = check_out(db, clock, user.id, reason)
    return DataEnvelope(data=to_session_read(session))


@router.get("/attendance/me", response_model=DataEnvelope[SessionList])
def attendance_me(
    from_: str | None = Query(default=None, alias="from"),
    to: str | None = Query(default=None),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DataEnvelope[SessionList]:
    from_date, to_date, rows = list_mine(db, clock, user.id, from_raw=from_, to_raw=to)
    return DataEnvelope(
        data=SessionList(
            range_from=from_date,
            range_to=to_date,
            rows=[to_session_read(row) for row in rows],
        )
    )


@router.get("/me/leave/summary", response_model=DataEnvelope[LeaveSummaryRead])
def my_leave_summary(
    year: int | None = Query(default=None, ge=2000, le=2100),
    month: int | None = Query(default=None, ge=1, le=12),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    units: SessionUnitsSource = Depends(get_units_source),
) -> DataEnvelope[LeaveSummaryRead]:
    today = clock.today()
    summary = project_monthly_summary(
        db,
        clock,
        units,
        user_id=user.id,
        year=year or today.year,
        month=month or today.month,
    )
    return DataEnvelope(data=to_summary_read(summary))


@router.get("/stats/me", response_model=DataEnvelope[MeStatsRead])
def my_stats(
    month: str | None = Query(default=None),
    year: str | None = Query(default=None),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DataEnvelope[MeStatsRead]:
    return DataEnvelope(data=get_me_stats(db, clock, user.id, month=month, year=year))
