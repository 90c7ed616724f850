from datetime import date
import logging

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from timekeeping.clock import Clock, get_clock, parse_date
from timekeeping.db import get_db
from timekeeping.dependencies import get_units_source
from timekeeping.errors import ValidationError
from timekeeping.models import AttendanceSession, User, WorkCalendarDay
from timekeeping.routers.attendance import to_session_read, to_summary_read
from timekeeping.schemas import (
    AdminLeaveSummaryRead,
    AdminSessionClose,
    AdminSessionCreate,
    AdminSessionDelete,
    AdminSessionList,
    AdminSessionRead,
    AdminSessionUpdate,
    CalendarBulkRequest,
    CalendarBulkResult,
    CalendarDayRead,
    CalendarDayUpsert,
    CalendarGenerateRequest,
    CalendarGenerateResult,
    DataEnvelope,
    DeletedResponse,
    LeaveGrantRead,
    LeaveGrantRequest,
    LeaveGrantResult,
    LeaveSummaryRead,
    PaidLeaveAdjustRequest,
    SessionRead,
)
from timekeeping.security import require_admin
from timekeeping.services.attendance import (
    AdminSessionRow,
    admin_close,
    admin_create,
    admin_delete,
    admin_update,
    list_admin,
)
from timekeeping.services.leave import (
    SessionUnitsSource,
    adjust_paid_leave,
    list_grants,
    list_summaries,
    process_monthly_grant,
    project_monthly_summary,
    recalculate_month_summaries,
    refresh_existing_summary,
)
from timekeeping.services.work_calendar import (
    bulk_upsert,
    ensure_year,
    list_range,
    upsert_day,
    validate_day,
)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])
logger = logging.getLogger("timekeeping.admin")


def _to_admin_session_read(row: AdminSessionRow) -> AdminSessionRead:
    base = to_session_read(row.session)
    return AdminSessionRead(
        **base.model_dump(),
        user_name=row.user_name,
        department_id=row.department_id,
        department_name=row.department_name,
    )


def _to_calendar_read(day: WorkCalendarDay) -> CalendarDayRead:
    return CalendarDayRead(
        work_date=day.work_date,
        is_working_day=day.is_working_day,
        work_unit=float(day.work_unit),
        note=day.note,
    )


def _refresh_session_summary(
    db: Session,
    clock: Clock,
    units: SessionUnitsSource,
    session: AttendanceSession,
) -> None:
    try:
        refresh_existing_summary(
            db,
            clock,
            units,
            user_id=session.user_id,
            year=session.work_date.year,
            month=session.work_date.month,
        )
    except Exception:
        db.rollback()
        logger.exception(
            "session_summary_refresh_failed",
            extra={"session_id": session.id, "user_id": session.user_id},
        )


def _optional_date(raw: str | None, field: str) -> date | None:
    return parse_date(raw, field=field) if raw else None


@router.get("/attendance", response_model=DataEnvelope[AdminSessionList])
def list_attendance(
    from_: str | None = Query(default=None, alias="from"),
    to: str | None = Query(default=None),
    user_id: int | None = Query(default=None, alias="userId", ge=1),
    department_id: int | None = Query(default=None, alias="departmentId", ge=1),
    status: str | None = Query(default=None),
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> DataEnvelope[AdminSessionList]:
    rows = list_admin(
        db,
        from_date=_optional_date(from_, "from"),
        to_date=_optional_date(to, "to"),
        user_id=user_id,
        department_id=department_id,
        status=status,
    )
    return DataEnvelope(data=AdminSessionList(rows=[_to_admin_session_read(row) for row in rows]))


@router.post("/attendance", response_model=DataEnvelope[SessionRead])
def create_attendance_session(
    payload: AdminSessionCreate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    units: SessionUnitsSource = Depends(get_units_source),
) -> DataEnvelope[SessionRead]:
    session = admin_create(db, clock, payload)
    logger.info("admin_action", extra={"action": "attendance.create", "admin_id": admin.id, "session_id": session.id})
    _refresh_session_summary(db, clock, units, session)
    return DataEnvelope(data=to_session_read(session))


@router.patch("/attendance/{session_id}", response_model=DataEnvelope[SessionRead])
def update_attendance_session(
    session_id: int,
    payload: AdminSessionUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    units: SessionUnitsSource = Depends(get_units_source),
) -> DataEnvelope[SessionRead]:
    session = admin_update(db, clock, session_id, payload)
    logger.info("admin_action", extra={"action": "attendance.update", "admin_id": admin.id, "session_id": session.id})
    _refresh_session_summary(db, clock, units, session)
    return DataEnvelope(data=to_session_read(session))


@router.post("/attendance/{session_id}/close", response_model=DataEnvelope[SessionRead])
def close_attendance_session(
    session_id: int,
    payload: AdminSessionClose,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    units: SessionUnitsSource = Depends(get_units_source),
) -> DataEnvelope[SessionRead]:
    session = admin_close(db, clock, session_id, payload)
    logger.info("admin_action", extra={"action": "attendance.close", "admin_id": admin.id, "session_id": session.id})
    _refresh_session_summary(db, clock, units, session)
    return DataEnvelope(data=to_session_read(session))


@router.delete("/attendance/{session_id}", response_model=DataEnvelope[DeletedResponse])
def delete_attendance_session(
    session_id: int,
    payload: AdminSessionDelete | None = Body(default=None),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    units: SessionUnitsSource = Depends(get_units_source),
) -> DataEnvelope[DeletedResponse]:
    session = admin_delete(db, session_id, payload.reason if payload is not None else None)
    logger.info("admin_action", extra={"action": "attendance.delete", "admin_id": admin.id, "session_id": session_id})
    _refresh_session_summary(db, clock, units, session)
    return DataEnvelope(data=DeletedResponse(id=session_id))


@router.get("/work-calendar", response_model=DataEnvelope[list[CalendarDayRead]])
def list_work_calendar(
    from_: str = Query(alias="from"),
    to: str = Query(),
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> DataEnvelope[list[CalendarDayRead]]:
    days = list_range(db, parse_date(from_, field="from"), parse_date(to, field="to"))
    return DataEnvelope(data=[_to_calendar_read(day) for day in days])


@router.post("/work-calendar/generate", response_model=DataEnvelope[CalendarGenerateResult])
def generate_work_calendar(
    payload: CalendarGenerateRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> DataEnvelope[CalendarGenerateResult]:
    inserted = ensure_year(db, payload.year)
    logger.info("admin_action", extra={"action": "calendar.generate", "admin_id": admin.id, "year": payload.year})
    return DataEnvelope(data=CalendarGenerateResult(year=payload.year, inserted=inserted))


@router.put("/work-calendar/day", response_model=DataEnvelope[CalendarDayRead])
def upsert_work_calendar_day(
    payload: CalendarDayUpsert,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    units: SessionUnitsSource = Depends(get_units_source),
) -> DataEnvelope[CalendarDayRead]:
    day = validate_day(
        work_date=payload.work_date,
        is_working_day=payload.is_working_day,
        work_unit=payload.work_unit,
        note=payload.note,
    )
    row = upsert_day(
        db,
        day,
        on_month_changed=lambda year, month: recalculate_month_summaries(db, clock, units, year, month),
    )
    logger.info(
        "admin_action",
        extra={"action": "calendar.upsert", "admin_id": admin.id, "work_date": day.work_date.isoformat()},
    )
    return DataEnvelope(data=_to_calendar_read(row))


@router.post("/work-calendar/bulk", response_model=DataEnvelope[CalendarBulkResult])
def bulk_upsert_work_calendar(
    payload: CalendarBulkRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    units: SessionUnitsSource = Depends(get_units_source),
) -> DataEnvelope[CalendarBulkResult]:
    days = [
        validate_day(
            work_date=item.work_date,
            is_working_day=item.is_working_day,
            work_unit=item.work_unit,
            note=item.note,
        )
        for item in payload.days
    ]
    months = bulk_upsert(
        db,
        days,
        on_month_changed=lambda year, month: recalculate_month_summaries(db, clock, units, year, month),
    )
    logger.info("admin_action", extra={"action": "calendar.bulk", "admin_id": admin.id, "count": len(days)})
    return DataEnvelope(
        data=CalendarBulkResult(
            updated=len(days),
            months=[f"{year:04d}-{month:02d}" for year, month in months],
        )
    )


@router.post("/leave/grant", response_model=DataEnvelope[LeaveGrantResult])
def grant_monthly_leave(
    payload: LeaveGrantRequest | None = Body(default=None),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    units: SessionUnitsSource = Depends(get_units_source),
) -> DataEnvelope[LeaveGrantResult]:
    today = clock.today()
    year = payload.year if payload is not None and payload.year is not None else today.year
    month = payload.month if payload is not None and payload.month is not None else today.month
    applied = process_monthly_grant(db, clock, units, year, month)
    logger.info(
        "admin_action",
        extra={"action": "leave.grant", "admin_id": admin.id, "year": year, "month": month, "applied": applied},
    )
    return DataEnvelope(data=LeaveGrantResult(year=year, month=month, applied=applied))


@router.get("/leave/summary", response_model=DataEnvelope[LeaveSummaryRead])
def get_leave_summary(
    user_id: int = Query(alias="userId", ge=1),
    year: int | None = Query(default=None, ge=2000, le=2100),
    month: int | None = Query(default=None, ge=1, le=12),
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    units: SessionUnitsSource = Depends(get_units_source),
) -> DataEnvelope[LeaveSummaryRead]:
    today = clock.today()
    summary = project_monthly_summary(
        db,
        clock,
        units,
        user_id=user_id,
        year=year or today.year,
        month=month or today.month,
    )
    return DataEnvelope(data=to_summary_read(summary))


@router.get("/leave/summaries", response_model=DataEnvelope[list[AdminLeaveSummaryRead]])
def list_leave_summaries(
    year: int | None = Query(default=None, ge=2000, le=2100),
    month: int | None = Query(default=None, ge=1, le=12),
    user_id: int | None = Query(default=None, alias="userId", ge=1),
    department_id: int | None = Query(default=None, alias="departmentId", ge=1),
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> DataEnvelope[list[AdminLeaveSummaryRead]]:
    today = clock.today()
    rows = list_summaries(
        db,
        year=year or today.year,
        month=month or today.month,
        user_id=user_id,
        department_id=department_id,
    )
    return DataEnvelope(
        data=[
            AdminLeaveSummaryRead(
                **to_summary_read(row.summary).model_dump(),
                user_name=row.user_name,
                department_name=row.department_name,
                paid_leave=row.paid_leave,
            )
            for row in rows
        ]
    )


@router.post("/leave/summary/recalculate", response_model=DataEnvelope[LeaveSummaryRead])
def recalculate_leave_summary(
    user_id: int = Query(alias="userId", ge=1),
    year: int = Query(ge=2000, le=2100),
    month: int = Query(ge=1, le=12),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    units: SessionUnitsSource = Depends(get_units_source),
) -> DataEnvelope[LeaveSummaryRead]:
    summary = project_monthly_summary(db, clock, units, user_id=user_id, year=year, month=month)
    logger.info(
        "admin_action",
        extra={"action": "leave.recalculate", "admin_id": admin.id, "user_id": user_id, "year": year, "month": month},
    )
    return DataEnvelope(data=to_summary_read(summary))


@router.patch("/leave/summary/{user_id}/{year}/{month}", response_model=DataEnvelope[LeaveSummaryRead])
def adjust_leave_summary(
    user_id: int,
    year: int,
    month: int,
    payload: PaidLeaveAdjustRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    units: SessionUnitsSource = Depends(get_units_source),
) -> DataEnvelope[LeaveSummaryRead]:
    if year < 2000 or year > 2100:
        raise ValidationError("year must be between 2000 and 2100", details={"field": "year", "value": year})
    summary = adjust_paid_leave(
        db,
        clock,
        units,
        user_id=user_id,
        year=year,
        month=month,
        paid_leave=payload.paid_leave,
        reason=payload.reason,
    )
    logger.info(
        "admin_action",
        extra={"action": "leave.adjust", "admin_id": admin.id, "user_id": user_id, "paid_leave": payload.paid_leave},
    )
    return DataEnvelope(data=to_summary_read(summary))


@router.get("/leave/grants", response_model=DataEnvelope[list[LeaveGrantRead]])
def list_leave_grants(
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> DataEnvelope[list[LeaveGrantRead]]:
    return DataEnvelope(
        data=[
            LeaveGrantRead(
                id=grant.id,
                grant_year=grant.grant_year,
                grant_month=grant.grant_month,
                grant_type=grant.grant_type.value,
                created_at=grant.created_at,
            )
            for grant in list_grants(db)
        ]
    )
