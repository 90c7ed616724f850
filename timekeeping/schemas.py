from datetime import date, datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel

from timekeeping.clock import to_utc
from timekeeping.settings import get_business_zone

T = TypeVar("T")


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _business_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return to_utc(value).astimezone(get_business_zone()).isoformat()


class DataEnvelope(BaseModel, Generic[T]):
    data: T


class SessionRead(ApiModel):
    id: int | None = None
    user_id: int | None = None
    work_date: date
    check_in_at: datetime | None = None
    check_out_at: datetime | None = None
    worked_minutes: int = 0
    day_unit: float = 0.0
    status: str
    checkout_reason: str | None = None

    @field_serializer("check_in_at", "check_out_at")
    def _serialize_instant(self, value: datetime | None) -> str | None:
        return _business_time(value)


class AdminSessionRead(SessionRead):
    user_name: str | None = None
    department_id: int | None = None
    department_name: str | None = None


class SessionList(ApiModel):
    range_from: date = Field(alias="from")
    range_to: date = Field(alias="to")
    rows: list[SessionRead]


class AdminSessionList(ApiModel):
    rows: list[AdminSessionRead]


class CheckOutRequest(ApiModel):
    reason: str | None = Field(default=None, max_length=1000)


class AdminSessionCreate(ApiModel):
    user_id: int = Field(ge=1)
    work_date: str
    check_in_at: str
    check_out_at: str | None = None
    reason: str = ""


class AdminSessionUpdate(ApiModel):
    user_id: int | None = Field(default=None, ge=1)
    work_date: str | None = None
    check_in_at: str | None = None
    check_out_at: str | None = None
    reason: str = ""


class AdminSessionClose(ApiModel):
    check_out_at: str
    reason: str = ""


class AdminSessionDelete(ApiModel):
    reason: str = ""


class DeletedResponse(ApiModel):
    id: int
    deleted: bool = True


class CalendarDayRead(ApiModel):
    work_date: date = Field(alias="date")
    is_working_day: bool
    work_unit: float
    note: str | None = None


class CalendarDayUpsert(ApiModel):
    work_date: str = Field(alias="date")
    is_working_day: bool
    work_unit: float
    note: str | None = Field(default=None, max_length=255)


class CalendarBulkRequest(ApiModel):
    days: list[CalendarDayUpsert]


class CalendarGenerateRequest(ApiModel):
    year: int = Field(ge=2000, le=2100)


class CalendarGenerateResult(ApiModel):
    year: int
    inserted: int


class CalendarBulkResult(ApiModel):
    updated: int
    months: list[str]


class LeaveSummaryRead(ApiModel):
    user_id: int
    year: int
    month: int
    expected_units: float
    worked_units: float
    missing_units: float
    paid_used_units: float
    unpaid_units: float
    is_birthday: bool
    updated_at: datetime

    @field_serializer("updated_at")
    def _serialize_updated_at(self, value: datetime) -> str | None:
        return _business_time(value)


class AdminLeaveSummaryRead(LeaveSummaryRead):
    user_name: str | None = None
    department_name: str | None = None
    paid_leave: float | None = None


class LeaveGrantRequest(ApiModel):
    year: int | None = Field(default=None, ge=2000, le=2100)
    month: int | None = None


class LeaveGrantResult(ApiModel):
    year: int
    month: int
    applied: bool


class LeaveGrantRead(ApiModel):
    id: int
    grant_year: int
    grant_month: int
    grant_type: str
    created_at: datetime

    @field_serializer("created_at")
    def _serialize_created_at(self, value: datetime) -> str | None:
        return _business_time(value)


class PaidLeaveAdjustRequest(ApiModel):
    paid_leave: float = Field(ge=0, le=9999.9)
    reason: str = ""


class StatsPoint(ApiModel):
    work_date: date
    worked_minutes: int
    day_unit: float
    status: str


class StatsAnomalies(ApiModel):
    total: int = 0
    missing_check_out: int = 0


class MonthComparison(ApiModel):
    current_total_worked_minutes: int
    current_worked_days: int
    prev_total_worked_minutes: int
    prev_worked_days: int
    worked_minutes_delta: int
    day_unit_delta: float
    worked_days_delta: int


class MeStatsRead(ApiModel):
    range: str
    range_from: date = Field(alias="from")
    range_to: date = Field(alias="to")
    total_worked_minutes: int = 0
    worked_days: int = 0
    total_day_unit: float = 0.0
    full_days: int = 0
    half_days: int = 0
    missing_days: int = 0
    open_sessions: int = 0
    anomalies: StatsAnomalies = Field(default_factory=StatsAnomalies)
    prev_month_comparison: MonthComparison | None = None
    series: list[StatsPoint] = Field(default_factory=list)
