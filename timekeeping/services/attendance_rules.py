from __future__ import annotations

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from timekeeping.clock import combine, to_utc
from timekeeping.settings import get_business_zone

# Business-zone local times of day.
WORK_START = "08:00"
CHECK_IN_END = "18:00"
WORK_END_CAP = "19:00"
WORK_START_CALC = "08:30"
WORK_END_CALC = "18:00"
MORNING_CUTOFF = "09:30"
AFTERNOON_CUTOFF = "15:30"
LUNCH_START = "12:00"
LUNCH_END = "13:30"

FULL_DAY_MINUTES = 480
FULL_DAY_START_TOLERANCE = timedelta(minutes=1)

FULL_DAY_UNIT = 1.0
HALF_DAY_UNIT = 0.5
NO_DAY_UNIT = 0.0


def _local(instant: datetime, zone: ZoneInfo) -> datetime:
    return to_utc(instant).astimezone(zone)


def _at(day: date, hhmm: str, zone: ZoneInfo) -> datetime:
    return combine(day, hhmm, zone)


def _whole_minutes(delta: timedelta) -> int:
    # Sub-minute remainders are dropped.
    return int(delta.total_seconds() // 60)


def is_check_in_allowed(now: datetime, zone: ZoneInfo | None = None) -> bool:
    zone = zone or get_business_zone()
    local_now = _local(now, zone)
    day = local_now.date()
    return _at(day, WORK_START, zone) <= local_now <= _at(day, CHECK_IN_END, zone)


def compute_day_unit(
    check_in: datetime,
    check_out: datetime | None,
    zone: ZoneInfo | None = None,
) -> float:
    """Half-day credit for a session.

    Morning credit needs a check-in at or before 09:30. Afternoon credit needs
    a check-out at or after 15:30 and a check-in no later than 15:30, so an
    open session never earns it.
    """
    zone = zone or get_business_zone()
    local_in = _local(check_in, zone)
    in_day = local_in.date()

    morning_ok = local_in <= _at(in_day, MORNING_CUTOFF, zone)
    checked_in_after_afternoon_cutoff = local_in > _at(in_day, AFTERNOON_CUTOFF, zone)

    afternoon_ok = False
    if check_out is not None and not checked_in_after_afternoon_cutoff:
        local_out = _local(check_out, zone)
        afternoon_ok = local_out >= _at(local_out.date(), AFTERNOON_CUTOFF, zone)

    if morning_ok and afternoon_ok:
        return FULL_DAY_UNIT
    if morning_ok or afternoon_ok:
        return HALF_DAY_UNIT
    return NO_DAY_UNIT


def compute_worked_minutes(
    check_in: datetime,
    check_out: datetime | None,
    zone: ZoneInfo | None = None,
) -> int:
    if check_out is None:
        return 0
    zone = zone or get_business_zone()
    local_in = _local(check_in, zone)
    local_out = _local(check_out, zone)
    if local_out < local_in:
        return 0

    day = local_in.date()
    window_start = _at(day, WORK_START_CALC, zone)
    window_end = _at(day, WORK_END_CALC, zone)

    if local_in <= window_start + FULL_DAY_START_TOLERANCE and local_out >= window_end:
        return FULL_DAY_MINUTES

    start = max(local_in, window_start)
    end = min(local_out, window_end)
    if end <= start:
        return 0

    total = _whole_minutes(end - start)

    lunch_start = max(start, _at(day, LUNCH_START, zone))
    lunch_end = min(end, _at(day, LUNCH_END, zone))
    if lunch_end > lunch_start:
        total -= _whole_minutes(lunch_end - lunch_start)

    return max(total, 0)
