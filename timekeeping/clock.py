"""Business-zone clock.

Every component asks a ``Clock`` for "now" and "today" so that the whole
process agrees on one configured zone, and tests can pin time with
``FixedClock``.
"""

from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo

from timekeeping.errors import ValidationError
from timekeeping.settings import get_business_zone


class Clock(Protocol):
    zone: ZoneInfo

    def now(self) -> datetime: ...

    def today(self) -> date: ...

    def combine(self, day: date, hhmm: str) -> datetime: ...


class _ZoneClock:
    zone: ZoneInfo

    def now(self) -> datetime:
        raise NotImplementedError

    def today(self) -> date:
        return self.now().astimezone(self.zone).date()

    def combine(self, day: date, hhmm: str) -> datetime:
        return combine(day, hhmm, self.zone)

    def local(self, instant: datetime) -> datetime:
        return to_utc(instant).astimezone(self.zone)


class SystemClock(_ZoneClock):
    def __init__(self, zone: ZoneInfo | None = None) -> None:
        self.zone = zone or get_business_zone()

    def now(self) -> datetime:
        return datetime.now(self.zone)


class FixedClock(_ZoneClock):
    def __init__(self, instant: datetime, zone: ZoneInfo | None = None) -> None:
        self.zone = zone or get_business_zone()
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=self.zone)
        self._instant = instant.astimezone(self.zone)

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=self.zone)
        self._instant = instant.astimezone(self.zone)

    def advance(self, delta: timedelta) -> None:
        self._instant = self._instant + delta


def get_clock() -> Clock:
    return SystemClock()


def to_utc(instant: datetime) -> datetime:
    # SQLite hands back naive values; everything is written in UTC.
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def parse_hhmm(hhmm: str) -> time:
    try:
        hour_raw, minute_raw = hhmm.split(":")
        return time(int(hour_raw), int(minute_raw))
    except ValueError as exc:
        raise ValueError(f"invalid time of day: {hhmm!r}") from exc


def combine(day: date, hhmm: str, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, parse_hhmm(hhmm), tzinfo=zone)


def parse_date(raw: str, *, field: str = "date") -> date:
    try:
        return date.fromisoformat(raw.strip())
    except (AttributeError, ValueError) as exc:
        raise ValidationError(
            f"Invalid {field}, expected YYYY-MM-DD",
            details={"field": field, "value": raw},
        ) from exc


def parse_instant(raw: str, *, field: str = "instant") -> datetime:
    """Parse an RFC 3339 timestamp; an offset is mandatory."""
    value = (raw or "").strip()
    if value.endswith(("Z", "z")):
        value = f"{value[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid {field}, expected RFC3339",
            details={"field": field, "value": raw},
        ) from exc
    if parsed.tzinfo is None or "T" not in value.upper():
        raise ValidationError(
            f"Invalid {field}, expected RFC3339",
            details={"field": field, "value": raw},
        )
    return parsed


def month_bounds(year: int, month: int) -> tuple[date, date]:
    days_in_month = monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, days_in_month)


def previous_month(day: date) -> tuple[int, int]:
    if day.month == 1:
        return day.year - 1, 12
    return day.year, day.month - 1
