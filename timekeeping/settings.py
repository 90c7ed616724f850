from datetime import timedelta
from functools import lru_cache
import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": "milliseconds", "s": "seconds", "m": "minutes", "h": "hours"}


def parse_duration(raw: str | int | float | timedelta) -> timedelta:
    """Parse durations written like ``15m``, ``168h`` or ``1h30m``.

    Bare numbers are read as seconds.
    """
    if isinstance(raw, timedelta):
        return raw
    if isinstance(raw, (int, float)):
        return timedelta(seconds=raw)

    value = str(raw).strip().lower()
    if not value:
        raise ValueError("duration must not be empty")
    if value.isdigit():
        return timedelta(seconds=int(value))

    total = timedelta()
    position = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != position:
            raise ValueError(f"invalid duration: {raw!r}")
        amount, unit = match.groups()
        total += timedelta(**{_DURATION_UNITS[unit]: float(amount)})
        position = match.end()
    if position != len(value):
        raise ValueError(f"invalid duration: {raw!r}")
    return total


class Settings(BaseSettings):
    env: str = "development"
    http_addr: str = ":8080"
    app_name: str = "Timekeeping"
    app_tz: str = "Asia/Ho_Chi_Minh"

    database_url: str | None = None
    db_driver: str = "postgresql+psycopg"
    db_host: str = "127.0.0.1"
    db_port: int = 5432
    db_user: str = "postgres"
    db_password: str = "postgres"
    db_name: str = "time_attendance"
    db_params: str = ""

    cors_allow_origins: str = "http://localhost:3000"

    auth_jwt_secret: str = "change-me"
    auth_access_token_ttl: timedelta = timedelta(minutes=15)
    auth_refresh_token_ttl: timedelta = timedelta(hours=168)
    auth_cookie_secure: bool = False
    auth_cookie_same_site: str = "Lax"

    leave_scheduler_enabled: bool = True
    leave_scheduler_interval_seconds: int = 86400
    schema_guard_strict: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("auth_access_token_ttl", "auth_refresh_token_ttl", mode="before")
    @classmethod
    def _parse_ttl(cls, value):  # type: ignore[no-untyped-def]
        return parse_duration(value)


def parse_http_addr(raw: str) -> tuple[str, int]:
    """Split ``host:port`` or ``:port`` into a bind host and port."""
    host, separator, port = (raw or "").strip().rpartition(":")
    if not separator or not port.isdigit():
        raise ValueError(f"invalid HTTP address: {raw!r}")
    return host or "0.0.0.0", int(port)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def is_development() -> bool:
    return get_settings().env.strip().lower() in {"development", "dev", "local"}


def get_cors_origins() -> list[str]:
    raw = get_settings().cors_allow_origins
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def get_database_url() -> str:
    settings = get_settings()
    if settings.database_url:
        return settings.database_url

    url = (
        f"{settings.db_driver}://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )
    params = settings.db_params.strip().lstrip("?")
    if params:
        url = f"{url}?{params}"
    return url


@lru_cache
def get_business_zone() -> ZoneInfo:
    raw_name = (get_settings().app_tz or "").strip() or "UTC"
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")
