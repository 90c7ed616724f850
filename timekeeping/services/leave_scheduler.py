from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
from typing import Any

from sqlalchemy.orm import Session

from timekeeping.clock import Clock, SystemClock
from timekeeping.services.attendance import AttendanceUnitsSource
from timekeeping.services.leave import (
    process_monthly_grant,
    process_previous_month_deduction,
    process_summary_backfill,
)
from timekeeping.services.work_calendar import ensure_year

logger = logging.getLogger("timekeeping.scheduler")

SessionFactory = Callable[[], Session]

MONDAY = 0


def run_monthly_grant(session_factory: SessionFactory, clock: Clock) -> bool:
    today = clock.today()
    with session_factory() as db:
        return process_monthly_grant(db, clock, AttendanceUnitsSource(db), today.year, today.month)


def run_previous_month_deduction(session_factory: SessionFactory, clock: Clock) -> bool:
    with session_factory() as db:
        return process_previous_month_deduction(db, clock, AttendanceUnitsSource(db))


def run_summary_backfill(session_factory: SessionFactory, clock: Clock) -> list[tuple[int, int]]:
    with session_factory() as db:
        return process_summary_backfill(db, clock, AttendanceUnitsSource(db))


def run_ensure_year(session_factory: SessionFactory, clock: Clock) -> int:
    with session_factory() as db:
        return ensure_year(db, clock.today().year)


async def _run_job(name: str, job: Callable[..., Any], *args: Any) -> None:
    try:
        result = await asyncio.to_thread(job, *args)
    except Exception:
        logger.exception("leave_scheduler_job_failed", extra={"job": name})
        return
    logger.info("leave_scheduler_job_done", extra={"job": name, "result": result})


async def run_startup_jobs(session_factory: SessionFactory, clock: Clock) -> None:
    await _run_job("monthly_grant", run_monthly_grant, session_factory, clock)
    await _run_job("previous_month_deduction", run_previous_month_deduction, session_factory, clock)
    await _run_job("summary_backfill", run_summary_backfill, session_factory, clock)
    await _run_job("ensure_year", run_ensure_year, session_factory, clock)


async def run_tick_jobs(session_factory: SessionFactory, clock: Clock) -> None:
    await _run_job("ensure_year", run_ensure_year, session_factory, clock)
    await _run_job("monthly_grant", run_monthly_grant, session_factory, clock)
    await _run_job("previous_month_deduction", run_previous_month_deduction, session_factory, clock)
    if clock.today().weekday() == MONDAY:
        await _run_job("summary_backfill", run_summary_backfill, session_factory, clock)


async def leave_scheduler_loop(
    stop_event: asyncio.Event,
    *,
    session_factory: SessionFactory,
    clock: Clock | None = None,
    interval_seconds: float = 86400,
) -> None:
    """Run the leave jobs once, then once per interval until ``stop_event`` is set.

    Every job is idempotent, so a drifting or repeated tick is harmless.
    """
    clock = clock or SystemClock()
    logger.info("leave_scheduler_started", extra={"interval_seconds": interval_seconds})
    await run_startup_jobs(session_factory, clock)

    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            await run_tick_jobs(session_factory, clock)
            continue
        break

    logger.info("leave_scheduler_stopped")
