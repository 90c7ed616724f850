import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from timekeeping.clock import SystemClock
from timekeeping.db import SessionLocal, engine
from timekeeping.errors import STATUS_CODE_TO_ERROR_CODE, ApiError, error_response
from timekeeping.logging_utils import setup_json_logging
from timekeeping.routers import admin, attendance
from timekeeping.services.leave_scheduler import leave_scheduler_loop
from timekeeping.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from timekeeping.settings import get_cors_origins, get_settings, parse_http_addr

setup_json_logging()
logger = logging.getLogger("timekeeping.request")
lifecycle_logger = logging.getLogger("timekeeping.lifecycle")
settings = get_settings()


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "anonymous")
    request.state.actor_id = getattr(request.state, "actor_id", None)

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "anonymous"),
                "actor_id": getattr(request.state, "actor_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    status_code = exc.status_code
    code = STATUS_CODE_TO_ERROR_CODE.get(status_code, "internal_error" if status_code >= 500 else "validation_error")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


def _validation_details(exc: RequestValidationError) -> list[dict[str, Any]]:
    details: list[dict[str, Any]] = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        details.append(
            {
                "field": ".".join(location) or None,
                "message": str(error.get("msg", "")),
                "type": str(error.get("type", "")),
            }
        )
    return details


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=400,
        code="validation_error",
        message="Invalid request",
        details=_validation_details(exc),
    )


@app.exception_handler(SQLAlchemyError)
async def handle_storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception(
        "storage_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="internal_error",
        message="Unexpected server error.",
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="internal_error",
        message="Unexpected server error.",
    )


app.include_router(attendance.router)
app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        lifecycle_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    lifecycle_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_leave_scheduler() -> None:
    if not settings.leave_scheduler_enabled:
        return
    if getattr(app.state, "leave_scheduler_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(
        leave_scheduler_loop(
            stop_event,
            session_factory=SessionLocal,
            clock=SystemClock(),
            interval_seconds=max(60, int(settings.leave_scheduler_interval_seconds)),
        )
    )
    app.state.leave_scheduler_stop_event = stop_event
    app.state.leave_scheduler_task = task


@app.on_event("shutdown")
async def stop_leave_scheduler() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "leave_scheduler_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "leave_scheduler_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.leave_scheduler_stop_event = None
    app.state.leave_scheduler_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(
        app.state,
        "schema_guard_result",
        _default_schema_guard_result(),
    )
    task = getattr(app.state, "leave_scheduler_task", None)
    return {
        "status": "ok",
        "env": settings.env,
        "schema_guard": schema_guard_result.to_dict(),
        "leave_scheduler_running": task is not None and not task.done(),
    }


def run() -> None:
    host, port = parse_http_addr(settings.http_addr)
    uvicorn.run("timekeeping.main:app", host=host, port=port, log_config=None)
