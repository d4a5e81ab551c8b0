import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hrledger.db import SessionLocal, engine
from hrledger.errors import ApiError, error_response
from hrledger.logging_utils import setup_json_logging
from hrledger.models import ReconciliationTriggerSource
from hrledger.routers import admin, attendance, leaves
from hrledger.schemas import ReconciliationRunRead
from hrledger.services.reconciliation_trigger import (
    ReconciliationInProgressError,
    list_runs,
    reconciliation_trigger,
)
from hrledger.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from hrledger.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("hrledger.request")
reconciliation_worker_logger = logging.getLogger("hrledger.reconciliation_worker")

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
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

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
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
                "employee_id": getattr(request.state, "employee_id", None),
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


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message="Request validation failed.",
        details={"errors": [_describe_validation_error(item) for item in exc.errors()]},
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
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(attendance.router)
app.include_router(leaves.router)
app.include_router(admin.router)


def _describe_validation_error(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "loc": [str(part) for part in item.get("loc", ())],
        "msg": str(item.get("msg", "")),
        "type": str(item.get("type", "")),
    }


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


def _last_reconciliation_run() -> dict[str, Any] | None:
    with SessionLocal() as db:
        runs = list_runs(db, limit=1)
        if not runs:
            return None
        return ReconciliationRunRead.model_validate(runs[0]).model_dump(mode="json")


def _run_scheduled_reconciliation(now_utc: datetime) -> dict[str, Any] | None:
    if not reconciliation_trigger.is_due(now_utc):
        return None
    run = reconciliation_trigger.run(now=now_utc, trigger=ReconciliationTriggerSource.SCHEDULE)
    return {"run_id": run.id, "run_day": run.run_day.isoformat(), "summary": run.summary}


async def _reconciliation_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(15, int(settings.reconciliation_worker_interval_seconds))
    while not stop_event.is_set():
        try:
            now_utc = datetime.now(timezone.utc)
            result = await asyncio.to_thread(_run_scheduled_reconciliation, now_utc)
        except ReconciliationInProgressError:
            reconciliation_worker_logger.info("reconciliation_worker_tick_skipped_in_progress")
        except Exception:
            reconciliation_worker_logger.exception("reconciliation_worker_tick_failed")
        else:
            if result is not None:
                reconciliation_worker_logger.info("reconciliation_worker_run_complete", extra=result)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        reconciliation_worker_logger.info(
            "schema_guard_ok",
            extra=result.to_dict(),
        )
        return

    reconciliation_worker_logger.error(
        "schema_guard_failed",
        extra=result.to_dict(),
    )
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_reconciliation_worker() -> None:
    if not settings.reconciliation_worker_enabled:
        return
    if getattr(app.state, "reconciliation_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_reconciliation_worker_loop(stop_event))
    app.state.reconciliation_worker_stop_event = stop_event
    app.state.reconciliation_worker_task = task
    reconciliation_worker_logger.info(
        "reconciliation_worker_started",
        extra={
            "interval_seconds": max(15, int(settings.reconciliation_worker_interval_seconds)),
            "trigger_local": settings.reconciliation_trigger_local,
            "timezone": settings.attendance_timezone,
        },
    )


@app.on_event("shutdown")
async def stop_reconciliation_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "reconciliation_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "reconciliation_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.reconciliation_worker_stop_event = None
    app.state.reconciliation_worker_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    try:
        last_run = _last_reconciliation_run()
    except Exception:
        logger.exception("health_last_run_lookup_failed")
        last_run = None
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "reconciliation": {
            "running": reconciliation_trigger.running,
            "worker_enabled": settings.reconciliation_worker_enabled,
            "last_run": last_run,
        },
    }
