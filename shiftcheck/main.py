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

from shiftcheck.clock import SystemClock
from shiftcheck.db import engine
from shiftcheck.errors import ApiError, error_response
from shiftcheck.logging_utils import setup_json_logging
from shiftcheck.routers import incidents, punches, schedules
from shiftcheck.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from shiftcheck.services.sweeps import run_all_sweeps
from shiftcheck.settings import get_cors_origins, get_settings, get_sweep_interval_seconds

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("shiftcheck.request")
sweep_worker_logger = logging.getLogger("shiftcheck.sweeps")

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

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "actor": getattr(request.state, "actor", "anonymous"),
                "actor_id": getattr(request.state, "actor_id", None),
                "record_id": getattr(request.state, "record_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message)


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    code = {401: "INVALID_TOKEN", 403: "FORBIDDEN"}.get(exc.status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(request, status_code=exc.status_code, code=code, message=message)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(request, status_code=422, code="VALIDATION_ERROR", message=str(exc.errors()))


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
    return error_response(request, status_code=500, code="INTERNAL_ERROR", message="Unexpected server error.")


app.include_router(schedules.router)
app.include_router(incidents.router)
app.include_router(punches.router)


def _schema_guard_not_run() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
    )


async def _sweep_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = get_sweep_interval_seconds()
    clock = SystemClock()
    while not stop_event.is_set():
        try:
            report = await asyncio.to_thread(run_all_sweeps, clock)
        except Exception:
            sweep_worker_logger.exception("sweep_worker_tick_failed")
        else:
            app.state.last_sweep_report = report.to_dict()
            app.state.last_sweep_at_utc = clock.now_utc().isoformat()
            if report.created or report.failures:
                sweep_worker_logger.info("sweep_worker_tick", extra=report.to_dict())

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        sweep_worker_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    sweep_worker_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        raise RuntimeError(f"Runtime schema guard failed: {'; '.join(result.issues)}")


@app.on_event("startup")
async def start_sweep_worker() -> None:
    if not settings.sweep_worker_enabled:
        return
    if getattr(app.state, "sweep_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    app.state.sweep_worker_stop_event = stop_event
    app.state.sweep_worker_task = asyncio.create_task(_sweep_worker_loop(stop_event))
    sweep_worker_logger.info("sweep_worker_started", extra={"interval_seconds": get_sweep_interval_seconds()})


@app.on_event("shutdown")
async def stop_sweep_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "sweep_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "sweep_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.sweep_worker_stop_event = None
    app.state.sweep_worker_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _schema_guard_not_run())
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "sweep_worker": {
            "enabled": settings.sweep_worker_enabled,
            "running": getattr(app.state, "sweep_worker_task", None) is not None,
            "interval_seconds": get_sweep_interval_seconds(),
            "last_run_at_utc": getattr(app.state, "last_sweep_at_utc", None),
            "last_report": getattr(app.state, "last_sweep_report", None),
        },
    }
