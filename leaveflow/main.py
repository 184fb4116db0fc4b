import asyncio
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from leaveflow.db import engine
from leaveflow.errors import ApiError, LeaveError, error_response
from leaveflow.logging_utils import setup_json_logging
from leaveflow.routers import admin, leaves
from leaveflow.services.notifications import build_notification_sender
from leaveflow.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from leaveflow.services.subscriptions import ChangeFeed, SubscriptionHub
from leaveflow.settings import get_cors_origins, get_settings, is_email_enabled

setup_json_logging()
logger = logging.getLogger("leaveflow.request")
lifecycle_logger = logging.getLogger("leaveflow.lifecycle")
settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.change_feed = ChangeFeed()
app.state.subscription_hub = SubscriptionHub(app.state.change_feed.attach)
app.state.notifier = None


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
        fields = {
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "status_code": status_code,
            "latency_ms": latency_ms,
            "actor": getattr(request.state, "actor", "system"),
            "actor_id": getattr(request.state, "actor_id", "system"),
        }
        leave_request_id = getattr(request.state, "leave_request_id", None)
        if leave_request_id is not None:
            fields["leave_request_id"] = leave_request_id
        logger.info("request_complete", extra=fields)


@app.exception_handler(LeaveError)
async def handle_leave_error(request: Request, exc: LeaveError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
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
        message=str(exc.errors()),
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


app.include_router(leaves.router)
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
        lifecycle_logger.info(
            "schema_guard_ok",
            extra=result.to_dict(),
        )
        return

    lifecycle_logger.error(
        "schema_guard_failed",
        extra=result.to_dict(),
    )
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_notifier() -> None:
    if getattr(app.state, "notifier", None) is not None:
        return
    app.state.notifier = build_notification_sender(settings)
    if settings.email_enabled and not is_email_enabled():
        lifecycle_logger.warning(
            "notification_email_channel_not_configured",
            extra={
                "missing_fields": [
                    name
                    for name in ("email_lambda_url", "email_api_key")
                    if not (getattr(settings, name) or "").strip()
                ],
            },
        )
    lifecycle_logger.info(
        "notifier_started",
        extra={"email_enabled": app.state.notifier.is_enabled()},
    )


@app.on_event("shutdown")
async def stop_notifier() -> None:
    notifier = getattr(app.state, "notifier", None)
    shutdown = getattr(notifier, "shutdown", None)
    if callable(shutdown):
        shutdown()
    app.state.notifier = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    notifier = getattr(app.state, "notifier", None)
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "email_enabled": bool(notifier is not None and notifier.is_enabled()),
        "stream_topics": app.state.change_feed.attached_topics(),
    }
