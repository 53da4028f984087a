"""FastAPI application entrypoint for the SnapStage staging service."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from src.auth.middleware import AUTH_CONTEXT_KEY, resolve_request_auth_context
from src.billing.webhooks import router as billing_router
from src.core.config import get_settings
from src.core.logger import bind_request_context, clear_request_context, get_logger
from src.core.metrics import record_http_request, render_prometheus_metrics
from src.staging.reconciler import shutdown_dispatcher
from src.staging.router import router as staging_router
from src.storage.blob_router import router as blob_router
from src.storage.db import load_models
from src.storage.db import test_connection as test_db_connection
from src.storage.redis_client import test_connection as test_redis_connection


settings = get_settings()
logger = get_logger("snapstage.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    del request
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors())},
    )


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id", str(uuid4()))
    auth_context = resolve_request_auth_context(request)
    setattr(request.state, AUTH_CONTEXT_KEY, auth_context)
    bind_request_context(
        request_id=request_id,
        user_id=auth_context.user_id if auth_context is not None else None,
    )

    status_code = 500
    try:
        response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        duration = perf_counter() - started_at
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=duration,
            )
        clear_request_context()

    response.headers["x-request-id"] = request_id
    return response


@app.on_event("startup")
def on_startup() -> None:
    load_models()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        job_backend=settings.job_backend,
        blob_backend=settings.blob_backend,
        regen_rate_limit_backend=settings.regen_rate_limit_backend,
        metrics_enabled=settings.metrics_enabled,
    )


@app.on_event("shutdown")
def on_shutdown() -> None:
    # In-flight loops are abandoned; the refund sweep settles their HD credits.
    shutdown_dispatcher()
    logger.info("application_shutdown")


def _uses_redis() -> bool:
    return settings.regen_rate_limit_backend.strip().lower() == "redis"


@app.get("/health")
def health() -> JSONResponse:
    db_ok, db_error = test_db_connection()
    services = {"database": {"ok": db_ok, "error": db_error}}

    healthy = db_ok
    if _uses_redis():
        redis_ok, redis_error = test_redis_connection()
        services["redis"] = {"ok": redis_ok, "error": redis_error}
        healthy = healthy and redis_ok

    payload = {
        "status": "ok" if healthy else "degraded",
        "env": settings.env,
        "services": services,
    }
    return JSONResponse(content=payload, status_code=200 if healthy else 503)


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)

    payload = render_prometheus_metrics(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(
        payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(staging_router)
app.include_router(blob_router)
app.include_router(billing_router)
