from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from leasepay import db
from leasepay.config import AppInfo, Settings, get_settings
from leasepay.core.logging import get_logger, setup_logging
from leasepay.core.runtime_state import set_scheduler_active
import leasepay.models  # noqa: F401  registers the tables
from leasepay.routers import get_api_router
from leasepay.services.cron import backfill_missing_receipts, sweep_stale_transactions
from leasepay.services.scheduler_lock import (
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)
from leasepay.utils.errors import error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}
SWEEP_INTERVAL_MINUTES = 5
RECEIPT_BACKFILL_INTERVAL_MINUTES = 60


def _current_settings() -> Settings:
    return get_settings()


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    runtime_settings = _current_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware)
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_webhook_secrets(settings: Settings) -> None:
    """Refuse to start outside dev when callbacks could not be authenticated."""

    configured = bool(settings.webhook_tokens())
    env_lower = settings.app_env.lower()
    if env_lower != "dev" and not configured:
        logger.error(
            "M-Pesa webhook token is missing; set MPESA_WEBHOOK_TOKEN before startup.",
            extra={"env": settings.app_env},
        )
        raise RuntimeError("Missing M-Pesa webhook token in non-dev environment.")
    if not configured:
        logger.warning(
            "M-Pesa webhook token is not configured; callbacks will be refused.",
            extra={"env": settings.app_env},
        )
    elif settings.mpesa_webhook_token is None:
        logger.warning(
            "Primary webhook token unset; relying on MPESA_WEBHOOK_TOKEN_NEXT only.",
            extra={"env": settings.app_env},
        )


def _start_scheduler() -> AsyncIOScheduler:
    runner = AsyncIOScheduler()
    runner.start()
    runner.add_job(
        sweep_stale_transactions,
        "interval",
        minutes=SWEEP_INTERVAL_MINUTES,
        id="stale-payment-sweep",
        replace_existing=True,
    )
    runner.add_job(
        backfill_missing_receipts,
        "interval",
        minutes=RECEIPT_BACKFILL_INTERVAL_MINUTES,
        id="receipt-backfill",
        replace_existing=True,
    )
    runner.add_job(
        refresh_scheduler_lock,
        "interval",
        seconds=60,
        id="scheduler-lock-heartbeat",
        replace_existing=True,
    )
    return runner


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler
    settings = _current_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_webhook_secrets(settings)

    db.init_engine()
    if settings.ALLOW_DB_CREATE_ALL and settings.app_env.lower() in ALLOWED_CREATE_ENV:
        logger.warning("Running create_all() because ALLOW_DB_CREATE_ALL is set", extra={"env": settings.app_env})
        db.create_all()
    else:
        logger.info("Skipping create_all(); use Alembic migrations.", extra={"env": settings.app_env})

    # Run SCHEDULER_ENABLED on one replica only; the DB lease guards against mistakes.
    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = try_acquire_scheduler_lock()
        if lock_acquired:
            scheduler = _start_scheduler()
            set_scheduler_active(True)
        else:
            logger.warning(
                "Scheduler disabled because the lock is held by another instance.",
                extra={"env": settings.app_env},
            )
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


__all__ = ["app"]
