"""Health check endpoint."""
from __future__ import annotations

import logging

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter
from sqlalchemy import text

from leasepay.config import get_settings
from leasepay.core.runtime_state import is_scheduler_active, last_sweep_at
from leasepay.db import get_engine
from leasepay.services.scheduler_lock import describe_scheduler_lock
from leasepay.utils.masking import fingerprint

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _secret_status(primary: str | None, secondary: str | None) -> str:
    """'missing' without any token, 'rotating' while a next token is staged."""

    if primary and secondary:
        return "rotating"
    if primary:
        return "ok"
    if secondary:
        return "partial"
    return "missing"


def _db_status() -> str:
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        script = ScriptDirectory.from_config(Config("alembic.ini"))
        return script.get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> tuple[bool, str]:
    expected_head = _expected_migration_head()
    try:
        with get_engine().connect() as conn:
            current = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
    except Exception:  # noqa: BLE001
        logger.exception("Migration check failed")
        return False, "unknown"
    if expected_head is None:
        return False, "unknown"
    if current == expected_head:
        return True, "up_to_date"
    return False, "out_of_date"


def _lock_status() -> dict[str, object]:
    try:
        return describe_scheduler_lock()
    except Exception:  # noqa: BLE001
        logger.exception("Scheduler lock check failed")
        return {"status": "unknown", "owner": None}


@router.get("", summary="Health check")
def healthcheck() -> dict[str, object]:
    settings = get_settings()
    primary = settings.mpesa_webhook_token
    secondary = settings.mpesa_webhook_token_next
    db_status = _db_status()
    db_ok = db_status == "ok"
    if db_ok:
        migration_ok, migration_status = _migrations_status()
    else:
        migration_ok, migration_status = False, "unknown"
    sweep = last_sweep_at()
    return {
        "status": "ok" if db_ok and migration_ok else "degraded",
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_ok": migration_ok,
        "migrations_status": migration_status,
        "mpesa_environment": settings.mpesa_environment,
        "mpesa_webhook_configured": bool(primary or secondary),
        "mpesa_webhook_secret_status": _secret_status(primary, secondary),
        "mpesa_webhook_secret_fingerprints": {
            "current": fingerprint(primary),
            "next": fingerprint(secondary),
        },
        "amount_mismatch_policy": settings.AMOUNT_MISMATCH_POLICY.value,
        "scheduler_config_enabled": bool(settings.SCHEDULER_ENABLED),
        "scheduler_running": is_scheduler_active(),
        "scheduler_lock": _lock_status() if db_ok else {"status": "unknown", "owner": None},
        "last_sweep_at": sweep.isoformat() if sweep else None,
    }
