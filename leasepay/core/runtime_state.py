"""Process-wide runtime flags shared across modules."""
from __future__ import annotations

from datetime import datetime

_scheduler_active = False
_last_sweep_at: datetime | None = None


def set_scheduler_active(active: bool) -> None:
    global _scheduler_active
    _scheduler_active = active


def is_scheduler_active() -> bool:
    return _scheduler_active


def record_sweep(at: datetime | None) -> None:
    global _last_sweep_at
    _last_sweep_at = at


def last_sweep_at() -> datetime | None:
    return _last_sweep_at
