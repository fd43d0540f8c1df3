"""Helpers for masking sensitive values before logging or persisting them."""
from __future__ import annotations

import hashlib
from typing import Any


def mask_phone(value: Any) -> str:
    """Keep only the last three digits of a phone number."""

    text = "" if value is None else str(value)
    digits = "".join(ch for ch in text if ch.isdigit())
    if not digits:
        return "***"
    tail = digits[-3:] if len(digits) >= 3 else digits
    return f"***{tail}"


def mask_reference(value: Any) -> str:
    text = "" if value is None else str(value)
    if len(text) <= 6:
        return "***"
    return f"***{text[-4:]}"


def fingerprint(secret: str | None) -> str | None:
    """Deterministic marker for a secret, safe to log or expose on /health."""

    if not secret:
        return None
    digest = hashlib.sha256(secret.encode()).hexdigest()[:8]
    return f"sha256:{digest}"


__all__ = ["mask_phone", "mask_reference", "fingerprint"]
