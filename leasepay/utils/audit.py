"""Audit logging helper utilities."""
from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from leasepay.models.audit import AuditLog
from leasepay.utils.masking import mask_phone, mask_reference
from leasepay.utils.time import utcnow


PHONE_KEYS = {"phone", "msisdn", "payer_reference", "PhoneNumber"}
REFERENCE_KEYS = {"provider_receipt_number", "MpesaReceiptNumber", "token", "card_token"}
SECRET_KEYS = {"consumer_key", "consumer_secret", "passkey", "webhook_token", "password", "Password"}

SENSITIVE_KEYS = PHONE_KEYS | REFERENCE_KEYS | SECRET_KEYS


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key in PHONE_KEYS:
        return mask_phone(value)

    if key in REFERENCE_KEYS:
        return mask_reference(value)

    if key in SECRET_KEYS:
        return "***"

    return value


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with obvious PII fields masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            masked_value = _mask_value(key, value) if key in SENSITIVE_KEYS else value
            sanitized[key] = sanitize_payload_for_audit(masked_value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_payload_for_audit(item) for item in data]

    return data


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> None:
    """Stage an audit entry in the caller's unit of work (no commit)."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else 0,
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )
