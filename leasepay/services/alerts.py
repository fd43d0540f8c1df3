"""Alert service helpers."""
import logging
from typing import Any

from sqlalchemy.orm import Session

from leasepay.models.alert import Alert
from leasepay.utils.audit import sanitize_payload_for_audit

logger = logging.getLogger(__name__)


def create_alert(
    db: Session,
    *,
    alert_type: str,
    message: str,
    payload: dict[str, Any],
    commit: bool = True,
) -> Alert:
    """Persist an operational alert.

    With ``commit=False`` the alert joins the caller's unit of work and is
    discarded if that work rolls back.
    """

    alert = Alert(type=alert_type, message=message[:255], payload_json=sanitize_payload_for_audit(payload))
    db.add(alert)
    if commit:
        db.commit()
        db.refresh(alert)
    else:
        db.flush()
    logger.warning("Alert created", extra={"type": alert_type, "payload": sanitize_payload_for_audit(payload)})
    return alert
