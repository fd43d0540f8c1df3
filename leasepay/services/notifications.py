"""In-app notifications for payment outcomes."""
from __future__ import annotations

import logging
from typing import Any, Protocol

from sqlalchemy.orm import Session

from leasepay.models.notification import Notification

logger = logging.getLogger(__name__)

PAYMENT_RECEIVED = "payment_received"
PAYMENT_FAILED = "payment_failed"
ADMIN_PAYMENT_RECEIVED = "admin_payment_received"
ADMIN_PAYMENT_FAILED = "admin_payment_failed"


class NotificationDispatcher(Protocol):
    def notify(self, user_id: int, kind: str, payload: dict[str, Any]) -> None:
        """Deliver a notification; callers do not wait for or inspect the result."""


class DbNotificationDispatcher:
    """Writes notifications to the ``notifications`` table.

    A live push channel (websocket fan-out) can wrap this dispatcher; the
    reconciliation path only ever sees the :class:`NotificationDispatcher`
    interface.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def notify(self, user_id: int, kind: str, payload: dict[str, Any]) -> None:
        notification = Notification(
            user_id=user_id,
            tenant_id=payload.get("tenant_id"),
            kind=kind,
            title=payload.get("title") or kind.replace("_", " ").title(),
            message=payload.get("message") or "",
            priority=payload.get("priority", "normal"),
            action_url=payload.get("action_url"),
            payload_json={k: v for k, v in payload.items() if k not in {"title", "message"}},
        )
        self.db.add(notification)
        self.db.commit()
        logger.info("Notification stored", extra={"user_id": user_id, "kind": kind})


__all__ = [
    "ADMIN_PAYMENT_FAILED",
    "ADMIN_PAYMENT_RECEIVED",
    "DbNotificationDispatcher",
    "NotificationDispatcher",
    "PAYMENT_FAILED",
    "PAYMENT_RECEIVED",
]
