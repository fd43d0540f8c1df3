"""Background jobs: stale gateway attempts and missing receipts."""
from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from leasepay.config import get_settings
from leasepay.core.runtime_state import record_sweep
from leasepay.db import session_scope
from leasepay.models import (
    Payment,
    PaymentProviderTransaction,
    PaymentReceipt,
    PaymentStatus,
    ProviderTransactionStatus,
)
from leasepay.services.alerts import create_alert
from leasepay.services.receipts import DbReceiptGenerator
from leasepay.utils.audit import log_audit
from leasepay.utils.time import utcnow

logger = logging.getLogger(__name__)

STALE_INITIATED_REASON = "Push request was never confirmed as sent"


def _current_settings():
    return get_settings()


def _fail_stale_initiated(db: Session, cutoff) -> int:
    """Fail attempts that never got past the gateway call."""

    stale = db.scalars(
        select(PaymentProviderTransaction).where(
            PaymentProviderTransaction.status == ProviderTransactionStatus.INITIATED,
            PaymentProviderTransaction.created_at <= cutoff,
        )
    ).all()
    failed = 0
    now = utcnow()
    for tx in stale:
        claimed = db.execute(
            update(PaymentProviderTransaction)
            .where(
                PaymentProviderTransaction.id == tx.id,
                PaymentProviderTransaction.status == ProviderTransactionStatus.INITIATED,
            )
            .values(
                status=ProviderTransactionStatus.FAILED,
                result_desc=STALE_INITIATED_REASON,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            continue
        db.execute(
            update(Payment)
            .where(Payment.id == tx.payment_id, Payment.status == PaymentStatus.PENDING)
            .values(status=PaymentStatus.FAILED, failure_reason=STALE_INITIATED_REASON, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        log_audit(
            db,
            actor="system",
            action="PAYMENT_EXPIRED",
            entity="Payment",
            entity_id=tx.payment_id,
            data={"transaction_id": tx.id},
        )
        failed += 1
    return failed


def _flag_stale_pending(db: Session, cutoff) -> int:
    """Flag pushes still awaiting a callback; the outcome is unknown so nothing is failed."""

    stale = db.scalars(
        select(PaymentProviderTransaction).where(
            PaymentProviderTransaction.status == ProviderTransactionStatus.PENDING,
            PaymentProviderTransaction.needs_review.is_(False),
            PaymentProviderTransaction.updated_at <= cutoff,
        )
    ).all()
    for tx in stale:
        tx.needs_review = True
        tx.review_reason = "No callback received from the gateway"
        create_alert(
            db,
            alert_type="PAYMENT_CALLBACK_OVERDUE",
            message="No M-Pesa callback received for a pending payment.",
            payload={
                "payment_id": tx.payment_id,
                "transaction_id": tx.id,
                "checkout_request_id": tx.checkout_request_id,
            },
            commit=False,
        )
    return len(stale)


def sweep_stale_transactions() -> dict[str, int]:
    """Run one pass of the stale-transaction policy."""

    settings = _current_settings()
    now = utcnow()
    with session_scope() as db:
        failed = _fail_stale_initiated(db, now - timedelta(minutes=settings.STALE_INITIATED_MINUTES))
        flagged = _flag_stale_pending(db, now - timedelta(minutes=settings.STALE_PENDING_MINUTES))
        db.commit()
    record_sweep(now)
    if failed or flagged:
        logger.info("Stale payment sweep", extra={"failed_initiated": failed, "flagged_pending": flagged})
    return {"failed_initiated": failed, "flagged_pending": flagged}


def backfill_missing_receipts() -> int:
    """Issue receipts for completed payments whose post-commit receipt step failed."""

    issued = 0
    with session_scope() as db:
        missing = db.scalars(
            select(Payment)
            .outerjoin(PaymentReceipt, PaymentReceipt.payment_id == Payment.id)
            .where(Payment.status == PaymentStatus.COMPLETED, PaymentReceipt.id.is_(None))
            .order_by(Payment.id)
        ).all()
        generator = DbReceiptGenerator(db)
        for payment in missing:
            payment_id = payment.id
            try:
                generator.generate(payment)
            except Exception:
                db.rollback()
                logger.exception("Receipt backfill failed", extra={"payment_id": payment_id})
                continue
            issued += 1
    if issued:
        logger.info("Missing receipts issued", extra={"count": issued})
    return issued


__all__ = ["backfill_missing_receipts", "sweep_stale_transactions"]
