"""Apply a decoded gateway callback to the payment ledger exactly once."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from leasepay.config import AmountMismatchPolicy, get_settings
from leasepay.models import (
    Payment,
    PaymentProviderTransaction,
    PaymentStatus,
    Property,
    ProviderTransactionStatus,
    Tenant,
)
from leasepay.schemas.mpesa import CallbackFailure, CallbackSuccess, ParsedCallback
from leasepay.services import notifications as notification_kinds
from leasepay.services.alerts import create_alert
from leasepay.services.notifications import NotificationDispatcher
from leasepay.services.receipts import ReceiptGenerator
from leasepay.utils.audit import log_audit
from leasepay.utils.time import utcnow

logger = logging.getLogger(__name__)

RESULT_CODE_REASONS: dict[int, str] = {
    1: "Insufficient M-Pesa balance",
    1001: "Subscriber is busy with another transaction",
    1019: "Transaction expired before it was completed",
    1025: "Unable to send the payment prompt",
    1032: "Payment request cancelled by user",
    1037: "Phone could not be reached",
    2001: "Wrong M-Pesa PIN entered",
    9999: "Unable to send the payment prompt",
}


class LedgerError(RuntimeError):
    """Raised when the tenant ledger cannot absorb a completed payment."""


class ReconciliationSkipped(Exception):
    """The transaction was settled by someone else; nothing to apply."""


def _current_settings():
    return get_settings()


def failure_reason_for(result_code: int, result_desc: str | None) -> str:
    reason = RESULT_CODE_REASONS.get(result_code)
    if reason:
        return reason
    return (result_desc or f"Payment failed with result code {result_code}")[:255]


def _claim_transaction(db: Session, tx: PaymentProviderTransaction, target: ProviderTransactionStatus, values: dict[str, Any]) -> None:
    """Move ``tx`` out of ``pending`` only if nobody else already did."""

    result = db.execute(
        update(PaymentProviderTransaction)
        .where(
            PaymentProviderTransaction.id == tx.id,
            PaymentProviderTransaction.status == ProviderTransactionStatus.PENDING,
        )
        .values(status=target, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ReconciliationSkipped(tx.id)


def _debit_tenant_balance(db: Session, tenant_id: int, amount: Decimal) -> None:
    """Reduce the amount owed by ``tenant_id`` in a single UPDATE statement."""

    result = db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(balance=Tenant.balance - amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise LedgerError(f"Tenant {tenant_id} could not be debited")


def _ledger_amount(
    db: Session,
    tx: PaymentProviderTransaction,
    payment: Payment,
    confirmed: Decimal | None,
) -> tuple[Decimal, str | None]:
    """Pick the amount to apply and describe any discrepancy for review."""

    if confirmed is None or confirmed == payment.amount:
        return payment.amount, None

    policy = _current_settings().AMOUNT_MISMATCH_POLICY
    review_reason = f"Confirmed amount {confirmed} differs from requested {payment.amount}"
    create_alert(
        db,
        alert_type="PAYMENT_AMOUNT_MISMATCH",
        message=review_reason,
        payload={
            "payment_id": payment.id,
            "transaction_id": tx.id,
            "requested": str(payment.amount),
            "confirmed": str(confirmed),
            "policy": policy.value,
        },
        commit=False,
    )
    if policy == AmountMismatchPolicy.CONFIRMED and confirmed > 0:
        return confirmed, review_reason
    return payment.amount, review_reason


def _lock_pair(db: Session, transaction_id: int) -> tuple[PaymentProviderTransaction, Payment]:
    tx = db.scalars(
        select(PaymentProviderTransaction)
        .where(PaymentProviderTransaction.id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).one()
    payment = db.scalars(
        select(Payment)
        .where(Payment.id == tx.payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).one()
    return tx, payment


def _apply_success(db: Session, tx: PaymentProviderTransaction, payment: Payment, callback: CallbackSuccess, raw: dict) -> Decimal:
    db.execute(select(Tenant.id).where(Tenant.id == payment.tenant_id).with_for_update())
    applied, review_reason = _ledger_amount(db, tx, payment, callback.amount)
    _claim_transaction(
        db,
        tx,
        ProviderTransactionStatus.SUCCESS,
        {
            "provider_receipt_number": callback.receipt_number,
            "confirmed_amount": callback.amount,
            "payer_reference": callback.payer_reference,
            "provider_timestamp": callback.provider_timestamp,
            "result_code": "0",
            "result_desc": "Success",
            "raw_callback": raw,
            "completed_at": utcnow(),
            "needs_review": review_reason is not None,
            "review_reason": review_reason,
        },
    )
    payment.status = PaymentStatus.COMPLETED
    payment.failure_reason = None
    db.flush()
    _debit_tenant_balance(db, payment.tenant_id, applied)
    log_audit(
        db,
        actor="mpesa",
        action="PAYMENT_COMPLETED",
        entity="Payment",
        entity_id=payment.id,
        data={
            "transaction_id": tx.id,
            "amount": str(applied),
            "provider_receipt_number": callback.receipt_number,
            "payer_reference": callback.payer_reference,
            "needs_review": review_reason is not None,
        },
    )
    return applied


def _apply_failure(db: Session, tx: PaymentProviderTransaction, payment: Payment, callback: CallbackFailure, raw: dict) -> str:
    reason = failure_reason_for(callback.reason_code, callback.reason_text)
    _claim_transaction(
        db,
        tx,
        ProviderTransactionStatus.FAILED,
        {
            "result_code": str(callback.reason_code),
            "result_desc": (callback.reason_text or "")[:255] or None,
            "raw_callback": raw,
            "completed_at": utcnow(),
        },
    )
    payment.status = PaymentStatus.FAILED
    payment.failure_reason = reason
    log_audit(
        db,
        actor="mpesa",
        action="PAYMENT_FAILED",
        entity="Payment",
        entity_id=payment.id,
        data={"transaction_id": tx.id, "result_code": callback.reason_code, "reason": reason},
    )
    return reason


def reconcile(
    db: Session,
    transaction_id: int,
    callback: ParsedCallback,
    *,
    raw: dict,
    receipts: ReceiptGenerator | None = None,
    notifier: NotificationDispatcher | None = None,
) -> bool:
    """Apply ``callback`` to the transaction, its payment and the tenant ledger.

    The status changes, the ledger debit and the audit entry commit together
    or not at all. Returns ``False`` when the transaction was already settled
    by a concurrent or earlier delivery. Receipt and notification delivery run
    after the commit and never undo it.
    """

    try:
        tx, payment = _lock_pair(db, transaction_id)
        if tx.status != ProviderTransactionStatus.PENDING:
            db.rollback()
            logger.info(
                "Transaction already settled",
                extra={"transaction_id": transaction_id, "status": tx.status.value},
            )
            return False
        if isinstance(callback, CallbackSuccess):
            _apply_success(db, tx, payment, callback, raw)
        else:
            _apply_failure(db, tx, payment, callback, raw)
        db.commit()
    except ReconciliationSkipped:
        db.rollback()
        logger.info("Transaction claimed concurrently", extra={"transaction_id": transaction_id})
        return False
    except Exception:
        db.rollback()
        logger.exception("Reconciliation failed; transaction left pending", extra={"transaction_id": transaction_id})
        raise

    logger.info(
        "Payment reconciled",
        extra={
            "payment_id": payment.id,
            "transaction_id": tx.id,
            "status": payment.status.value,
            "needs_review": tx.needs_review,
        },
    )
    _after_commit(db, payment, tx, receipts=receipts, notifier=notifier)
    return True


def _after_commit(
    db: Session,
    payment: Payment,
    tx: PaymentProviderTransaction,
    *,
    receipts: ReceiptGenerator | None,
    notifier: NotificationDispatcher | None,
) -> None:
    """Best-effort side effects of a committed outcome."""

    payment_id = payment.id
    try:
        db.refresh(payment)
        db.refresh(tx)
    except Exception:
        db.rollback()
        # Missing receipts are reissued by the receipt backfill job.
        logger.exception("Could not reload reconciled payment", extra={"payment_id": payment_id})
        return

    succeeded = payment.status == PaymentStatus.COMPLETED
    if succeeded and receipts is not None:
        try:
            receipts.generate(payment)
        except Exception:
            db.rollback()
            logger.exception("Receipt generation failed", extra={"payment_id": payment.id})

    if notifier is None:
        return
    try:
        tenant = db.get(Tenant, payment.tenant_id)
        prop = db.get(Property, tenant.property_id) if tenant is not None else None
    except Exception:
        db.rollback()
        logger.exception("Could not load notification recipients", extra={"payment_id": payment.id})
        return

    currency = _current_settings().CURRENCY
    amount_label = f"{currency} {payment.amount:,.2f}"
    base_payload = {
        "payment_id": payment.id,
        "tenant_id": payment.tenant_id,
        "amount": str(payment.amount),
        "provider_receipt_number": tx.provider_receipt_number,
    }
    recipients: list[tuple[int, str, dict[str, Any]]] = []
    if tenant is not None and tenant.user_id is not None:
        if succeeded:
            recipients.append((
                tenant.user_id,
                notification_kinds.PAYMENT_RECEIVED,
                {
                    "title": "Payment received",
                    "message": f"Your payment of {amount_label} was received.",
                    "action_url": f"/payments/{payment.id}",
                },
            ))
        else:
            recipients.append((
                tenant.user_id,
                notification_kinds.PAYMENT_FAILED,
                {
                    "title": "Payment failed",
                    "message": f"Your payment of {amount_label} failed: {payment.failure_reason}.",
                    "priority": "high",
                    "action_url": f"/payments/{payment.id}",
                },
            ))
    if prop is not None and prop.admin_user_id is not None:
        tenant_name = tenant.name if tenant is not None else f"tenant {payment.tenant_id}"
        if succeeded:
            recipients.append((
                prop.admin_user_id,
                notification_kinds.ADMIN_PAYMENT_RECEIVED,
                {
                    "title": "Tenant payment received",
                    "message": f"{tenant_name} paid {amount_label}.",
                    "priority": "high" if tx.needs_review else "normal",
                },
            ))
        else:
            recipients.append((
                prop.admin_user_id,
                notification_kinds.ADMIN_PAYMENT_FAILED,
                {
                    "title": "Tenant payment failed",
                    "message": f"Payment of {amount_label} by {tenant_name} failed: {payment.failure_reason}.",
                },
            ))

    for user_id, kind, extra in recipients:
        try:
            notifier.notify(user_id, kind, {**base_payload, **extra})
        except Exception:
            db.rollback()
            logger.exception(
                "Notification dispatch failed",
                extra={"payment_id": payment.id, "user_id": user_id, "kind": kind},
            )


__all__ = [
    "LedgerError",
    "RESULT_CODE_REASONS",
    "failure_reason_for",
    "reconcile",
]
