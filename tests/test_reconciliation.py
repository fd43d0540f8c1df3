import os
import threading
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from leasepay.config import AmountMismatchPolicy, get_settings
from leasepay.db import get_sessionmaker
from leasepay.models import (
    Alert,
    AuditLog,
    CallbackOutcome,
    GatewayCallbackEvent,
    Notification,
    Payment,
    PaymentProviderTransaction,
    PaymentReceipt,
    PaymentStatus,
    ProviderTransactionStatus,
    Tenant,
)
from leasepay.services import mpesa_callbacks, reconciliation
from leasepay.services.notifications import DbNotificationDispatcher
from leasepay.services.payments import initiate_payment
from leasepay.services.receipts import DbReceiptGenerator

WEBHOOK_TOKEN = os.environ["MPESA_WEBHOOK_TOKEN"]


def _count(db_session, model) -> int:
    return db_session.scalar(select(func.count()).select_from(model))


@pytest.fixture
def pending_payment(db_session, gateway, make_tenant):
    """A tenant owing 25000 with one pending 500 push (checkout id ``ws_1``)."""

    t = make_tenant(balance="25000.00")
    view = initiate_payment(
        db_session,
        tenant_id=t.tenant_id,
        amount=Decimal("500"),
        payment_method_id=t.method_id,
        client_factory=gateway.factory,
    )
    return t, view


def _receive(session, payload):
    return mpesa_callbacks.receive_callback(
        session,
        token=WEBHOOK_TOKEN,
        payload=payload,
        receipts=DbReceiptGenerator(session),
        notifier=DbNotificationDispatcher(session),
    )


def test_ledger_failure_rolls_back_everything(db_session, pending_payment, stk_callback, monkeypatch):
    t, view = pending_payment

    def _boom(db, tenant_id, amount):
        raise reconciliation.LedgerError("tenant row vanished")

    monkeypatch.setattr(reconciliation, "_debit_tenant_balance", _boom)

    ack = _receive(db_session, stk_callback("ws_1"))

    assert ack == {"ResultCode": 0, "ResultDesc": "Accepted"}
    db_session.expire_all()
    tx = db_session.get(PaymentProviderTransaction, view.transaction_id)
    assert tx.status == ProviderTransactionStatus.PENDING
    assert tx.provider_receipt_number is None
    assert db_session.get(Payment, view.payment_id).status == PaymentStatus.PENDING
    assert db_session.get(Tenant, t.tenant_id).balance == Decimal("25000.00")
    assert db_session.scalars(select(AuditLog).where(AuditLog.action == "PAYMENT_COMPLETED")).first() is None
    assert _count(db_session, PaymentReceipt) == 0
    assert _count(db_session, Notification) == 0
    assert db_session.scalars(select(Alert).where(Alert.type == "CALLBACK_PROCESSING_FAILED")).one()
    assert db_session.scalars(select(GatewayCallbackEvent)).one().outcome == CallbackOutcome.ERROR

    # A redelivery after the fault is fixed is applied normally.
    monkeypatch.undo()
    _receive(db_session, stk_callback("ws_1"))
    db_session.expire_all()
    assert db_session.get(Payment, view.payment_id).status == PaymentStatus.COMPLETED
    assert db_session.get(Tenant, t.tenant_id).balance == Decimal("24500.00")


def test_amount_mismatch_applies_requested_amount_by_default(db_session, pending_payment, stk_callback):
    t, view = pending_payment
    assert get_settings().AMOUNT_MISMATCH_POLICY == AmountMismatchPolicy.REQUESTED

    _receive(db_session, stk_callback("ws_1", amount=450))

    db_session.expire_all()
    assert db_session.get(Tenant, t.tenant_id).balance == Decimal("24500.00")
    tx = db_session.get(PaymentProviderTransaction, view.transaction_id)
    assert tx.status == ProviderTransactionStatus.SUCCESS
    assert tx.confirmed_amount == Decimal("450.00")
    assert tx.needs_review is True
    assert "450" in tx.review_reason
    alert = db_session.scalars(select(Alert).where(Alert.type == "PAYMENT_AMOUNT_MISMATCH")).one()
    assert alert.payload_json["policy"] == "requested"


def test_amount_mismatch_confirmed_policy_uses_provider_amount(
    db_session, pending_payment, stk_callback, monkeypatch
):
    t, view = pending_payment
    monkeypatch.setattr(get_settings(), "AMOUNT_MISMATCH_POLICY", AmountMismatchPolicy.CONFIRMED)

    _receive(db_session, stk_callback("ws_1", amount=450))

    db_session.expire_all()
    assert db_session.get(Tenant, t.tenant_id).balance == Decimal("24550.00")
    assert db_session.get(PaymentProviderTransaction, view.transaction_id).needs_review is True


def test_stale_snapshot_cannot_apply_twice(db_session, pending_payment, stk_callback, monkeypatch):
    """Two workers read the same pending row; only the first write wins."""

    t, view = pending_payment
    parsed = mpesa_callbacks.parse_stk_callback(stk_callback("ws_1"))

    stale_session = get_sessionmaker()()
    try:
        stale_tx = stale_session.get(PaymentProviderTransaction, view.transaction_id)
        stale_payment = stale_session.get(Payment, view.payment_id)
        assert stale_tx.status == ProviderTransactionStatus.PENDING

        assert reconciliation.reconcile(db_session, view.transaction_id, parsed, raw={}) is True

        monkeypatch.setattr(reconciliation, "_lock_pair", lambda db, tid: (stale_tx, stale_payment))
        assert reconciliation.reconcile(stale_session, view.transaction_id, parsed, raw={}) is False
    finally:
        stale_session.close()

    db_session.expire_all()
    assert db_session.get(Tenant, t.tenant_id).balance == Decimal("24500.00")
    audits = db_session.scalars(select(AuditLog).where(AuditLog.action == "PAYMENT_COMPLETED")).all()
    assert len(audits) == 1


def test_concurrent_duplicate_callbacks_apply_once(db_session, pending_payment, stk_callback):
    t, view = pending_payment
    payload = stk_callback("ws_1")
    barrier = threading.Barrier(2)
    errors: list[BaseException] = []

    def _worker() -> None:
        session = get_sessionmaker()()
        try:
            barrier.wait()
            _receive(session, payload)
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=_worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    db_session.expire_all()
    assert db_session.get(Tenant, t.tenant_id).balance == Decimal("24500.00")
    assert db_session.get(Payment, view.payment_id).status == PaymentStatus.COMPLETED
    assert _count(db_session, PaymentReceipt) == 1
    assert _count(db_session, Notification) == 2
    outcomes = sorted(e.outcome.value for e in db_session.scalars(select(GatewayCallbackEvent)))
    assert outcomes == ["duplicate", "processed"]


def test_already_terminal_transaction_is_skipped(db_session, pending_payment, stk_callback):
    _, view = pending_payment
    parsed = mpesa_callbacks.parse_stk_callback(stk_callback("ws_1", result_code=1))

    assert reconciliation.reconcile(db_session, view.transaction_id, parsed, raw={}) is True
    assert reconciliation.reconcile(db_session, view.transaction_id, parsed, raw={}) is False

    db_session.expire_all()
    payment = db_session.get(Payment, view.payment_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Insufficient M-Pesa balance"


def test_parse_stk_callback_success_fields(stk_callback):
    parsed = mpesa_callbacks.parse_stk_callback(
        stk_callback("ws_9", amount="1.00", receipt="QJK7TY", phone=254712345678, transaction_date=20261019143015)
    )

    assert parsed.outcome == "success"
    assert parsed.amount == Decimal("1.00")
    assert parsed.receipt_number == "QJK7TY"
    assert parsed.payer_reference == "254712345678"
    # 14:30:15 in Nairobi is 11:30:15 UTC.
    assert parsed.provider_timestamp.hour == 11


def test_parse_stk_callback_rejects_garbage():
    with pytest.raises(mpesa_callbacks.CallbackPayloadError):
        mpesa_callbacks.parse_stk_callback({"Body": {"stkCallback": {"CheckoutRequestID": ""}}})


def test_failure_reason_mapping():
    assert reconciliation.failure_reason_for(2001, "whatever") == "Wrong M-Pesa PIN entered"
    assert reconciliation.failure_reason_for(4242, "Custom provider text") == "Custom provider text"
    assert reconciliation.failure_reason_for(4242, None) == "Payment failed with result code 4242"


def test_confirmed_policy_never_applies_non_positive_amount(
    db_session, pending_payment, stk_callback, monkeypatch
):
    t, view = pending_payment
    monkeypatch.setattr(get_settings(), "AMOUNT_MISMATCH_POLICY", AmountMismatchPolicy.CONFIRMED)

    _receive(db_session, stk_callback("ws_1", amount=0))

    db_session.expire_all()
    assert db_session.get(Tenant, t.tenant_id).balance == Decimal("24500.00")
    tx = db_session.get(PaymentProviderTransaction, view.transaction_id)
    assert tx.status == ProviderTransactionStatus.SUCCESS
    assert tx.needs_review is True
    assert db_session.scalars(select(Alert).where(Alert.type == "PAYMENT_AMOUNT_MISMATCH")).one()


def test_reload_failure_after_commit_still_reports_processed(
    db_session, pending_payment, stk_callback, monkeypatch
):
    t, view = pending_payment
    real_refresh = db_session.refresh

    def _refresh(instance, *args, **kwargs):
        if isinstance(instance, Payment):
            raise RuntimeError("connection dropped")
        return real_refresh(instance, *args, **kwargs)

    monkeypatch.setattr(db_session, "refresh", _refresh)

    ack = _receive(db_session, stk_callback("ws_1"))

    assert ack == {"ResultCode": 0, "ResultDesc": "Accepted"}
    monkeypatch.undo()
    db_session.expire_all()
    assert db_session.get(Payment, view.payment_id).status == PaymentStatus.COMPLETED
    assert db_session.get(Tenant, t.tenant_id).balance == Decimal("24500.00")
    assert db_session.scalars(select(GatewayCallbackEvent)).one().outcome == CallbackOutcome.PROCESSED
    assert db_session.scalars(select(Alert).where(Alert.type == "CALLBACK_PROCESSING_FAILED")).first() is None
