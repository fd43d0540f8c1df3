"""Tenant payment initiation and status services."""
from __future__ import annotations

import logging
from decimal import Decimal
from uuid import uuid4

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leasepay.models import (
    Payment,
    PaymentMethodType,
    PaymentProviderTransaction,
    PaymentReceipt,
    PaymentStatus,
    PaymentType,
    Property,
    ProviderTransactionStatus,
    Tenant,
    TenantPaymentMethod,
)
from leasepay.schemas.gateway import GatewayPushResult, ResolvedGatewaySettings
from leasepay.schemas.payment import PaymentInitiationRead, PaymentStatusRead
from leasepay.services.alerts import create_alert
from leasepay.services.gateway_settings import resolve_gateway_settings
from leasepay.services.idempotency import get_existing_by_key, normalize_key
from leasepay.services.mpesa_client import (
    GatewayClientFactory,
    GatewayError,
    GatewayTransportError,
    InvalidPhoneNumber,
    build_callback_url,
    normalize_msisdn,
)
from leasepay.services.payment_methods import _get_active_tenant
from leasepay.utils.audit import log_audit
from leasepay.utils.errors import error_response
from leasepay.utils.masking import mask_phone
from leasepay.utils.time import utcnow

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def _to_decimal(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def _validation_error(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=error_response(code, message),
    )


def _validate_amount(raw) -> Decimal:
    amount = _to_decimal(raw)
    if not amount.is_finite() or amount <= 0:
        raise _validation_error("INVALID_AMOUNT", "Amount must be greater than zero.")
    if amount != amount.quantize(CENTS):
        raise _validation_error("INVALID_AMOUNT", "Amount cannot have more than two decimal places.")
    if amount != amount.to_integral_value():
        # STK push charges whole shillings; a fractional request could never reconcile.
        raise _validation_error("INVALID_AMOUNT", "M-Pesa payments must be whole amounts.")
    return amount.quantize(CENTS)


def _get_mobile_money_method(db: Session, tenant: Tenant, payment_method_id: int) -> tuple[TenantPaymentMethod, str]:
    method = db.scalars(
        select(TenantPaymentMethod).where(
            TenantPaymentMethod.id == payment_method_id,
            TenantPaymentMethod.tenant_id == tenant.id,
            TenantPaymentMethod.is_active.is_(True),
        )
    ).first()
    if method is None:
        raise _validation_error("INVALID_PAYMENT_METHOD", "Invalid payment method.")
    if method.type != PaymentMethodType.MPESA:
        raise _validation_error(
            "PAYMENT_METHOD_NOT_SUPPORTED",
            "Only mobile-money payment methods can be charged through this flow.",
        )
    try:
        phone = normalize_msisdn(method.token)
    except InvalidPhoneNumber as exc:
        raise _validation_error("INVALID_PHONE_NUMBER", str(exc)) from exc
    return method, phone


def _resolve_settings_or_raise(db: Session, tenant: Tenant) -> ResolvedGatewaySettings:
    prop = db.get(Property, tenant.property_id)
    settings = resolve_gateway_settings(
        db,
        property_id=tenant.property_id,
        organization_id=prop.organization_id if prop is not None else None,
    )
    missing = settings.missing_fields()
    if not settings.webhook_secret:
        missing.append("webhook_secret")
    if missing:
        logger.warning(
            "Gateway settings incomplete for property",
            extra={"property_id": tenant.property_id, "missing": missing, "source": settings.source},
        )
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=error_response(
                "GATEWAY_NOT_CONFIGURED",
                "Mobile-money gateway is not configured for this property.",
                {"missing": missing},
            ),
        )
    return settings


def _latest_transaction(db: Session, payment_id: int) -> PaymentProviderTransaction | None:
    return db.scalars(
        select(PaymentProviderTransaction)
        .where(PaymentProviderTransaction.payment_id == payment_id)
        .order_by(PaymentProviderTransaction.id.desc())
        .limit(1)
    ).first()


def _initiation_view(payment: Payment, tx: PaymentProviderTransaction | None, customer_message: str | None = None):
    return PaymentInitiationRead(
        payment_id=payment.id,
        transaction_id=tx.id if tx is not None else 0,
        amount=payment.amount,
        status=payment.status,
        checkout_request_id=tx.checkout_request_id if tx is not None else None,
        customer_message=customer_message,
    )


def _mark_initiation_failed(
    db: Session,
    payment: Payment,
    tx: PaymentProviderTransaction,
    *,
    reason: str,
    code: str,
    push_result: GatewayPushResult | None = None,
) -> None:
    """Fail the payment and its provider transaction together."""

    now = utcnow()
    tx.status = ProviderTransactionStatus.FAILED
    tx.result_code = push_result.response_code if push_result is not None else code
    tx.result_desc = reason[:255]
    tx.completed_at = now
    if push_result is not None:
        tx.raw_response = push_result.raw
    payment.status = PaymentStatus.FAILED
    payment.failure_reason = reason[:255]
    log_audit(
        db,
        actor="system",
        action="PAYMENT_INITIATION_FAILED",
        entity="Payment",
        entity_id=payment.id,
        data={"transaction_id": tx.id, "code": code, "reason": reason},
    )
    db.commit()
    logger.warning(
        "Payment initiation failed",
        extra={"payment_id": payment.id, "transaction_id": tx.id, "code": code},
    )


def initiate_payment(
    db: Session,
    *,
    tenant_id: int,
    amount,
    payment_method_id: int,
    client_factory: GatewayClientFactory,
    payment_type: PaymentType = PaymentType.RENT,
    idempotency_key: str | None = None,
) -> PaymentInitiationRead:
    """Create a pending payment and ask the gateway to push a prompt to the payer.

    Validation failures raise before any row exists. Once the rows exist a
    gateway failure marks both the payment and its transaction ``failed`` and
    is reported to the caller as a 502.
    """

    key = normalize_key(idempotency_key, scope=f"tenant:{tenant_id}")
    existing = get_existing_by_key(db, Payment, key)
    if existing is not None:
        logger.info("Reusing existing payment", extra={"payment_id": existing.id, "idem": key})
        return _initiation_view(existing, _latest_transaction(db, existing.id))

    value = _validate_amount(amount)
    tenant = _get_active_tenant(db, tenant_id)
    _method, phone = _get_mobile_money_method(db, tenant, payment_method_id)
    gateway_settings = _resolve_settings_or_raise(db, tenant)

    payment = Payment(
        tenant_id=tenant.id,
        amount=value,
        method=PaymentMethodType.MPESA,
        type=payment_type,
        status=PaymentStatus.PENDING,
        idempotency_key=key,
    )
    try:
        db.add(payment)
        db.flush()
        tx = PaymentProviderTransaction(
            payment_id=payment.id,
            provider="mpesa",
            status=ProviderTransactionStatus.INITIATED,
            phone=phone,
            amount=value,
            merchant_request_id=uuid4().hex,
        )
        db.add(tx)
        db.flush()
        log_audit(
            db,
            actor=f"tenant:{tenant.id}",
            action="PAYMENT_INITIATED",
            entity="Payment",
            entity_id=payment.id,
            data={"amount": str(value), "phone": phone, "merchant_request_id": tx.merchant_request_id},
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_existing_by_key(db, Payment, key)
        if existing is not None:
            logger.info("Payment idempotent reuse after race", extra={"payment_id": existing.id, "idem": key})
            return _initiation_view(existing, _latest_transaction(db, existing.id))
        raise

    logger.info(
        "STK push requested",
        extra={
            "payment_id": payment.id,
            "transaction_id": tx.id,
            "amount": str(value),
            "phone": mask_phone(phone),
            "settings_source": gateway_settings.source,
        },
    )

    client = client_factory(gateway_settings)
    try:
        result = client.push(
            amount=value,
            payer_reference=phone,
            account_reference=f"{gateway_settings.account_reference_prefix}-{tenant.id}-{payment.id}",
            callback_url=build_callback_url(gateway_settings.callback_base_url or "", gateway_settings.webhook_secret),
            description=f"Rent {payment.id}",
        )
    except GatewayError as exc:
        _mark_initiation_failed(db, payment, tx, reason=str(exc) or exc.code, code=exc.code)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=error_response(
                exc.code,
                "The mobile-money gateway did not accept the payment request.",
                {"payment_id": payment.id, "reason": str(exc)},
            ),
        ) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected gateway client failure", extra={"payment_id": payment.id})
        _mark_initiation_failed(db, payment, tx, reason=f"Gateway call failed: {exc}", code=GatewayTransportError.code)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=error_response(
                GatewayTransportError.code,
                "The mobile-money gateway did not accept the payment request.",
                {"payment_id": payment.id, "reason": "Gateway call failed"},
            ),
        ) from exc

    if not result.accepted:
        reason = result.provider_message or "Push request not accepted"
        _mark_initiation_failed(db, payment, tx, reason=reason, code="GATEWAY_REJECTED", push_result=result)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=error_response(
                "GATEWAY_REJECTED",
                "The mobile-money gateway did not accept the payment request.",
                {"payment_id": payment.id, "reason": reason},
            ),
        )

    tx.status = ProviderTransactionStatus.PENDING
    tx.checkout_request_id = result.provider_correlation_id
    tx.result_code = result.response_code
    tx.result_desc = (result.customer_message or result.provider_message or "")[:255] or None
    tx.raw_response = result.raw
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # The provider handed back a checkout id we already hold.
        db.refresh(payment)
        db.refresh(tx)
        create_alert(
            db,
            alert_type="DUPLICATE_CHECKOUT_REQUEST_ID",
            message="Gateway returned a checkout request id that is already in use.",
            payload={"payment_id": payment.id, "checkout_request_id": result.provider_correlation_id},
        )
        _mark_initiation_failed(
            db, payment, tx, reason="Duplicate checkout request id", code="DUPLICATE_CORRELATION_ID"
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=error_response(
                "DUPLICATE_CORRELATION_ID",
                "The mobile-money gateway returned an unusable correlation id.",
                {"payment_id": payment.id},
            ),
        )

    logger.info(
        "STK push accepted",
        extra={
            "payment_id": payment.id,
            "transaction_id": tx.id,
            "checkout_request_id": tx.checkout_request_id,
        },
    )
    return _initiation_view(payment, tx, customer_message=result.customer_message)


def get_payment_status(db: Session, *, tenant_id: int, payment_id: int) -> PaymentStatusRead:
    """Polling view of a payment with its latest gateway attempt and receipt."""

    payment = db.get(Payment, payment_id)
    if payment is None or payment.tenant_id != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("PAYMENT_NOT_FOUND", "Payment not found."),
        )

    tx = _latest_transaction(db, payment.id)
    receipt = db.scalars(select(PaymentReceipt).where(PaymentReceipt.payment_id == payment.id)).first()
    view = PaymentStatusRead(
        id=payment.id,
        tenant_id=payment.tenant_id,
        amount=payment.amount,
        method=payment.method,
        type=payment.type,
        status=payment.status,
        failure_reason=payment.failure_reason,
        created_at=payment.created_at,
    )
    if tx is not None:
        view = view.model_copy(
            update={
                "provider": tx.provider,
                "provider_status": tx.status,
                "checkout_request_id": tx.checkout_request_id,
                "provider_receipt_number": tx.provider_receipt_number,
                "result_code": tx.result_code,
                "result_desc": tx.result_desc,
                "needs_review": tx.needs_review,
            }
        )
    if receipt is not None:
        view = view.model_copy(
            update={"receipt_number": receipt.receipt_number, "receipt_url": receipt.document_url}
        )
    return view


__all__ = ["initiate_payment", "get_payment_status"]
