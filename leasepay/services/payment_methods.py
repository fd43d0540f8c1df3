"""Tenant payment method management."""
from __future__ import annotations

import logging

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from leasepay.models.tenant import PaymentMethodType, Tenant, TenantPaymentMethod
from leasepay.schemas.payment import PaymentMethodCreate
from leasepay.services.mpesa_client import InvalidPhoneNumber, normalize_msisdn
from leasepay.utils.audit import log_audit
from leasepay.utils.errors import error_response

logger = logging.getLogger(__name__)


def _get_active_tenant(db: Session, tenant_id: int) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if tenant is None or not tenant.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("TENANT_NOT_FOUND", "Tenant not found or inactive."),
        )
    return tenant


def save_payment_method(db: Session, tenant_id: int, payload: PaymentMethodCreate) -> TenantPaymentMethod:
    """Store a payment instrument; the tenant's first one becomes the default."""

    tenant = _get_active_tenant(db, tenant_id)

    if payload.type == PaymentMethodType.MPESA:
        try:
            token = normalize_msisdn(payload.token or payload.phone)
        except InvalidPhoneNumber as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=error_response("INVALID_PHONE_NUMBER", str(exc)),
            ) from exc
        last4 = token[-4:]
        brand = payload.brand or "M-Pesa"
    else:
        if not payload.token:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=error_response("TOKEN_REQUIRED", "token is required."),
            )
        if not payload.last4:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=error_response("LAST4_REQUIRED", "last4 is required."),
            )
        token = payload.token
        last4 = payload.last4
        brand = payload.brand

    existing_count = db.scalar(
        select(func.count())
        .select_from(TenantPaymentMethod)
        .where(TenantPaymentMethod.tenant_id == tenant.id, TenantPaymentMethod.is_active.is_(True))
    )
    method = TenantPaymentMethod(
        tenant_id=tenant.id,
        type=payload.type,
        token=token,
        last4=last4,
        brand=brand,
        nickname=payload.nickname,
        is_default=not existing_count,
    )
    db.add(method)
    db.flush()
    log_audit(
        db,
        actor=f"tenant:{tenant.id}",
        action="PAYMENT_METHOD_SAVED",
        entity="TenantPaymentMethod",
        entity_id=method.id,
        data={"type": method.type.value, "token": token, "is_default": method.is_default},
    )
    db.commit()
    db.refresh(method)
    logger.info(
        "Payment method saved",
        extra={"tenant_id": tenant.id, "method_id": method.id, "type": method.type.value},
    )
    return method


__all__ = ["save_payment_method"]
