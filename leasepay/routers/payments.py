"""Tenant payment endpoints."""
from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.orm import Session

from leasepay.db import get_db
from leasepay.schemas.payment import (
    PaymentInitiate,
    PaymentInitiationRead,
    PaymentMethodCreate,
    PaymentMethodRead,
    PaymentStatusRead,
)
from leasepay.services import payment_methods as payment_methods_service
from leasepay.services import payments as payments_service
from leasepay.services.mpesa_client import GatewayClientFactory, get_gateway_client_factory

router = APIRouter(prefix="/tenants/{tenant_id}", tags=["payments"])


@router.post(
    "/payment-methods",
    response_model=PaymentMethodRead,
    status_code=status.HTTP_201_CREATED,
)
def create_payment_method(tenant_id: int, payload: PaymentMethodCreate, db: Session = Depends(get_db)):
    return payment_methods_service.save_payment_method(db, tenant_id, payload)


@router.post(
    "/payments",
    response_model=PaymentInitiationRead,
    status_code=status.HTTP_201_CREATED,
)
def initiate_payment(
    tenant_id: int,
    payload: PaymentInitiate,
    db: Session = Depends(get_db),
    client_factory: GatewayClientFactory = Depends(get_gateway_client_factory),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """Start an STK push for the tenant; the outcome arrives later by callback."""

    return payments_service.initiate_payment(
        db,
        tenant_id=tenant_id,
        amount=payload.amount,
        payment_method_id=payload.payment_method_id,
        payment_type=payload.type,
        idempotency_key=idempotency_key,
        client_factory=client_factory,
    )


@router.get("/payments/{payment_id}", response_model=PaymentStatusRead)
def read_payment_status(tenant_id: int, payment_id: int, db: Session = Depends(get_db)):
    return payments_service.get_payment_status(db, tenant_id=tenant_id, payment_id=payment_id)
