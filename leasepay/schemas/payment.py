"""Schemas for tenant payments and payment methods."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from leasepay.models.payment import PaymentStatus, PaymentType
from leasepay.models.provider_transaction import ProviderTransactionStatus
from leasepay.models.tenant import PaymentMethodType


class PaymentInitiate(BaseModel):
    amount: Decimal = Field(gt=Decimal("0"), max_digits=18, decimal_places=2)
    payment_method_id: int
    type: PaymentType = PaymentType.RENT


class PaymentInitiationRead(BaseModel):
    payment_id: int
    transaction_id: int
    amount: Decimal
    status: PaymentStatus
    checkout_request_id: str | None
    customer_message: str | None = None


class PaymentStatusRead(BaseModel):
    id: int
    tenant_id: int
    amount: Decimal
    method: PaymentMethodType
    type: PaymentType
    status: PaymentStatus
    failure_reason: str | None
    created_at: datetime
    provider: str | None = None
    provider_status: ProviderTransactionStatus | None = None
    checkout_request_id: str | None = None
    provider_receipt_number: str | None = None
    result_code: str | None = None
    result_desc: str | None = None
    needs_review: bool = False
    receipt_number: str | None = None
    receipt_url: str | None = None


class PaymentMethodCreate(BaseModel):
    type: PaymentMethodType
    token: str | None = None
    phone: str | None = None
    last4: str | None = Field(default=None, min_length=4, max_length=4)
    brand: str | None = None
    nickname: str | None = Field(default=None, max_length=100)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: str | PaymentMethodType) -> str | PaymentMethodType:
        """Allow case-insensitive method types from clients."""

        if isinstance(value, str):
            return value.strip().lower()
        return value


class PaymentMethodRead(BaseModel):
    id: int
    tenant_id: int
    type: PaymentMethodType
    last4: str
    brand: str | None
    nickname: str | None
    is_default: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
