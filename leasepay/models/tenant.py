"""Tenant and tenant payment method models."""
import enum
from decimal import Decimal

from sqlalchemy import Boolean, Enum as SqlEnum, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class PaymentMethodType(str, enum.Enum):
    """Instrument families a tenant can pay with."""

    MPESA = "mpesa"
    CARD = "card"
    BANK = "bank"
    CASH = "cash"


class Tenant(Base):
    """A tenant occupying a unit; ``balance`` is the signed amount owed."""

    __tablename__ = "tenants"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id"), nullable=False, index=True)
    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    balance: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0.00"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    user = relationship("User")
    property = relationship("Property")


class TenantPaymentMethod(Base):
    """A saved payment instrument; for M-Pesa ``token`` holds the MSISDN."""

    __tablename__ = "tenant_payment_methods"
    __table_args__ = (Index("ix_tenant_payment_methods_tenant_active", "tenant_id", "is_active"),)

    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False)
    type: Mapped[PaymentMethodType] = mapped_column(SqlEnum(PaymentMethodType), nullable=False)
    token: Mapped[str] = mapped_column(String(255), nullable=False)
    last4: Mapped[str] = mapped_column(String(4), nullable=False)
    brand: Mapped[str | None] = mapped_column(String(50), nullable=True)
    nickname: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    tenant = relationship("Tenant")
