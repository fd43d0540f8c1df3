"""Payment model definitions."""
import enum
from decimal import Decimal

from sqlalchemy import CheckConstraint, Enum as SqlEnum, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base
from .tenant import PaymentMethodType


class PaymentStatus(str, enum.Enum):
    """Possible statuses for a payment."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentType(str, enum.Enum):
    RENT = "rent"
    DEPOSIT = "deposit"
    FEE = "fee"
    OTHER = "other"


class Payment(Base):
    """A tenant payment; the tenant ledger moves only when it completes."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        Index("ix_payments_created_at", "created_at"),
        Index("ix_payments_tenant_status", "tenant_id", "status"),
    )

    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    method: Mapped[PaymentMethodType] = mapped_column(SqlEnum(PaymentMethodType), nullable=False)
    type: Mapped[PaymentType] = mapped_column(SqlEnum(PaymentType), nullable=False, default=PaymentType.RENT)
    status: Mapped[PaymentStatus] = mapped_column(SqlEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)

    tenant = relationship("Tenant")
    provider_transactions = relationship(
        "PaymentProviderTransaction",
        back_populates="payment",
        order_by="PaymentProviderTransaction.id",
    )
