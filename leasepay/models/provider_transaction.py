"""Mobile-money provider transaction model."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, Enum as SqlEnum, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class ProviderTransactionStatus(str, enum.Enum):
    """Lifecycle of a push request at the gateway."""

    INITIATED = "initiated"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_PROVIDER_STATUSES = frozenset({ProviderTransactionStatus.SUCCESS, ProviderTransactionStatus.FAILED})

# Enum columns store member names; keep this in sync with the migration.
_OPEN_STATUS_SQL = "status IN ('INITIATED', 'PENDING')"


class PaymentProviderTransaction(Base):
    """One push-payment attempt for a :class:`Payment` at the gateway.

    ``checkout_request_id`` is assigned by the provider and is the only key
    used to match an inbound callback. ``merchant_request_id`` is generated
    here before the gateway is contacted.
    """

    __tablename__ = "payment_provider_transactions"
    __table_args__ = (
        Index(
            "uq_provider_tx_open_per_payment",
            "payment_id",
            unique=True,
            sqlite_where=text(_OPEN_STATUS_SQL),
            postgresql_where=text(_OPEN_STATUS_SQL),
        ),
        Index("ix_provider_tx_status_created", "status", "created_at"),
    )

    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(30), nullable=False, default="mpesa")
    status: Mapped[ProviderTransactionStatus] = mapped_column(
        SqlEnum(ProviderTransactionStatus), nullable=False, default=ProviderTransactionStatus.INITIATED
    )
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    merchant_request_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    checkout_request_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    result_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    result_desc: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_receipt_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    confirmed_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    payer_reference: Mapped[str | None] = mapped_column(String(30), nullable=True)
    provider_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    review_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    raw_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    raw_callback: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payment = relationship("Payment", back_populates="provider_transactions")
