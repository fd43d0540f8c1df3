"""Payment receipt model."""
from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class PaymentReceipt(Base):
    """Receipt issued for a completed payment."""

    __tablename__ = "payment_receipts"

    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), unique=True, nullable=False)
    receipt_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    document_url: Mapped[str] = mapped_column(String(255), nullable=False)
