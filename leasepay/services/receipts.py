"""Receipt generation for completed payments."""
from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leasepay.models.payment import Payment
from leasepay.models.receipt import PaymentReceipt
from leasepay.utils.time import utcnow

logger = logging.getLogger(__name__)


class ReceiptGenerator(Protocol):
    def generate(self, payment: Payment) -> str:
        """Produce a receipt for ``payment`` and return a reference to the document."""


def receipt_number_for(payment: Payment) -> str:
    return f"RCP-{utcnow():%Y%m%d}-{payment.id}"


class DbReceiptGenerator:
    """Records a :class:`PaymentReceipt` row; rendering the document is out of process."""

    def __init__(self, db: Session, *, document_root: str = "receipts") -> None:
        self.db = db
        self.document_root = document_root.rstrip("/")

    def generate(self, payment: Payment) -> str:
        existing = self.db.scalars(
            select(PaymentReceipt).where(PaymentReceipt.payment_id == payment.id)
        ).first()
        if existing is not None:
            return existing.document_url

        number = receipt_number_for(payment)
        receipt = PaymentReceipt(
            payment_id=payment.id,
            receipt_number=number,
            document_url=f"{self.document_root}/{number}.pdf",
        )
        try:
            self.db.add(receipt)
            self.db.commit()
        except IntegrityError:
            # Another worker issued it first.
            self.db.rollback()
            existing = self.db.scalars(
                select(PaymentReceipt).where(PaymentReceipt.payment_id == payment.id)
            ).one()
            return existing.document_url

        logger.info("Receipt generated", extra={"payment_id": payment.id, "receipt_number": number})
        return receipt.document_url


__all__ = ["DbReceiptGenerator", "ReceiptGenerator", "receipt_number_for"]
