"""Durable record of inbound gateway callbacks."""
import enum
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum as SqlEnum, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class CallbackOutcome(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    INVALID = "invalid"
    ERROR = "error"


class GatewayCallbackEvent(Base):
    """Every authenticated callback is stored before it is reconciled."""

    __tablename__ = "gateway_callback_events"
    __table_args__ = (
        Index("ix_gateway_callback_events_received", "received_at"),
        Index("ix_gateway_callback_events_checkout", "checkout_request_id"),
    )

    provider: Mapped[str] = mapped_column(String(30), nullable=False, default="mpesa")
    checkout_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    result_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    outcome: Mapped[CallbackOutcome] = mapped_column(
        SqlEnum(CallbackOutcome), nullable=False, default=CallbackOutcome.RECEIVED
    )
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw_json: Mapped[dict] = mapped_column(JSON, nullable=False)
