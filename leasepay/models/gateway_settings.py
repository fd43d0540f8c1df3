"""Per-property / per-organization M-Pesa gateway settings."""
from sqlalchemy import Boolean, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class GatewaySettings(Base):
    """Overrides merged field by field over the global M-Pesa defaults.

    A row is scoped either to a property or to an organization.
    """

    __tablename__ = "mpesa_settings"
    __table_args__ = (
        Index("ix_mpesa_settings_property_active", "property_id", "is_active"),
        Index("ix_mpesa_settings_organization_active", "organization_id", "is_active"),
    )

    property_id: Mapped[int | None] = mapped_column(ForeignKey("properties.id"), nullable=True)
    organization_id: Mapped[int | None] = mapped_column(ForeignKey("organizations.id"), nullable=True)
    environment: Mapped[str | None] = mapped_column(String(20), nullable=True)
    consumer_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    consumer_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    passkey: Mapped[str | None] = mapped_column(String(255), nullable=True)
    shortcode: Mapped[str | None] = mapped_column(String(20), nullable=True)
    party_b: Mapped[str | None] = mapped_column(String(20), nullable=True)
    callback_base_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    account_reference_prefix: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
