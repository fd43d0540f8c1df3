"""Organization and property models."""
from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class Organization(Base):
    """A property-management company owning one or more properties."""

    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(200), nullable=False)


class Property(Base):
    """A managed property; its administrator is notified of payment outcomes."""

    __tablename__ = "properties"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    organization_id: Mapped[int | None] = mapped_column(ForeignKey("organizations.id"), nullable=True, index=True)
    admin_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    organization = relationship("Organization")
    admin_user = relationship("User", foreign_keys=[admin_user_id])
