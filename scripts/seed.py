"""Seed a property, a tenant and an M-Pesa method for local testing."""
from __future__ import annotations

from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

from leasepay import db, models
from leasepay.config import get_settings


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    db.create_all()
    session = db.get_sessionmaker()()

    try:
        admin = models.User(username="manager", email="manager@example.com", role="admin")
        resident = models.User(username="wanjiku", email="wanjiku@example.com")
        org = models.Organization(name="Nyumba Homes")
        session.add_all([admin, resident, org])
        session.flush()

        prop = models.Property(name="Kilimani Court", organization_id=org.id, admin_user_id=admin.id)
        session.add(prop)
        session.flush()

        tenant = models.Tenant(
            name="Wanjiku Kamau",
            user_id=resident.id,
            property_id=prop.id,
            unit="B4",
            balance=Decimal("25000.00"),
        )
        session.add(tenant)
        session.flush()

        session.add(
            models.TenantPaymentMethod(
                tenant_id=tenant.id,
                type=models.PaymentMethodType.MPESA,
                token="254708374149",
                last4="4149",
                brand="M-Pesa",
                is_default=True,
            )
        )
        session.commit()
        print(f"Seed data inserted: tenant_id={tenant.id}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
