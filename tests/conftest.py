"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

# --- Default environment, before the application reads its settings
os.environ.setdefault("DATABASE_URL", "sqlite:///./leasepay_test.db")
os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")
os.environ.setdefault("MPESA_WEBHOOK_TOKEN", "test-webhook-token")
os.environ.setdefault("MPESA_CONSUMER_KEY", "test-consumer-key")
os.environ.setdefault("MPESA_CONSUMER_SECRET", "test-consumer-secret")
os.environ.setdefault("MPESA_PASSKEY", "test-passkey")
os.environ.setdefault("MPESA_SHORTCODE", "174379")
os.environ.setdefault("MPESA_CALLBACK_BASE_URL", "https://leasepay.test")

from leasepay import db  # noqa: E402
from leasepay.core import runtime_state  # noqa: E402
from leasepay.main import app  # noqa: E402
from leasepay.models import (  # noqa: E402
    Base,
    Organization,
    PaymentMethodType,
    Property,
    Tenant,
    TenantPaymentMethod,
    User,
)
from leasepay.schemas.gateway import GatewayPushResult, ResolvedGatewaySettings  # noqa: E402
from leasepay.services.mpesa_client import clear_token_cache, get_gateway_client_factory  # noqa: E402

ROOT = Path(__file__).resolve().parents[1]
DB_PATH = Path("./leasepay_test.db")
WEBHOOK_TOKEN = os.environ["MPESA_WEBHOOK_TOKEN"]


def _run_migrations() -> None:
    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Fresh database file per session, schema built by Alembic only
if DB_PATH.exists():
    DB_PATH.unlink()
_run_migrations()

engine = db.init_engine()
TestingSessionLocal = db.get_sessionmaker()


@pytest.fixture(autouse=True)
def clean_tables() -> Iterator[None]:
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    clear_token_cache()
    runtime_state.record_sweep(None)


@pytest.fixture
def db_session() -> Iterator[Session]:
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def override_db_dependency() -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[db.get_db] = _get_db
    yield
    app.dependency_overrides.pop(db.get_db, None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeGateway:
    """Stands in for the Daraja client; hands out ``ws_1``, ``ws_2``... as checkout ids."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.settings: list[ResolvedGatewaySettings] = []
        self.error: Exception | None = None
        self.result: GatewayPushResult | None = None
        self._counter = 0

    def factory(self, settings: ResolvedGatewaySettings) -> "FakeGateway":
        self.settings.append(settings)
        return self

    def push(
        self,
        *,
        amount: Decimal,
        payer_reference: str,
        account_reference: str,
        callback_url: str,
        description: str = "Rent payment",
    ) -> GatewayPushResult:
        self.calls.append(
            {
                "amount": amount,
                "payer_reference": payer_reference,
                "account_reference": account_reference,
                "callback_url": callback_url,
                "description": description,
            }
        )
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        self._counter += 1
        checkout_id = f"ws_{self._counter}"
        return GatewayPushResult(
            accepted=True,
            provider_correlation_id=checkout_id,
            provider_merchant_request_id=f"mr_{self._counter}",
            response_code="0",
            provider_message="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
            raw={"CheckoutRequestID": checkout_id, "ResponseCode": "0"},
        )


@pytest.fixture
def gateway() -> Iterator[FakeGateway]:
    fake = FakeGateway()
    app.dependency_overrides[get_gateway_client_factory] = lambda: fake.factory
    yield fake
    app.dependency_overrides.pop(get_gateway_client_factory, None)


@dataclass
class TenantFixture:
    tenant_id: int
    user_id: int
    admin_user_id: int
    property_id: int
    organization_id: int
    method_id: int


@pytest.fixture
def make_tenant(db_session: Session) -> Callable[..., TenantFixture]:
    """Factory creating an organization, property, admin, tenant and M-Pesa method."""

    def _factory(
        *,
        balance: str = "25000.00",
        phone: str = "254708374149",
        method_type: PaymentMethodType = PaymentMethodType.MPESA,
        is_active: bool = True,
    ) -> TenantFixture:
        suffix = uuid4().hex[:8]
        admin = User(username=f"admin-{suffix}", email=f"admin-{suffix}@example.com", role="admin")
        resident = User(username=f"tenant-{suffix}", email=f"tenant-{suffix}@example.com")
        org = Organization(name=f"org-{suffix}")
        db_session.add_all([admin, resident, org])
        db_session.flush()

        prop = Property(name=f"property-{suffix}", organization_id=org.id, admin_user_id=admin.id)
        db_session.add(prop)
        db_session.flush()

        tenant = Tenant(
            name=f"Tenant {suffix}",
            user_id=resident.id,
            property_id=prop.id,
            unit="A1",
            balance=Decimal(balance),
            is_active=is_active,
        )
        db_session.add(tenant)
        db_session.flush()

        method = TenantPaymentMethod(
            tenant_id=tenant.id,
            type=method_type,
            token=phone if method_type == PaymentMethodType.MPESA else f"tok_{suffix}",
            last4=phone[-4:],
            brand="M-Pesa" if method_type == PaymentMethodType.MPESA else "Visa",
            is_default=True,
        )
        db_session.add(method)
        db_session.commit()

        return TenantFixture(
            tenant_id=tenant.id,
            user_id=resident.id,
            admin_user_id=admin.id,
            property_id=prop.id,
            organization_id=org.id,
            method_id=method.id,
        )

    return _factory


@pytest.fixture
def stk_callback() -> Callable[..., dict[str, Any]]:
    """Builder for Daraja STK callback bodies."""

    def _build(
        checkout_request_id: str,
        *,
        result_code: int = 0,
        result_desc: str | None = None,
        amount: Any = 500,
        receipt: str = "ABCD1234",
        phone: int = 254708374149,
        transaction_date: int = 20261019143015,
    ) -> dict[str, Any]:
        callback: dict[str, Any] = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc
            or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
        }
        if result_code == 0:
            callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "Balance"},
                    {"Name": "TransactionDate", "Value": transaction_date},
                    {"Name": "PhoneNumber", "Value": phone},
                ]
            }
        return {"Body": {"stkCallback": callback}}

    return _build
