"""initial payment schema

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(18, 2)

payment_method_type = sa.Enum("MPESA", "CARD", "BANK", "CASH", name="paymentmethodtype")
payment_status = sa.Enum("PENDING", "COMPLETED", "FAILED", "REFUNDED", name="paymentstatus")
payment_type = sa.Enum("RENT", "DEPOSIT", "FEE", "OTHER", name="paymenttype")
provider_tx_status = sa.Enum("INITIATED", "PENDING", "SUCCESS", "FAILED", name="providertransactionstatus")
callback_outcome = sa.Enum(
    "RECEIVED", "PROCESSED", "DUPLICATE", "UNMATCHED", "INVALID", "ERROR", name="callbackoutcome"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(100), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("role", sa.String(30), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False),
        *_timestamps(),
    )
    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        "properties",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("organization_id", sa.Integer, sa.ForeignKey("organizations.id"), nullable=True),
        sa.Column("admin_user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_properties_organization_id", "properties", ["organization_id"])

    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("property_id", sa.Integer, sa.ForeignKey("properties.id"), nullable=False),
        sa.Column("unit", sa.String(50), nullable=True),
        sa.Column("balance", MONEY, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_tenants_user_id", "tenants", ["user_id"])
    op.create_index("ix_tenants_property_id", "tenants", ["property_id"])

    op.create_table(
        "tenant_payment_methods",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer, sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("type", payment_method_type, nullable=False),
        sa.Column("token", sa.String(255), nullable=False),
        sa.Column("last4", sa.String(4), nullable=False),
        sa.Column("brand", sa.String(50), nullable=True),
        sa.Column("nickname", sa.String(100), nullable=True),
        sa.Column("is_default", sa.Boolean, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_tenant_payment_methods_tenant_active", "tenant_payment_methods", ["tenant_id", "is_active"]
    )

    op.create_table(
        "mpesa_settings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("property_id", sa.Integer, sa.ForeignKey("properties.id"), nullable=True),
        sa.Column("organization_id", sa.Integer, sa.ForeignKey("organizations.id"), nullable=True),
        sa.Column("environment", sa.String(20), nullable=True),
        sa.Column("consumer_key", sa.String(255), nullable=True),
        sa.Column("consumer_secret", sa.String(255), nullable=True),
        sa.Column("passkey", sa.String(255), nullable=True),
        sa.Column("shortcode", sa.String(20), nullable=True),
        sa.Column("party_b", sa.String(20), nullable=True),
        sa.Column("callback_base_url", sa.String(255), nullable=True),
        sa.Column("account_reference_prefix", sa.String(20), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_mpesa_settings_property_active", "mpesa_settings", ["property_id", "is_active"])
    op.create_index(
        "ix_mpesa_settings_organization_active", "mpesa_settings", ["organization_id", "is_active"]
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer, sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("method", payment_method_type, nullable=False),
        sa.Column("type", payment_type, nullable=False),
        sa.Column("status", payment_status, nullable=False),
        sa.Column("failure_reason", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(128), nullable=True, unique=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
    )
    op.create_index("ix_payments_created_at", "payments", ["created_at"])
    op.create_index("ix_payments_tenant_status", "payments", ["tenant_id", "status"])

    op.create_table(
        "payment_provider_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("payment_id", sa.Integer, sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("status", provider_tx_status, nullable=False),
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("merchant_request_id", sa.String(64), nullable=False, unique=True),
        sa.Column("checkout_request_id", sa.String(100), nullable=True, unique=True),
        sa.Column("result_code", sa.String(20), nullable=True),
        sa.Column("result_desc", sa.String(255), nullable=True),
        sa.Column("provider_receipt_number", sa.String(50), nullable=True),
        sa.Column("confirmed_amount", MONEY, nullable=True),
        sa.Column("payer_reference", sa.String(30), nullable=True),
        sa.Column("provider_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("needs_review", sa.Boolean, nullable=False),
        sa.Column("review_reason", sa.String(255), nullable=True),
        sa.Column("raw_response", sa.JSON, nullable=True),
        sa.Column("raw_callback", sa.JSON, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_payment_provider_transactions_payment_id", "payment_provider_transactions", ["payment_id"]
    )
    op.create_index(
        "ix_provider_tx_status_created", "payment_provider_transactions", ["status", "created_at"]
    )
    # At most one open attempt per payment.
    op.create_index(
        "uq_provider_tx_open_per_payment",
        "payment_provider_transactions",
        ["payment_id"],
        unique=True,
        sqlite_where=sa.text("status IN ('INITIATED', 'PENDING')"),
        postgresql_where=sa.text("status IN ('INITIATED', 'PENDING')"),
    )

    op.create_table(
        "payment_receipts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("payment_id", sa.Integer, sa.ForeignKey("payments.id"), nullable=False, unique=True),
        sa.Column("receipt_number", sa.String(50), nullable=False, unique=True),
        sa.Column("document_url", sa.String(255), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tenant_id", sa.Integer, sa.ForeignKey("tenants.id"), nullable=True),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.String(500), nullable=False),
        sa.Column("priority", sa.String(20), nullable=False),
        sa.Column("action_url", sa.String(255), nullable=True),
        sa.Column("payload_json", sa.JSON, nullable=False),
        sa.Column("is_read", sa.Boolean, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "is_read"])

    op.create_table(
        "gateway_callback_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("checkout_request_id", sa.String(100), nullable=True),
        sa.Column("result_code", sa.String(20), nullable=True),
        sa.Column("outcome", callback_outcome, nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw_json", sa.JSON, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_gateway_callback_events_received", "gateway_callback_events", ["received_at"])
    op.create_index("ix_gateway_callback_events_checkout", "gateway_callback_events", ["checkout_request_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(100), nullable=False),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.Integer, nullable=False),
        sa.Column("data_json", sa.JSON, nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("message", sa.String(255), nullable=False),
        sa.Column("payload_json", sa.JSON, nullable=False),
        sa.Column("resolved", sa.Boolean, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_alerts_type", "alerts", ["type"])
    op.create_index("ix_alerts_created_at", "alerts", ["created_at"])

    op.create_table(
        "scheduler_locks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(64), nullable=False, unique=True),
        sa.Column("owner", sa.String(128), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )


def downgrade() -> None:
    for table in (
        "scheduler_locks",
        "alerts",
        "audit_logs",
        "gateway_callback_events",
        "notifications",
        "payment_receipts",
        "payment_provider_transactions",
        "payments",
        "mpesa_settings",
        "tenant_payment_methods",
        "tenants",
        "properties",
        "organizations",
        "users",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_type in (callback_outcome, provider_tx_status, payment_type, payment_status, payment_method_type):
        enum_type.drop(bind, checkfirst=True)
