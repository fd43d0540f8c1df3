"""ORM models package."""
from .alert import Alert
from .audit import AuditLog
from .base import Base
from .callback_event import CallbackOutcome, GatewayCallbackEvent
from .gateway_settings import GatewaySettings
from .notification import Notification
from .payment import Payment, PaymentStatus, PaymentType
from .property import Organization, Property
from .provider_transaction import (
    TERMINAL_PROVIDER_STATUSES,
    PaymentProviderTransaction,
    ProviderTransactionStatus,
)
from .receipt import PaymentReceipt
from .scheduler_lock import SchedulerLock
from .tenant import PaymentMethodType, Tenant, TenantPaymentMethod
from .user import User

__all__ = [
    "Alert",
    "AuditLog",
    "Base",
    "CallbackOutcome",
    "GatewayCallbackEvent",
    "GatewaySettings",
    "Notification",
    "Organization",
    "Payment",
    "PaymentMethodType",
    "PaymentProviderTransaction",
    "PaymentReceipt",
    "PaymentStatus",
    "PaymentType",
    "Property",
    "ProviderTransactionStatus",
    "SchedulerLock",
    "TERMINAL_PROVIDER_STATUSES",
    "Tenant",
    "TenantPaymentMethod",
    "User",
]
