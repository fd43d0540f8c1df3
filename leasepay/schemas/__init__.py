"""Schema package exports."""
from .gateway import GatewayPushResult, ResolvedGatewaySettings
from .mpesa import CallbackFailure, CallbackSuccess, ParsedCallback, StkCallbackEnvelope
from .payment import (
    PaymentInitiate,
    PaymentInitiationRead,
    PaymentMethodCreate,
    PaymentMethodRead,
    PaymentStatusRead,
)

__all__ = [
    "CallbackFailure",
    "CallbackSuccess",
    "GatewayPushResult",
    "ParsedCallback",
    "PaymentInitiate",
    "PaymentInitiationRead",
    "PaymentMethodCreate",
    "PaymentMethodRead",
    "PaymentStatusRead",
    "ResolvedGatewaySettings",
    "StkCallbackEnvelope",
]
