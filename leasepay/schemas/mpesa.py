"""Daraja STK callback payload shapes and the decoded callback result.

The raw models mirror what Safaricom posts to the callback URL. Everything
past :func:`leasepay.services.mpesa_callbacks.parse_stk_callback` works with
:data:`ParsedCallback` only.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class CallbackItem(BaseModel):
    Name: str
    Value: Any = None


class CallbackMetadataBlock(BaseModel):
    Item: list[CallbackItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    MerchantRequestID: str | None = None
    CheckoutRequestID: str = Field(min_length=1)
    ResultCode: int
    ResultDesc: str | None = None
    CallbackMetadata: CallbackMetadataBlock | None = None

    model_config = ConfigDict(extra="allow")

    def item(self, name: str) -> Any:
        if self.CallbackMetadata is None:
            return None
        for entry in self.CallbackMetadata.Item:
            if entry.Name == name:
                return entry.Value
        return None


class StkCallbackBody(BaseModel):
    stkCallback: StkCallback


class StkCallbackEnvelope(BaseModel):
    Body: StkCallbackBody


class CallbackSuccess(BaseModel):
    outcome: Literal["success"] = "success"
    checkout_request_id: str
    merchant_request_id: str | None = None
    amount: Decimal | None = None
    receipt_number: str | None = None
    payer_reference: str | None = None
    provider_timestamp: datetime | None = None


class CallbackFailure(BaseModel):
    outcome: Literal["failure"] = "failure"
    checkout_request_id: str
    merchant_request_id: str | None = None
    reason_code: int
    reason_text: str


ParsedCallback = Annotated[Union[CallbackSuccess, CallbackFailure], Field(discriminator="outcome")]


__all__ = [
    "CallbackFailure",
    "CallbackSuccess",
    "ParsedCallback",
    "StkCallback",
    "StkCallbackEnvelope",
]
