"""Value objects exchanged with the gateway collaborators."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class ResolvedGatewaySettings(BaseModel):
    """Effective M-Pesa settings for one property after fallback resolution."""

    environment: str = "sandbox"
    consumer_key: str | None = None
    consumer_secret: str | None = None
    passkey: str | None = None
    shortcode: str | None = None
    party_b: str | None = None
    callback_base_url: str | None = None
    account_reference_prefix: str = "RENT"
    webhook_secret: str | None = None
    source: str = "global"

    model_config = ConfigDict(frozen=True)

    def missing_fields(self) -> list[str]:
        """Names of the settings an STK push cannot go out without."""

        required = ("consumer_key", "consumer_secret", "passkey", "shortcode", "callback_base_url")
        return [name for name in required if not getattr(self, name)]


class GatewayPushResult(BaseModel):
    accepted: bool
    provider_correlation_id: str | None = None
    provider_merchant_request_id: str | None = None
    response_code: str | None = None
    provider_message: str | None = None
    customer_message: str | None = None
    raw: dict[str, Any] = {}
