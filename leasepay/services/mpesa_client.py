"""Safaricom Daraja client for STK push (Lipa na M-Pesa Online) requests."""
from __future__ import annotations

import base64
import logging
import threading
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Protocol
from urllib.parse import quote

import httpx

from leasepay.config import get_settings
from leasepay.schemas.gateway import GatewayPushResult, ResolvedGatewaySettings
from leasepay.utils.masking import mask_phone
from leasepay.utils.time import format_mpesa_timestamp

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
LIVE_BASE_URL = "https://api.safaricom.co.ke"
CALLBACK_PATH = "/payments/mpesa/callback"

TOKEN_REFRESH_MARGIN_SECONDS = 30
DEFAULT_TOKEN_TTL_SECONDS = 3599

# (base_url, consumer_key) -> (access_token, expires_at monotonic seconds)
_token_cache: dict[tuple[str, str], tuple[str, float]] = {}
_token_lock = threading.Lock()


class GatewayError(Exception):
    """Base class for failures talking to the mobile-money gateway."""

    code = "GATEWAY_ERROR"


class GatewayConfigurationError(GatewayError):
    code = "GATEWAY_NOT_CONFIGURED"


class GatewayAuthError(GatewayError):
    code = "GATEWAY_AUTH_FAILED"


class GatewayRejectedError(GatewayError):
    code = "GATEWAY_REJECTED"


class GatewayTransportError(GatewayError):
    code = "GATEWAY_UNAVAILABLE"


class InvalidPhoneNumber(ValueError):
    pass


def normalize_msisdn(value: str | None) -> str:
    """Normalise a Kenyan mobile number to ``2547XXXXXXXX`` / ``2541XXXXXXXX``."""

    raw = (value or "").strip()
    if not raw:
        raise InvalidPhoneNumber("Phone number is required")

    digits = "".join(ch for ch in raw if ch.isdigit())
    if digits.startswith("0"):
        digits = f"254{digits[1:]}"
    if digits.startswith("2540"):
        digits = f"254{digits[4:]}"

    if len(digits) != 12 or not (digits.startswith("2547") or digits.startswith("2541")):
        raise InvalidPhoneNumber("Phone number must be a valid Kenyan number (e.g., 2547XXXXXXXX)")
    return digits


def to_whole_units(amount: Decimal) -> int:
    """STK push only accepts whole shillings."""

    return int(Decimal(str(amount)).to_integral_value(rounding=ROUND_HALF_UP))


def build_callback_url(base_url: str, token: str | None) -> str:
    base = base_url.rstrip("/")
    if token:
        return f"{base}{CALLBACK_PATH}?token={quote(token, safe='')}"
    return f"{base}{CALLBACK_PATH}"


def _json_object(response: httpx.Response, what: str) -> dict[str, Any]:
    """Decode a Daraja response body, which must be a JSON object."""

    try:
        data = response.json()
    except ValueError as exc:
        raise GatewayTransportError(f"M-Pesa {what} returned a non-JSON response") from exc
    if not isinstance(data, dict):
        raise GatewayTransportError(f"M-Pesa {what} returned an unexpected payload")
    return data


def clear_token_cache() -> None:
    with _token_lock:
        _token_cache.clear()


class MpesaClient:
    """Thin wrapper over the Daraja REST API.

    Failures surface as :class:`GatewayError` subclasses so callers can tell
    an authentication problem from a rejected request or a network fault.
    """

    def __init__(
        self,
        settings: ResolvedGatewaySettings,
        *,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings
        self.base_url = LIVE_BASE_URL if settings.environment == "live" else SANDBOX_BASE_URL
        self._timeout = timeout
        self._http = http_client

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            if self._http is not None:
                return self._http.request(method, url, timeout=self._timeout, **kwargs)
            return httpx.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayTransportError(f"Timed out calling M-Pesa {path}") from exc
        except httpx.HTTPError as exc:
            raise GatewayTransportError(f"Could not reach M-Pesa: {exc}") from exc

    def get_access_token(self) -> str:
        """Return a cached OAuth token, fetching a new one shortly before expiry."""

        key = self.settings.consumer_key
        secret = self.settings.consumer_secret
        if not key or not secret:
            raise GatewayConfigurationError("M-Pesa credentials not configured")

        cache_key = (self.base_url, key)
        now = time.monotonic()
        with _token_lock:
            cached = _token_cache.get(cache_key)
        if cached and now < cached[1] - TOKEN_REFRESH_MARGIN_SECONDS:
            return cached[0]

        basic = base64.b64encode(f"{key}:{secret}".encode()).decode()
        response = self._request(
            "GET",
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {basic}"},
        )
        if response.status_code in (400, 401, 403):
            raise GatewayAuthError("M-Pesa rejected the consumer credentials")
        if response.status_code >= 400:
            raise GatewayTransportError(f"M-Pesa token endpoint returned {response.status_code}")

        data = _json_object(response, "token endpoint")
        token = data.get("access_token")
        if not token:
            raise GatewayAuthError("Failed to obtain M-Pesa access token")
        try:
            expires_in = int(data.get("expires_in", DEFAULT_TOKEN_TTL_SECONDS))
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_TTL_SECONDS

        with _token_lock:
            _token_cache[cache_key] = (token, now + expires_in)
        return token

    def push(
        self,
        *,
        amount: Decimal,
        payer_reference: str,
        account_reference: str,
        callback_url: str,
        description: str = "Rent payment",
    ) -> GatewayPushResult:
        """Ask the gateway to push a payment prompt to the payer's phone."""

        shortcode = self.settings.shortcode
        passkey = self.settings.passkey
        if not shortcode or not passkey:
            raise GatewayConfigurationError("M-Pesa shortcode/passkey not configured")

        token = self.get_access_token()
        timestamp = format_mpesa_timestamp()
        password = base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()
        phone = normalize_msisdn(payer_reference)
        payload = {
            "BusinessShortCode": shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": to_whole_units(amount),
            "PartyA": phone,
            "PartyB": self.settings.party_b or shortcode,
            "PhoneNumber": phone,
            "CallBackURL": callback_url,
            "AccountReference": account_reference[:12],
            "TransactionDesc": description[:13],
        }

        response = self._request(
            "POST",
            "/mpesa/stkpush/v1/processrequest",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code in (401, 403):
            raise GatewayAuthError("M-Pesa rejected the access token")
        if response.status_code >= 500:
            raise GatewayTransportError(f"M-Pesa STK push returned {response.status_code}")

        data = _json_object(response, "STK push")

        if response.status_code >= 400:
            message = data.get("errorMessage") or f"HTTP {response.status_code}"
            logger.warning(
                "M-Pesa STK push rejected",
                extra={"status_code": response.status_code, "phone": mask_phone(phone), "error": message},
            )
            raise GatewayRejectedError(message)

        response_code = str(data.get("ResponseCode")) if data.get("ResponseCode") is not None else None
        accepted = response_code == "0" and bool(data.get("CheckoutRequestID"))
        return GatewayPushResult(
            accepted=accepted,
            provider_correlation_id=data.get("CheckoutRequestID"),
            provider_merchant_request_id=data.get("MerchantRequestID"),
            response_code=response_code,
            provider_message=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
            raw=data,
        )


class GatewayClient(Protocol):
    """Anything that can push a payment prompt; :class:`MpesaClient` in production."""

    def push(
        self,
        *,
        amount: Decimal,
        payer_reference: str,
        account_reference: str,
        callback_url: str,
        description: str = ...,
    ) -> GatewayPushResult: ...


GatewayClientFactory = Callable[[ResolvedGatewaySettings], GatewayClient]


def default_client_factory(settings: ResolvedGatewaySettings) -> GatewayClient:
    return MpesaClient(settings, timeout=get_settings().MPESA_TIMEOUT_SECONDS)


def get_gateway_client_factory() -> GatewayClientFactory:
    """FastAPI dependency returning the factory used to build gateway clients."""

    return default_client_factory


__all__ = [
    "GatewayAuthError",
    "GatewayClient",
    "GatewayClientFactory",
    "GatewayConfigurationError",
    "GatewayError",
    "GatewayRejectedError",
    "GatewayTransportError",
    "InvalidPhoneNumber",
    "MpesaClient",
    "build_callback_url",
    "clear_token_cache",
    "default_client_factory",
    "get_gateway_client_factory",
    "normalize_msisdn",
    "to_whole_units",
]
