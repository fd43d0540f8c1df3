import base64
import json
from decimal import Decimal

import httpx
import pytest

from leasepay.schemas.gateway import ResolvedGatewaySettings
from leasepay.services.mpesa_client import (
    GatewayAuthError,
    GatewayRejectedError,
    GatewayTransportError,
    InvalidPhoneNumber,
    MpesaClient,
    build_callback_url,
    normalize_msisdn,
    to_whole_units,
)

SETTINGS = ResolvedGatewaySettings(
    consumer_key="ck",
    consumer_secret="cs",
    passkey="pk",
    shortcode="174379",
    party_b="174379",
    callback_base_url="https://leasepay.test",
)


class DarajaStub:
    """Routes requests to canned Daraja responses and records them."""

    def __init__(self, *, token_status=200, push_status=200, push_body=None):
        self.requests: list[httpx.Request] = []
        self.token_status = token_status
        self.push_status = push_status
        self.push_body = push_body or {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191020261430",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/v1/generate":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"errorMessage": "Invalid credentials"})
            return httpx.Response(200, json={"access_token": "tok-123", "expires_in": "3599"})
        return httpx.Response(self.push_status, json=self.push_body)

    def client(self, settings: ResolvedGatewaySettings = SETTINGS) -> MpesaClient:
        return MpesaClient(settings, http_client=httpx.Client(transport=httpx.MockTransport(self)))

    def pushes(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/mpesa/stkpush/v1/processrequest"]


def _push(client: MpesaClient, **overrides):
    kwargs = {
        "amount": Decimal("500.00"),
        "payer_reference": "0708374149",
        "account_reference": "RENT-12-345678",
        "callback_url": "https://leasepay.test/payments/mpesa/callback?token=t",
    }
    kwargs.update(overrides)
    return client.push(**kwargs)


def test_push_builds_signed_payload(monkeypatch):
    monkeypatch.setattr("leasepay.services.mpesa_client.format_mpesa_timestamp", lambda: "20261019143015")
    stub = DarajaStub()

    result = _push(stub.client())

    assert result.accepted is True
    assert result.provider_correlation_id == "ws_CO_191020261430"
    assert result.provider_merchant_request_id == "29115-34620561-1"

    push = stub.pushes()[0]
    assert push.headers["Authorization"] == "Bearer tok-123"
    assert push.url.host == "sandbox.safaricom.co.ke"
    body = json.loads(push.content)
    assert body["Password"] == base64.b64encode(b"174379pk20261019143015").decode()
    assert body["Timestamp"] == "20261019143015"
    assert body["Amount"] == 500
    assert body["PartyA"] == "254708374149"
    assert body["PhoneNumber"] == "254708374149"
    assert body["PartyB"] == "174379"
    assert body["TransactionType"] == "CustomerPayBillOnline"
    assert body["AccountReference"] == "RENT-12-3456"


def test_live_environment_uses_production_host():
    stub = DarajaStub()

    _push(stub.client(SETTINGS.model_copy(update={"environment": "live"})))

    assert stub.requests[0].url.host == "api.safaricom.co.ke"


def test_access_token_is_cached_between_pushes():
    stub = DarajaStub()

    _push(stub.client())
    _push(stub.client())

    token_calls = [r for r in stub.requests if r.url.path == "/oauth/v1/generate"]
    assert len(token_calls) == 1
    assert token_calls[0].headers["Authorization"] == "Basic " + base64.b64encode(b"ck:cs").decode()
    assert len(stub.pushes()) == 2


def test_bad_credentials_raise_auth_error():
    stub = DarajaStub(token_status=401)

    with pytest.raises(GatewayAuthError):
        _push(stub.client())
    assert stub.pushes() == []


def test_server_error_raises_transport_error():
    stub = DarajaStub(push_status=500, push_body={"errorMessage": "Service unavailable"})

    with pytest.raises(GatewayTransportError):
        _push(stub.client())


def test_network_failure_raises_transport_error():
    def _offline(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = MpesaClient(SETTINGS, http_client=httpx.Client(transport=httpx.MockTransport(_offline)))

    with pytest.raises(GatewayTransportError):
        _push(client)


def test_bad_request_raises_rejected_error():
    stub = DarajaStub(push_status=400, push_body={"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})

    with pytest.raises(GatewayRejectedError, match="Invalid Amount"):
        _push(stub.client())


def test_non_zero_response_code_is_not_accepted():
    stub = DarajaStub(push_body={"ResponseCode": "1", "ResponseDescription": "Unable to lock subscriber"})

    result = _push(stub.client())

    assert result.accepted is False
    assert result.provider_message == "Unable to lock subscriber"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0708374149", "254708374149"),
        ("+254 708 374 149", "254708374149"),
        ("2540708374149", "254708374149"),
        ("0110123456", "254110123456"),
    ],
)
def test_normalize_msisdn(raw, expected):
    assert normalize_msisdn(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "12345", "0808374149", "44708374149"])
def test_normalize_msisdn_rejects_non_kenyan_numbers(raw):
    with pytest.raises(InvalidPhoneNumber):
        normalize_msisdn(raw)


def test_whole_units_round_half_up():
    assert to_whole_units(Decimal("500.00")) == 500
    assert to_whole_units(Decimal("10.5")) == 11


def test_build_callback_url_quotes_token():
    assert build_callback_url("https://leasepay.test/", "a b/c") == (
        "https://leasepay.test/payments/mpesa/callback?token=a%20b%2Fc"
    )
    assert build_callback_url("https://leasepay.test", None) == "https://leasepay.test/payments/mpesa/callback"


def _client_for(handler) -> MpesaClient:
    return MpesaClient(SETTINGS, http_client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_non_json_token_response_raises_transport_error():
    def _maintenance(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(GatewayTransportError):
        _push(_client_for(_maintenance))


@pytest.mark.parametrize("path", ["/oauth/v1/generate", "/mpesa/stkpush/v1/processrequest"])
def test_non_object_json_raises_transport_error(path):
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == path:
            return httpx.Response(200, json=[])
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "tok-123", "expires_in": "3599"})
        return httpx.Response(200, json={"ResponseCode": "0", "CheckoutRequestID": "ws_1"})

    with pytest.raises(GatewayTransportError):
        _push(_client_for(_handler))
