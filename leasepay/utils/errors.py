"""Utility helpers for standardized error and acknowledgement payloads."""
from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


def gateway_ack(description: str = "Accepted") -> dict[str, Any]:
    """Return the acknowledgement body the M-Pesa gateway expects from a callback URL.

    ``ResultCode`` 0 tells the gateway to stop redelivering; it says nothing
    about how the callback was reconciled internally.
    """

    return {"ResultCode": 0, "ResultDesc": description}
