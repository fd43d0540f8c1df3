"""Inbound M-Pesa STK callback handling."""
from __future__ import annotations

import hmac
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from leasepay.config import get_settings
from leasepay.models import (
    TERMINAL_PROVIDER_STATUSES,
    CallbackOutcome,
    GatewayCallbackEvent,
    PaymentProviderTransaction,
)
from leasepay.schemas.mpesa import CallbackFailure, CallbackSuccess, ParsedCallback, StkCallbackEnvelope
from leasepay.services import reconciliation
from leasepay.services.alerts import create_alert
from leasepay.services.notifications import NotificationDispatcher
from leasepay.services.receipts import ReceiptGenerator
from leasepay.utils.errors import error_response, gateway_ack
from leasepay.utils.masking import fingerprint
from leasepay.utils.time import parse_mpesa_timestamp, utcnow

logger = logging.getLogger(__name__)


class CallbackPayloadError(ValueError):
    """The callback body is not a usable STK result."""


def _current_settings():
    return get_settings()


def _secret_status(tokens: list[str]) -> dict[str, str | None]:
    names = ("current", "next")
    return {name: fingerprint(token) for name, token in zip(names, tokens)}


def authenticate_callback(token: str | None) -> None:
    """Reject the callback unless ``token`` matches a configured webhook secret."""

    tokens = _current_settings().webhook_tokens()
    if not tokens:
        logger.error("M-Pesa webhook token is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response(
                "WEBHOOK_SECRET_NOT_CONFIGURED",
                "M-Pesa webhook token is not configured.",
            ),
        )

    if token:
        for candidate in tokens:
            if hmac.compare_digest(candidate.encode("utf-8"), token.encode("utf-8")):
                return

    logger.warning(
        "M-Pesa callback token rejected",
        extra={"token_present": bool(token), "secret_status": _secret_status(tokens)},
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=error_response("WEBHOOK_TOKEN_INVALID", "Invalid callback token."),
    )


def _decimal_or_none(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation as exc:
        raise CallbackPayloadError(f"Invalid amount {value!r}") from exc


def parse_stk_callback(payload: Any) -> ParsedCallback:
    """Decode a raw Daraja callback body into a success or failure result."""

    try:
        envelope = StkCallbackEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise CallbackPayloadError("Payload is not an STK callback") from exc

    callback = envelope.Body.stkCallback
    if callback.ResultCode != 0:
        return CallbackFailure(
            checkout_request_id=callback.CheckoutRequestID,
            merchant_request_id=callback.MerchantRequestID,
            reason_code=callback.ResultCode,
            reason_text=callback.ResultDesc or "",
        )

    receipt = callback.item("MpesaReceiptNumber")
    if not receipt:
        raise CallbackPayloadError("Successful callback without a receipt number")
    phone = callback.item("PhoneNumber")
    return CallbackSuccess(
        checkout_request_id=callback.CheckoutRequestID,
        merchant_request_id=callback.MerchantRequestID,
        amount=_decimal_or_none(callback.item("Amount")),
        receipt_number=str(receipt),
        payer_reference=str(phone) if phone is not None else None,
        provider_timestamp=parse_mpesa_timestamp(callback.item("TransactionDate")),
    )


def _guess_checkout_id(payload: Any) -> str | None:
    try:
        value = payload["Body"]["stkCallback"]["CheckoutRequestID"]
    except (KeyError, TypeError):
        return None
    return str(value)[:100] if value else None


def record_callback_event(db: Session, payload: Any) -> GatewayCallbackEvent:
    """Durably store an authenticated callback before acting on it."""

    raw = payload if isinstance(payload, dict) else {"_raw": payload}
    event = GatewayCallbackEvent(
        provider="mpesa",
        checkout_request_id=_guess_checkout_id(payload),
        outcome=CallbackOutcome.RECEIVED,
        received_at=utcnow(),
        raw_json=raw,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


def _finish_event(db: Session, event: GatewayCallbackEvent, outcome: CallbackOutcome, result_code: int | None = None) -> None:
    event.outcome = outcome
    if result_code is not None:
        event.result_code = str(result_code)
    event.processed_at = utcnow()
    db.add(event)
    db.commit()
    logger.info(
        "M-Pesa callback handled",
        extra={
            "event_id": event.id,
            "checkout_request_id": event.checkout_request_id,
            "outcome": outcome.value,
        },
    )


def receive_callback(
    db: Session,
    *,
    token: str | None,
    payload: Any,
    receipts: ReceiptGenerator | None = None,
    notifier: NotificationDispatcher | None = None,
) -> dict[str, Any]:
    """Authenticate, record and reconcile one STK callback.

    Anything past authentication is acknowledged to the provider; anomalies
    are surfaced through alerts and the stored event outcome instead.
    """

    authenticate_callback(token)
    event = record_callback_event(db, payload)

    try:
        parsed = parse_stk_callback(payload)
    except CallbackPayloadError as exc:
        logger.warning("Malformed M-Pesa callback", extra={"event_id": event.id, "error": str(exc)})
        create_alert(
            db,
            alert_type="CALLBACK_INVALID",
            message="M-Pesa callback payload could not be decoded.",
            payload={"event_id": event.id, "error": str(exc)},
        )
        _finish_event(db, event, CallbackOutcome.INVALID)
        return gateway_ack()

    result_code = 0 if isinstance(parsed, CallbackSuccess) else parsed.reason_code
    tx = db.scalars(
        select(PaymentProviderTransaction).where(
            PaymentProviderTransaction.checkout_request_id == parsed.checkout_request_id
        )
    ).first()
    if tx is None:
        logger.warning(
            "M-Pesa callback for unknown checkout request",
            extra={"event_id": event.id, "checkout_request_id": parsed.checkout_request_id},
        )
        create_alert(
            db,
            alert_type="CALLBACK_UNMATCHED",
            message="M-Pesa callback did not match any transaction.",
            payload={
                "event_id": event.id,
                "checkout_request_id": parsed.checkout_request_id,
                "result_code": result_code,
            },
        )
        _finish_event(db, event, CallbackOutcome.UNMATCHED, result_code)
        return gateway_ack()

    if tx.status in TERMINAL_PROVIDER_STATUSES:
        logger.info(
            "Duplicate M-Pesa callback ignored",
            extra={"event_id": event.id, "transaction_id": tx.id, "status": tx.status.value},
        )
        _finish_event(db, event, CallbackOutcome.DUPLICATE, result_code)
        return gateway_ack()

    transaction_id = tx.id
    try:
        applied = reconciliation.reconcile(
            db,
            transaction_id,
            parsed,
            raw=event.raw_json,
            receipts=receipts,
            notifier=notifier,
        )
    except Exception as exc:  # noqa: BLE001
        # Left pending; the stale sweep or a redelivery picks it up.
        create_alert(
            db,
            alert_type="CALLBACK_PROCESSING_FAILED",
            message="M-Pesa callback could not be reconciled.",
            payload={"event_id": event.id, "transaction_id": transaction_id, "error": str(exc)},
        )
        _finish_event(db, event, CallbackOutcome.ERROR, result_code)
        return gateway_ack()

    _finish_event(db, event, CallbackOutcome.PROCESSED if applied else CallbackOutcome.DUPLICATE, result_code)
    return gateway_ack()


__all__ = [
    "CallbackPayloadError",
    "authenticate_callback",
    "parse_stk_callback",
    "receive_callback",
    "record_callback_event",
]
