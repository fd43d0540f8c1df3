"""Callback URL registered with the M-Pesa gateway."""
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from leasepay.db import get_db
from leasepay.services import mpesa_callbacks
from leasepay.services.notifications import DbNotificationDispatcher, NotificationDispatcher
from leasepay.services.receipts import DbReceiptGenerator, ReceiptGenerator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments/mpesa", tags=["mpesa"])


def get_receipt_generator(db: Session = Depends(get_db)) -> ReceiptGenerator:
    return DbReceiptGenerator(db)


def get_notification_dispatcher(db: Session = Depends(get_db)) -> NotificationDispatcher:
    return DbNotificationDispatcher(db)


@router.post("/callback", status_code=status.HTTP_200_OK)
async def mpesa_callback(
    request: Request,
    token: str | None = Query(default=None),
    db: Session = Depends(get_db),
    receipts: ReceiptGenerator = Depends(get_receipt_generator),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> dict[str, Any]:
    # Authenticate before touching the body.
    mpesa_callbacks.authenticate_callback(token)

    raw_body = await request.body()
    try:
        payload: Any = json.loads(raw_body or b"null")
    except ValueError:
        logger.warning("M-Pesa callback body is not JSON", extra={"size": len(raw_body)})
        payload = {"_raw": raw_body.decode("utf-8", errors="replace")}

    return await run_in_threadpool(
        mpesa_callbacks.receive_callback,
        db,
        token=token,
        payload=payload,
        receipts=receipts,
        notifier=notifier,
    )
