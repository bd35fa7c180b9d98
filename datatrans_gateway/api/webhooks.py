"""Datatrans webhook receiver.

POST /api/webhooks/datatrans: receives transaction status callbacks.
Runs behind ``ValidateWebhookMiddleware``: by the time this handler
executes, the signature has been verified over the exact bytes that
``request.body()`` returns here.

  1. Read the (replayed) raw body
  2. Parse payload
  3. Route by transaction status
  4. Return 200 immediately
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from datatrans_gateway.models.dto import WebhookEvent
from datatrans_gateway.models.enums import PAID_STATUSES, TransactionStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/datatrans", status_code=200)
async def receive_datatrans_webhook(request: Request) -> dict[str, str]:
    """Receive a verified Datatrans transaction callback.

    Returns:
        {"status": "accepted"} on success.

    Raises:
        HTTPException(400): if the verified body is not a transaction payload.
    """
    body = await request.body()

    try:
        event = WebhookEvent.model_validate_json(body)
    except ValidationError as exc:
        logger.warning("Webhook payload rejected: %d validation errors", exc.error_count())
        raise HTTPException(status_code=400, detail="Invalid webhook payload") from exc

    logger.info(
        "Webhook received",
        extra={
            "transaction_id": event.transaction_id,
            "status": event.status,
            "refno": event.refno,
            "payment_method": event.payment_method,
        },
    )

    _handle_status(event)

    return {"status": "accepted"}


def _handle_status(event: WebhookEvent) -> None:
    """Route by status.  Thin logging only, no business logic."""
    if not TransactionStatus.is_valid(event.status):
        logger.debug("Unknown transaction status, no-op", extra={"status": event.status})
        return

    status = TransactionStatus(event.status)

    if status in PAID_STATUSES:
        logger.info(
            "Payment confirmed",
            extra={
                "transaction_id": event.transaction_id,
                "refno": event.refno,
                "amount": event.detail.authorize.amount,
                "currency": event.currency,
            },
        )

    elif status in (TransactionStatus.FAILED, TransactionStatus.CANCELED):
        logger.info(
            "Payment not completed",
            extra={"transaction_id": event.transaction_id, "status": status.value},
        )

    else:
        logger.debug("Intermediate status, no-op", extra={"status": status.value})
