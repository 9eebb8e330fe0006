"""Mercado Pago webhook receiver"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from paysync.core.config import settings
from paysync.core.security import get_client_ip
from paysync.db.session import get_db
from paysync.services.mercadopago.webhooks import (
    INVALID_SIGNATURE,
    WebhookNotification,
    process_webhook,
    record_outcome,
    validate_webhook_signature,
)

webhook_logger = logging.getLogger("webhook")
security_logger = logging.getLogger("security")

router = APIRouter(prefix="/api/mercadopago", tags=["webhooks"])


def _parse_notification(request: Request, body: bytes) -> WebhookNotification:
    """Body JSON, falling back to the ``type``/``data.id`` query parameters of legacy IPN calls"""
    if body.strip():
        data = json.loads(body)
        if not isinstance(data, dict):
            raise ValueError("Notification body must be a JSON object")
    else:
        params = request.query_params
        data = {
            "type": params.get("type") or params.get("topic") or "unknown",
            "data": {"id": params.get("data.id") or params.get("id")},
        }
    return WebhookNotification.model_validate(data)


@router.post("/webhook")
async def mercadopago_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Mercado Pago notifications.

    Returns 200 for every authenticated notification, including ones that
    could not be applied, so the provider does not retry storms; the outcome
    is reported in the body and in metrics.
    """
    body = await request.body()

    try:
        notification = _parse_notification(request, body)
    except (ValueError, ValidationError) as e:
        webhook_logger.warning(f"Rejected unparseable webhook: {e}")
        raise HTTPException(400, "Invalid notification payload")

    if settings.MP_WEBHOOK_SECRET:
        data_id = request.query_params.get("data.id") or notification.data_id
        if not validate_webhook_signature(
            request.headers.get("x-signature"),
            request.headers.get("x-request-id"),
            data_id,
            settings.MP_WEBHOOK_SECRET,
        ):
            record_outcome(notification.type, INVALID_SIGNATURE)
            security_logger.warning(
                f"Invalid Mercado Pago webhook signature - IP: {get_client_ip(request)}, "
                f"type: {notification.type}, data.id: {data_id}"
            )
            raise HTTPException(401, "Invalid signature")
    else:
        webhook_logger.debug("MP_WEBHOOK_SECRET not set, skipping signature validation")

    result = await process_webhook(notification, db)
    return {"received": True, **result.to_dict()}
