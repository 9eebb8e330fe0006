"""Mercado Pago payment operations (terminals, QR, Point/PDV, refunds, payment lookups)"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from paysync.core.config import settings
from paysync.services.mercadopago.client import mp_request

mercadopago_logger = logging.getLogger("mercadopago")

DEFAULT_DESCRIPTION = "Orden"


def cents_to_decimal(amount_cents: int) -> Decimal:
    return (Decimal(amount_cents) / 100).quantize(Decimal("0.01"))


async def list_terminals(access_token: str) -> List[Dict[str, Any]]:
    """Point terminals registered on the connected account"""
    data = await mp_request(access_token, "GET", "/terminals/v1/list")
    terminals = (data.get("data") or {}).get("terminals")
    if terminals is None:
        terminals = data.get("devices") or []
    return terminals


async def create_qr_payment(
    access_token: str,
    provider_user_id: str,
    external_reference: str,
    amount_cents: int,
    description: str = DEFAULT_DESCRIPTION,
) -> Dict[str, Any]:
    """Create a dynamic in-store QR order. Returns ``qr_data`` and ``in_store_order_id``."""
    amount = float(cents_to_decimal(amount_cents))
    body = {
        "external_reference": external_reference,
        "title": description,
        "description": description,
        "total_amount": amount,
        "items": [
            {
                "sku_number": external_reference,
                "category": "marketplace",
                "title": description,
                "description": description,
                "quantity": 1,
                "unit_price": amount,
                "unit_measure": "unit",
                "total_amount": amount,
            }
        ],
        "cash_out": {"amount": 0},
    }
    path = (
        f"/instore/orders/qr/seller/collectors/{provider_user_id}"
        f"/pos/{settings.MP_QR_EXTERNAL_POS_ID}/qrs"
    )
    mercadopago_logger.info(f"Creating QR payment for order {external_reference} ({amount_cents} cents)")
    return await mp_request(access_token, "POST", path, json=body)


async def create_pdv_payment_intent(
    access_token: str,
    terminal_id: str,
    external_reference: str,
    amount_cents: int,
    description: str = DEFAULT_DESCRIPTION,
) -> Dict[str, Any]:
    """Push a payment intent to a Point terminal through the Orders API"""
    body = {
        "type": "point",
        "external_reference": external_reference,
        "description": description,
        "transactions": {
            "payments": [{"amount": str(cents_to_decimal(amount_cents))}],
        },
        "config": {
            "point": {"terminal_id": terminal_id, "print_on_terminal": "full_ticket"},
            "payment_method": {"default_type": "any"},
        },
    }
    mercadopago_logger.info(
        f"Creating PDV payment intent for order {external_reference} on terminal {terminal_id}"
    )
    return await mp_request(access_token, "POST", "/v1/orders", json=body)


async def cancel_pdv_payment_intent(access_token: str, intent_id: str) -> None:
    """Cancel a Point order. Raises on failure; callers schedule it as best-effort work."""
    await mp_request(access_token, "DELETE", f"/v1/orders/{intent_id}")
    mercadopago_logger.info(f"Canceled PDV payment intent {intent_id}")


async def fetch_payment_details(access_token: str, payment_id: str) -> Dict[str, Any]:
    """Payment lookup used by webhook reconciliation (shorter deadline than other calls)"""
    return await mp_request(
        access_token,
        "GET",
        f"/v1/payments/{payment_id}",
        timeout=settings.MP_WEBHOOK_FETCH_TIMEOUT,
    )


async def create_refund(
    access_token: str,
    payment_id: str,
    amount_cents: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Full refund when ``amount_cents`` is omitted, partial otherwise"""
    body = None
    if amount_cents is not None:
        if amount_cents <= 0:
            raise ValueError("Refund amount must be positive")
        body = {"amount": float(cents_to_decimal(amount_cents))}
    mercadopago_logger.info(f"Creating refund for payment {payment_id} (amount_cents={amount_cents})")
    return await mp_request(
        access_token,
        "POST",
        f"/v1/payments/{payment_id}/refunds",
        json=body,
        idempotency_key=idempotency_key,
    )
