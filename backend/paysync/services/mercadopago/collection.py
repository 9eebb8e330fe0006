"""Payment collection flows: start a QR or Point/PDV collection, refund an approved one"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from paysync.core.exceptions import ConflictError, ProviderAPIError
from paysync.models.payment_attempt import PaymentAttempt
from paysync.services import order_service
from paysync.services.mercadopago import credentials as credentials_service
from paysync.services.mercadopago import payments
from paysync.services.mercadopago.attempts import (
    AttemptStatus,
    PaymentFlow,
    create_attempt,
    get_latest_attempt,
    update_attempt,
)

mercadopago_logger = logging.getLogger("mercadopago")


def _error_payload(exc: Exception) -> dict:
    payload = {"error": str(exc) or type(exc).__name__, "type": type(exc).__name__}
    if isinstance(exc, ProviderAPIError):
        payload["status_code"] = exc.status_code
        payload["provider_payload"] = exc.payload
    return payload


async def start_payment(
    tenant_id: str,
    order_id: str,
    db: Session,
    flow: PaymentFlow = PaymentFlow.PDV,
    terminal_id: Optional[str] = None,
) -> PaymentAttempt:
    """Start collecting a closed order.

    Creates a ``pending`` attempt, pushes the intent to the provider and
    moves the attempt to ``processing``. When the provider call fails the
    attempt is moved to ``error`` and the exception propagates.

    Raises:
        ConflictError: credentials_missing, order_not_found, order_not_closed,
            order_total_invalid or attempt_in_progress
    """
    flow = PaymentFlow(flow)
    creds = await credentials_service.get_credentials(tenant_id, db)
    if not creds:
        raise ConflictError(
            ConflictError.CREDENTIALS_MISSING,
            "Mercado Pago is not connected for this tenant. Connect it before collecting payments.",
        )

    total = order_service.get_order_total(tenant_id, order_id, db)
    if not total.is_closed:
        raise ConflictError(ConflictError.ORDER_NOT_CLOSED, f"Order {order_id} must be closed before collecting payment")
    if total.amount_cents <= 0:
        raise ConflictError(
            ConflictError.ORDER_TOTAL_INVALID,
            f"Order {order_id} total must be positive (got {total.amount_cents} cents)",
        )

    attempt = create_attempt(tenant_id, order_id, total.amount_cents, db, flow=flow, terminal_id=terminal_id)

    try:
        if flow == PaymentFlow.QR:
            if not creds.provider_user_id:
                raise ConflictError(
                    ConflictError.CREDENTIALS_MISSING,
                    "Stored credentials have no Mercado Pago user id; reconnect the account",
                )
            result = await payments.create_qr_payment(
                creds.access_token, creds.provider_user_id, order_id, total.amount_cents
            )
            return update_attempt(
                attempt.id,
                AttemptStatus.PROCESSING,
                db,
                provider_transaction_id=result.get("in_store_order_id"),
                qr_data=result.get("qr_data"),
                response_payload=result,
            )

        device_id = terminal_id
        if not device_id:
            terminals = await payments.list_terminals(creds.access_token)
            if not terminals:
                raise ConflictError(
                    ConflictError.CREDENTIALS_MISSING,
                    "No Point terminals are registered on the connected Mercado Pago account",
                )
            device_id = terminals[0].get("id")

        result = await payments.create_pdv_payment_intent(
            creds.access_token, device_id, order_id, total.amount_cents
        )
        return update_attempt(
            attempt.id,
            AttemptStatus.PROCESSING,
            db,
            provider_transaction_id=result.get("id"),
            terminal_id=device_id,
            response_payload=result,
        )
    except Exception as e:
        mercadopago_logger.error(
            f"Failed to start {flow.value} payment for order {order_id} (attempt {attempt.id}): {e}"
        )
        update_attempt(attempt.id, AttemptStatus.ERROR, db, error_payload=_error_payload(e))
        raise


async def refund_attempt(
    tenant_id: str,
    order_id: str,
    db: Session,
    amount_cents: Optional[int] = None,
) -> PaymentAttempt:
    """Refund the approved payment of an order, fully or partially.

    Refunded amounts accumulate in ``response_payload["refunded_cents"]``.
    Omitting ``amount_cents`` refunds whatever remains. The attempt moves to
    ``canceled`` once the running total reaches the charged amount.
    """
    attempt = get_latest_attempt(tenant_id, order_id, db)
    if not attempt:
        raise ConflictError(ConflictError.ATTEMPT_NOT_FOUND, f"No payment attempt found for order {order_id}")
    if attempt.status != AttemptStatus.APPROVED.value:
        raise ConflictError(
            ConflictError.REFUND_NOT_ALLOWED,
            f"Only approved payments can be refunded (attempt {attempt.id} is {attempt.status})",
        )

    payment_id = (attempt.response_payload or {}).get("payment_id") or attempt.provider_transaction_id
    if not payment_id:
        raise ConflictError(
            ConflictError.REFUND_NOT_ALLOWED,
            f"Attempt {attempt.id} has no provider payment to refund",
        )
    already_refunded = int((attempt.response_payload or {}).get("refunded_cents") or 0)
    remaining = attempt.amount_cents - already_refunded
    if remaining <= 0:
        raise ConflictError(
            ConflictError.REFUND_NOT_ALLOWED,
            f"Attempt {attempt.id} is already fully refunded",
        )
    if amount_cents is not None and amount_cents > remaining:
        raise ConflictError(
            ConflictError.REFUND_NOT_ALLOWED,
            f"Refund of {amount_cents} cents exceeds the {remaining} cents left of the "
            f"charged {attempt.amount_cents} cents",
            refunded_cents=already_refunded,
        )
    refund_cents = remaining if amount_cents is None else amount_cents

    creds = await credentials_service.get_credentials(tenant_id, db)
    if not creds:
        raise ConflictError(ConflictError.CREDENTIALS_MISSING, "Mercado Pago is not connected for this tenant")

    refund = await payments.create_refund(
        creds.access_token,
        str(payment_id),
        amount_cents=None if refund_cents == attempt.amount_cents else refund_cents,
    )

    response_payload = dict(attempt.response_payload or {})
    response_payload["refunds"] = list(response_payload.get("refunds") or []) + [refund]
    response_payload["refunded_cents"] = already_refunded + refund_cents

    is_full = response_payload["refunded_cents"] >= attempt.amount_cents
    status = AttemptStatus.CANCELED if is_full else AttemptStatus.APPROVED
    mercadopago_logger.info(
        f"Refunded {refund_cents} cents of payment {payment_id} for order {order_id} "
        f"({response_payload['refunded_cents']}/{attempt.amount_cents} refunded)"
    )
    return update_attempt(attempt.id, status, db, response_payload=response_payload)
