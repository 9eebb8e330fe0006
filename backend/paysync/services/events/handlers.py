"""One handler per EventType. The registry is sealed at the bottom of this module."""
import logging

from sqlalchemy.orm import Session

from paysync.services import order_service
from paysync.services.events.contracts import (
    AttemptResult,
    CancelResult,
    CredentialsDisconnectedPayload,
    CredentialsResult,
    CredentialsUpsertedPayload,
    DisconnectResult,
    EventType,
    OrderClosedPayload,
    OrderClosedResult,
    PaymentCancelPayload,
    PaymentRefundPayload,
    PaymentStartPayload,
)
from paysync.services.events.registry import HandlerRegistry
from paysync.services.mercadopago import attempts, collection
from paysync.services.mercadopago import credentials as credentials_service
from paysync.utils.dates import as_utc

logger = logging.getLogger(__name__)

registry = HandlerRegistry(EventType)


@registry.register(EventType.ORDER_CLOSED, OrderClosedPayload)
def handle_order_closed(payload: OrderClosedPayload, db: Session) -> OrderClosedResult:
    order = order_service.close_order(payload.tenant_id, payload.order_id, db)
    return OrderClosedResult(order_id=order.id, total_cents=order.total_cents, closed_at=as_utc(order.closed_at))


@registry.register(EventType.PAYMENT_START, PaymentStartPayload)
async def handle_payment_start(payload: PaymentStartPayload, db: Session) -> AttemptResult:
    attempt = await collection.start_payment(
        payload.tenant_id, payload.order_id, db, flow=payload.flow, terminal_id=payload.terminal_id
    )
    return AttemptResult.model_validate(attempt)


@registry.register(EventType.PAYMENT_CANCEL, PaymentCancelPayload)
async def handle_payment_cancel(payload: PaymentCancelPayload, db: Session) -> CancelResult:
    attempt = await attempts.cancel_active_attempt(payload.tenant_id, payload.order_id, db)
    if attempt is None:
        return CancelResult(canceled=False)
    return CancelResult(canceled=True, attempt=AttemptResult.model_validate(attempt))


@registry.register(EventType.PAYMENT_REFUND, PaymentRefundPayload)
async def handle_payment_refund(payload: PaymentRefundPayload, db: Session) -> AttemptResult:
    attempt = await collection.refund_attempt(
        payload.tenant_id, payload.order_id, db, amount_cents=payload.amount_cents
    )
    return AttemptResult.model_validate(attempt)


@registry.register(EventType.CREDENTIALS_UPSERTED, CredentialsUpsertedPayload)
def handle_credentials_upserted(payload: CredentialsUpsertedPayload, db: Session) -> CredentialsResult:
    creds = credentials_service.upsert_credentials(
        payload.tenant_id,
        payload.access_token.get_secret_value(),
        db,
        refresh_token=payload.refresh_token.get_secret_value() if payload.refresh_token else None,
        expires_in=payload.expires_in,
        app_id=payload.app_id,
        provider_user_id=payload.provider_user_id,
        contact_email=payload.contact_email,
    )
    return CredentialsResult(
        credential_id=creds.credential_id,
        provider_user_id=creds.provider_user_id,
        contact_email=creds.contact_email,
        expires_at=creds.expires_at,
    )


@registry.register(EventType.CREDENTIALS_DISCONNECTED, CredentialsDisconnectedPayload)
def handle_credentials_disconnected(payload: CredentialsDisconnectedPayload, db: Session) -> DisconnectResult:
    deactivated = credentials_service.deactivate_credentials(payload.tenant_id, db, reason=payload.reason)
    return DisconnectResult(deactivated=deactivated)


registry.seal()
