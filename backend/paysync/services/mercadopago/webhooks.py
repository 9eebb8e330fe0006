"""Mercado Pago webhook ingestion and reconciliation.

Notifications may arrive late, out of order or more than once. Every
handler is written so a replayed notification is a no-op: the attempt
stores the id of the last notification applied to it and a matching id
short-circuits as a duplicate. ``process_webhook`` never raises; every
failure becomes a ``WebhookResult`` the route can answer with.
"""
import hashlib
import hmac
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session

from paysync.core.metrics import webhook_notifications_counter
from paysync.models.payment_attempt import PaymentAttempt
from paysync.models.provider_credential import ProviderCredential
from paysync.services import alert_service
from paysync.services.alert_service import Alert
from paysync.services.mercadopago import credentials as credentials_service
from paysync.services.mercadopago import payments
from paysync.services.mercadopago.attempts import (
    AttemptStatus,
    TERMINAL_STATUSES,
    find_active_attempt_by_payment,
    find_active_attempt_by_transaction,
    find_active_attempt_for_order,
    update_attempt,
)
from paysync.utils.dates import utcnow

webhook_logger = logging.getLogger("webhook")

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"
TENANT_NOT_FOUND = "tenant_not_found"
FAILED = "failed"
INVALID_SIGNATURE = "invalid_signature"

PAYMENT_TYPES = {"payment"}
POINT_TYPES = {"point_integration_wh", "point_integration", "order"}
CONNECT_TYPES = {"mp-connect", "connect"}
CLAIM_TYPES = {"claim"}
SUBSCRIPTION_TYPES = {"subscription_preapproval", "subscription_authorized_payment"}
KNOWN_TYPES = PAYMENT_TYPES | POINT_TYPES | CONNECT_TYPES | CLAIM_TYPES | SUBSCRIPTION_TYPES

# Provider payment status -> attempt status; anything else maps to error
PAYMENT_STATUS_MAP = {
    "approved": AttemptStatus.APPROVED,
    "authorized": AttemptStatus.APPROVED,
    "in_process": AttemptStatus.PROCESSING,
    "in_mediation": AttemptStatus.PROCESSING,
    "pending": AttemptStatus.PENDING,
    "rejected": AttemptStatus.REJECTED,
    "cancelled": AttemptStatus.CANCELED,
    "refunded": AttemptStatus.CANCELED,
    "charged_back": AttemptStatus.ERROR,
}

# Point terminal action -> attempt status; unknown actions are acknowledged without change
POINT_ACTION_MAP = {
    "state_finished": AttemptStatus.APPROVED,
    "finished": AttemptStatus.APPROVED,
    "state_canceled": AttemptStatus.CANCELED,
    "canceled": AttemptStatus.CANCELED,
    "state_error": AttemptStatus.ERROR,
    "error": AttemptStatus.ERROR,
}

ALERT_TITLES = {
    AttemptStatus.APPROVED: "Pago aprobado",
    AttemptStatus.REJECTED: "Pago rechazado",
    AttemptStatus.CANCELED: "Pago cancelado",
    AttemptStatus.ERROR: "Error en el cobro",
}


class NotificationData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return None if v is None else str(v)


class WebhookNotification(BaseModel):
    """Inbound notification body"""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: str = Field(default="unknown")
    action: Optional[str] = None
    user_id: Optional[str] = None
    live_mode: Optional[bool] = None
    data: NotificationData = Field(default_factory=NotificationData)

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def coerce_str(cls, v):
        return None if v is None else str(v)

    @property
    def data_id(self) -> Optional[str]:
        return self.data.id


@dataclass
class WebhookResult:
    ok: bool
    type: str
    outcome: str
    tenant_id: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResolvedTenant:
    tenant_id: str
    credential_id: int


def map_payment_status(provider_status: Optional[str]) -> AttemptStatus:
    return PAYMENT_STATUS_MAP.get((provider_status or "").lower(), AttemptStatus.ERROR)


def map_point_action(action: Optional[str]) -> Optional[AttemptStatus]:
    return POINT_ACTION_MAP.get((action or "").lower())


def validate_webhook_signature(
    x_signature: Optional[str],
    x_request_id: Optional[str],
    data_id: Optional[str],
    secret: str,
) -> bool:
    """Verify the ``x-signature`` header (``ts=<epoch_ms>,v1=<hex hmac>``).

    The manifest is ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;`` built
    from the present fields only, signed with HMAC-SHA256. Fails closed and
    never raises.
    """
    if not x_signature or not secret:
        return False

    ts = ""
    received_hash = ""
    for part in x_signature.split(","):
        key, sep, value = part.partition("=")
        if not sep:
            continue
        key = key.strip()
        if key == "ts":
            ts = value.strip()
        elif key == "v1":
            received_hash = value.strip()

    if not ts or not received_hash:
        return False

    segments = []
    if data_id:
        segments.append(f"id:{data_id}")
    if x_request_id:
        segments.append(f"request-id:{x_request_id}")
    segments.append(f"ts:{ts}")
    manifest = ";".join(segments) + ";"

    expected = hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).digest()
    try:
        provided = bytes.fromhex(received_hash)
    except ValueError:
        return False
    if len(provided) != len(expected):
        return False
    return hmac.compare_digest(expected, provided)


def resolve_webhook_tenant(
    provider_user_id: Optional[str],
    db: Session,
    contact_email: Optional[str] = None,
) -> Optional[ResolvedTenant]:
    """Find the tenant whose live credential belongs to the notifying account.

    Matches on provider user id, then falls back to the contact email.
    """
    def _live():
        return db.query(ProviderCredential).filter(
            ProviderCredential.status == "active",
            ProviderCredential.deleted_at.is_(None),
        )

    row = None
    if provider_user_id:
        row = _live().filter(
            ProviderCredential.provider_user_id == str(provider_user_id)
        ).order_by(ProviderCredential.created_at.desc()).first()
    if not row and contact_email:
        row = _live().filter(
            ProviderCredential.contact_email == contact_email
        ).order_by(ProviderCredential.created_at.desc()).first()
    if not row:
        return None
    return ResolvedTenant(tenant_id=row.tenant_id, credential_id=row.id)


def _latest_with_notification(tenant_id: str, notification_id: str, db: Session, **filters) -> Optional[PaymentAttempt]:
    query = db.query(PaymentAttempt).filter(
        PaymentAttempt.tenant_id == tenant_id,
        PaymentAttempt.last_notification_id == notification_id,
    )
    for column, value in filters.items():
        query = query.filter(getattr(PaymentAttempt, column) == value)
    return query.first()


def _emit_attempt_alert(tenant_id: str, attempt: PaymentAttempt, source: str) -> None:
    status = AttemptStatus(attempt.status)
    if status not in TERMINAL_STATUSES:
        return
    amount = f"{attempt.amount_cents / 100:.2f}"
    alert_service.emit_alerts(Alert(
        tenant_id=tenant_id,
        severity=alert_service.SEVERITY_BY_STATUS[status.value],
        kind=f"payment_{status.value}",
        title=ALERT_TITLES[status],
        message=f"Orden {attempt.order_id}: cobro de ${amount} {status.value} ({source}).",
        details={
            "attempt_id": attempt.id,
            "order_id": attempt.order_id,
            "status": status.value,
            "provider_transaction_id": attempt.provider_transaction_id,
        },
    ))


async def handle_payment_event(notification: WebhookNotification, tenant_id: str, db: Session) -> WebhookResult:
    payment_id = notification.data_id
    if not payment_id:
        return WebhookResult(False, notification.type, FAILED, tenant_id, "Payment notification without data.id")

    creds = await credentials_service.get_credentials(tenant_id, db)
    if not creds:
        return WebhookResult(False, notification.type, FAILED, tenant_id, "Tenant credentials unavailable")

    try:
        payment = await payments.fetch_payment_details(creds.access_token, payment_id)
    except Exception as e:
        webhook_logger.error(f"Failed to fetch payment {payment_id} for notification {notification.id}: {e}")
        return WebhookResult(
            False, notification.type, FAILED, tenant_id,
            f"Failed to fetch payment {payment_id}: {type(e).__name__}: {e}",
        )

    order_id = payment.get("external_reference")
    if not order_id:
        return WebhookResult(True, notification.type, IGNORED, tenant_id, f"Payment {payment_id} has no external_reference")
    order_id = str(order_id)

    notification_id = notification.id or payment_id
    attempt = find_active_attempt_for_order(tenant_id, order_id, db)
    if not attempt:
        if _latest_with_notification(tenant_id, notification_id, db, order_id=order_id):
            webhook_logger.info(f"Duplicate payment notification {notification_id} for order {order_id}")
            return WebhookResult(True, notification.type, DUPLICATE, tenant_id,
                                 f"Duplicate payment notification {notification_id}")
        return WebhookResult(True, notification.type, IGNORED, tenant_id,
                             f"No active attempt for order {order_id}; integration-only event")

    if attempt.last_notification_id == notification_id:
        webhook_logger.info(f"Duplicate payment notification {notification_id} for attempt {attempt.id}")
        return WebhookResult(True, notification.type, DUPLICATE, tenant_id,
                             f"Duplicate payment notification {notification_id}")

    new_status = map_payment_status(payment.get("status"))
    if new_status == AttemptStatus.PENDING and attempt.status == AttemptStatus.PROCESSING.value:
        # Stale notification; the provider already accepted the intent
        new_status = AttemptStatus.PROCESSING

    response_payload = dict(attempt.response_payload or {})
    response_payload.update({
        "payment_id": str(payment.get("id") or payment_id),
        "payment_status": payment.get("status"),
        "status_detail": payment.get("status_detail"),
        "transaction_amount": payment.get("transaction_amount"),
        "payment_method_id": payment.get("payment_method_id"),
        "date_approved": payment.get("date_approved"),
    })
    updated = update_attempt(
        attempt.id,
        new_status,
        db,
        provider_transaction_id=attempt.provider_transaction_id or str(payment.get("id") or payment_id),
        response_payload=response_payload,
        last_notification_id=notification_id,
        last_processed_at=utcnow(),
    )
    _emit_attempt_alert(tenant_id, updated, "pago")
    return WebhookResult(True, notification.type, PROCESSED, tenant_id, f"Payment {payment_id} -> {new_status.value}")


async def handle_point_event(notification: WebhookNotification, tenant_id: str, db: Session) -> WebhookResult:
    intent_id = notification.data_id
    new_status = map_point_action(notification.action)
    if new_status is None:
        return WebhookResult(True, notification.type, IGNORED, tenant_id, f"Ignored point action: {notification.action}")
    if not intent_id:
        return WebhookResult(False, notification.type, FAILED, tenant_id, "Point notification without data.id")

    notification_id = notification.id or f"{intent_id}:{notification.action}"
    attempt = find_active_attempt_by_transaction(tenant_id, intent_id, db)
    if not attempt:
        if _latest_with_notification(tenant_id, notification_id, db, provider_transaction_id=intent_id):
            webhook_logger.info(f"Duplicate point notification {notification_id} for intent {intent_id}")
            return WebhookResult(True, notification.type, DUPLICATE, tenant_id,
                                 f"Duplicate point notification {notification_id}")
        return WebhookResult(True, notification.type, IGNORED, tenant_id, f"No active attempt for intent {intent_id}")

    if attempt.last_notification_id == notification_id:
        webhook_logger.info(f"Duplicate point notification {notification_id} for attempt {attempt.id}")
        return WebhookResult(True, notification.type, DUPLICATE, tenant_id,
                             f"Duplicate point notification {notification_id}")

    response_payload = dict(attempt.response_payload or {})
    response_payload["point_event"] = notification.model_dump(mode="json")
    updated = update_attempt(
        attempt.id,
        new_status,
        db,
        response_payload=response_payload,
        last_notification_id=notification_id,
        last_processed_at=utcnow(),
    )
    _emit_attempt_alert(tenant_id, updated, "terminal")
    return WebhookResult(True, notification.type, PROCESSED, tenant_id, f"Point intent {intent_id} -> {new_status.value}")


async def handle_connect_event(notification: WebhookNotification, tenant_id: str, db: Session) -> WebhookResult:
    action = notification.action or ""
    if not action.endswith("deauthorized"):
        return WebhookResult(True, notification.type, IGNORED, tenant_id, f"Connect action: {action}")

    credentials_service.deactivate_credentials(tenant_id, db, reason="Deauthorized from Mercado Pago")
    webhook_logger.warning(f"Mercado Pago access revoked for tenant {tenant_id}")
    alert_service.emit_alerts(Alert(
        tenant_id=tenant_id,
        severity=alert_service.CRITICAL,
        kind="integration_deauthorized",
        title="Mercado Pago desconectado",
        message="La cuenta de Mercado Pago revocó el acceso. Vuelve a conectarla para seguir cobrando.",
        details={"notification_id": notification.id, "action": action},
    ))
    return WebhookResult(True, notification.type, PROCESSED, tenant_id, "Credentials deauthorized")


async def handle_claim_event(notification: WebhookNotification, tenant_id: str, db: Session) -> WebhookResult:
    claim_id = notification.data_id
    action = notification.action or "created"
    suffix = "" if action == "created" else f" ({action})"

    alert_service.emit_alerts(
        Alert(
            tenant_id=tenant_id,
            severity=alert_service.CRITICAL,
            kind="claim",
            title=f"Reclamo recibido{suffix}",
            message=(
                "Mercado Pago registró un reclamo asociado a un pago de esta cuenta. "
                "Revisa el panel de Mercado Pago y responde dentro del plazo indicado."
            ),
            details={"claim_id": claim_id, "notification_id": notification.id, "action": action},
        ),
        Alert(
            tenant_id=tenant_id,
            audience=alert_service.ADMIN,
            severity=alert_service.WARNING,
            kind="claim",
            title=f"Reclamo MP - tenant {tenant_id}{suffix}",
            message=f"Claim ID: {claim_id}. Action: {action}.",
            details={"tenant_id": tenant_id, "claim_id": claim_id, "notification_id": notification.id},
        ),
    )

    attempt = find_active_attempt_by_payment(tenant_id, claim_id, db) if claim_id else None
    if attempt and (notification.id is None or attempt.last_notification_id != notification.id):
        update_attempt(
            attempt.id,
            AttemptStatus.ERROR,
            db,
            error_payload={"claim_id": claim_id, "action": action},
            last_notification_id=notification.id,
            last_processed_at=utcnow(),
        )

    detail = f"Claim {claim_id} (action={action}): alert created"
    if attempt:
        detail += ", attempt marked error"
    return WebhookResult(True, notification.type, PROCESSED, tenant_id, detail)


async def handle_subscription_event(notification: WebhookNotification, tenant_id: str, db: Session) -> WebhookResult:
    action = notification.action or ""
    is_payment = notification.type == "subscription_authorized_payment"
    failed = is_payment and any(word in action for word in ("fail", "reject", "cancel"))

    if is_payment:
        title = "Pago de suscripción fallido" if failed else "Pago de suscripción procesado"
        message = (
            "Un cobro de suscripción no pudo procesarse. Revisa el estado en el panel de Mercado Pago."
            if failed else "Se procesó correctamente un cobro de suscripción."
        )
    else:
        title = "Actualización de suscripción"
        message = f"Estado de suscripción actualizado ({action or notification.type})."

    alert_service.emit_alerts(Alert(
        tenant_id=tenant_id,
        severity=alert_service.WARNING if failed else alert_service.INFO,
        kind="subscription",
        title=title,
        message=message,
        details={"subscription_id": notification.data_id, "event_type": notification.type, "action": action},
    ))
    return WebhookResult(True, notification.type, PROCESSED, tenant_id,
                         f"Subscription event {notification.type}/{action}: alert created")


async def _route(notification: WebhookNotification, tenant_id: str, db: Session) -> WebhookResult:
    kind = notification.type
    if kind in PAYMENT_TYPES:
        return await handle_payment_event(notification, tenant_id, db)
    if kind in POINT_TYPES:
        return await handle_point_event(notification, tenant_id, db)
    if kind in CONNECT_TYPES:
        return await handle_connect_event(notification, tenant_id, db)
    if kind in CLAIM_TYPES:
        return await handle_claim_event(notification, tenant_id, db)
    if kind in SUBSCRIPTION_TYPES:
        return await handle_subscription_event(notification, tenant_id, db)
    return WebhookResult(True, kind, IGNORED, tenant_id, f"Acknowledged unhandled type: {kind}")


def record_outcome(notification_type: str, outcome: str) -> None:
    label = notification_type if notification_type in KNOWN_TYPES else "other"
    webhook_notifications_counter.labels(type=label, outcome=outcome).inc()


async def process_webhook(
    notification: Union[WebhookNotification, Dict[str, Any]],
    db: Session,
) -> WebhookResult:
    """Resolve the owning tenant and reconcile one notification. Never raises."""
    try:
        if not isinstance(notification, WebhookNotification):
            notification = WebhookNotification.model_validate(notification)
    except Exception as e:
        webhook_logger.warning(f"Unparseable webhook notification: {e}")
        record_outcome("other", FAILED)
        return WebhookResult(False, "unknown", FAILED, None, f"Invalid notification: {e}")

    contact_email = (notification.model_extra or {}).get("contact_email")
    try:
        resolved = resolve_webhook_tenant(notification.user_id, db, contact_email=contact_email)
    except Exception as e:
        db.rollback()
        webhook_logger.error(
            f"Tenant resolution failed for webhook {notification.type} {notification.id}: {e}",
            exc_info=True,
        )
        record_outcome(notification.type, FAILED)
        return WebhookResult(False, notification.type, FAILED, None, f"{type(e).__name__}: {e}")

    if not resolved:
        webhook_logger.info(
            f"No tenant for Mercado Pago user_id={notification.user_id} "
            f"(notification {notification.id}, type {notification.type}); acknowledging"
        )
        record_outcome(notification.type, TENANT_NOT_FOUND)
        return WebhookResult(False, notification.type, TENANT_NOT_FOUND, None,
                             f"No tenant found for MP user_id={notification.user_id}")

    try:
        result = await _route(notification, resolved.tenant_id, db)
    except Exception as e:
        db.rollback()
        webhook_logger.error(
            f"Webhook {notification.type} {notification.id} failed for tenant {resolved.tenant_id}: {e}",
            exc_info=True,
        )
        result = WebhookResult(False, notification.type, FAILED, resolved.tenant_id, f"{type(e).__name__}: {e}")

    record_outcome(notification.type, result.outcome)
    webhook_logger.info(
        f"Webhook {notification.type} {notification.id} tenant={result.tenant_id} "
        f"outcome={result.outcome}: {result.detail}"
    )
    return result
