"""Payment attempt ledger and state machine.

An attempt moves ``pending -> processing -> {approved | rejected | canceled | error}``
and is never reopened once terminal; retrying creates a new row. At most
one non-terminal attempt exists per (tenant, order): the application check
below gives a descriptive error, the partial unique index
``uq_payment_attempts_active`` closes the race between check and insert.
"""
import logging
from enum import Enum
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paysync.core.exceptions import ConflictError
from paysync.core.metrics import attempt_transitions_counter
from paysync.models.payment_attempt import PaymentAttempt
from paysync.services.mercadopago import credentials as credentials_service
from paysync.services.mercadopago import payments
from paysync.utils.tasks import spawn_best_effort

logger = logging.getLogger(__name__)


class AttemptStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELED = "canceled"
    ERROR = "error"


class PaymentFlow(str, Enum):
    QR = "qr"
    PDV = "pdv"


TERMINAL_STATUSES = frozenset({
    AttemptStatus.APPROVED,
    AttemptStatus.REJECTED,
    AttemptStatus.CANCELED,
    AttemptStatus.ERROR,
})
ACTIVE_STATUSES = frozenset({AttemptStatus.PENDING, AttemptStatus.PROCESSING})

_ACTIVE_VALUES = tuple(status.value for status in ACTIVE_STATUSES)


class _Unset:
    def __repr__(self):
        return "UNSET"


UNSET: Any = _Unset()

_UPDATABLE_FIELDS = (
    "provider_transaction_id",
    "qr_data",
    "terminal_id",
    "response_payload",
    "error_payload",
    "last_notification_id",
    "last_processed_at",
)


def is_terminal(status) -> bool:
    return AttemptStatus(status) in TERMINAL_STATUSES


def _conflict_for(existing: PaymentAttempt, order_id: str) -> ConflictError:
    return ConflictError(
        ConflictError.ATTEMPT_IN_PROGRESS,
        f"A payment attempt for order {order_id} is already in progress "
        f"(id={existing.id}, status={existing.status}). Cancel it before retrying.",
        attempt_id=existing.id,
        status=existing.status,
    )


def find_active_attempt_for_order(tenant_id: str, order_id: str, db: Session) -> Optional[PaymentAttempt]:
    return db.query(PaymentAttempt).filter(
        PaymentAttempt.tenant_id == tenant_id,
        PaymentAttempt.order_id == order_id,
        PaymentAttempt.status.in_(_ACTIVE_VALUES),
    ).first()


def find_active_attempt_by_transaction(
    tenant_id: str, provider_transaction_id: str, db: Session
) -> Optional[PaymentAttempt]:
    return db.query(PaymentAttempt).filter(
        PaymentAttempt.tenant_id == tenant_id,
        PaymentAttempt.provider_transaction_id == provider_transaction_id,
        PaymentAttempt.status.in_(_ACTIVE_VALUES),
    ).first()


def find_active_attempt_by_payment(tenant_id: str, payment_id: str, db: Session) -> Optional[PaymentAttempt]:
    """Active attempt linked to a provider payment id.

    Payment ids live in ``response_payload["payment_id"]`` once a payment
    notification was reconciled; ``provider_transaction_id`` holds the
    intent or QR order id, or the payment id when nothing else was known.
    """
    attempt = find_active_attempt_by_transaction(tenant_id, payment_id, db)
    if attempt:
        return attempt

    active = db.query(PaymentAttempt).filter(
        PaymentAttempt.tenant_id == tenant_id,
        PaymentAttempt.status.in_(_ACTIVE_VALUES),
    ).all()
    for candidate in active:
        if str((candidate.response_payload or {}).get("payment_id")) == str(payment_id):
            return candidate
    return None


def create_attempt(
    tenant_id: str,
    order_id: str,
    amount_cents: int,
    db: Session,
    flow: PaymentFlow = PaymentFlow.PDV,
    terminal_id: Optional[str] = None,
) -> PaymentAttempt:
    """Insert a new ``pending`` attempt.

    Raises:
        ConflictError: ``attempt_in_progress`` when a non-terminal attempt exists
    """
    existing = find_active_attempt_for_order(tenant_id, order_id, db)
    if existing:
        raise _conflict_for(existing, order_id)

    attempt = PaymentAttempt(
        tenant_id=tenant_id,
        order_id=order_id,
        amount_cents=amount_cents,
        flow=PaymentFlow(flow).value,
        status=AttemptStatus.PENDING.value,
        terminal_id=terminal_id,
    )
    db.add(attempt)
    try:
        db.commit()
    except IntegrityError:
        # Lost the race against a concurrent insert
        db.rollback()
        existing = find_active_attempt_for_order(tenant_id, order_id, db)
        if existing:
            raise _conflict_for(existing, order_id)
        raise
    db.refresh(attempt)

    attempt_transitions_counter.labels(status=AttemptStatus.PENDING.value).inc()
    logger.info(f"Created payment attempt {attempt.id} for order {order_id} (tenant {tenant_id}, flow {attempt.flow})")
    return attempt


def update_attempt(
    attempt_id: int,
    status: AttemptStatus,
    db: Session,
    provider_transaction_id: Optional[str] = UNSET,
    qr_data: Optional[str] = UNSET,
    terminal_id: Optional[str] = UNSET,
    response_payload: Optional[dict] = UNSET,
    error_payload: Optional[dict] = UNSET,
    last_notification_id: Optional[str] = UNSET,
    last_processed_at=UNSET,
) -> Optional[PaymentAttempt]:
    """Set ``status`` and write only the optional fields that were supplied"""
    attempt = db.query(PaymentAttempt).filter(PaymentAttempt.id == attempt_id).first()
    if not attempt:
        return None

    supplied = {
        "provider_transaction_id": provider_transaction_id,
        "qr_data": qr_data,
        "terminal_id": terminal_id,
        "response_payload": response_payload,
        "error_payload": error_payload,
        "last_notification_id": last_notification_id,
        "last_processed_at": last_processed_at,
    }
    for field in _UPDATABLE_FIELDS:
        value = supplied[field]
        if value is not UNSET:
            setattr(attempt, field, value)

    previous = attempt.status
    attempt.status = AttemptStatus(status).value
    db.commit()
    db.refresh(attempt)

    if previous != attempt.status:
        attempt_transitions_counter.labels(status=attempt.status).inc()
        logger.info(f"Payment attempt {attempt.id}: {previous} -> {attempt.status}")
    return attempt


def get_attempt(tenant_id: str, attempt_id: int, db: Session) -> Optional[PaymentAttempt]:
    return db.query(PaymentAttempt).filter(
        PaymentAttempt.id == attempt_id,
        PaymentAttempt.tenant_id == tenant_id,
    ).first()


def get_latest_attempt(tenant_id: str, order_id: str, db: Session) -> Optional[PaymentAttempt]:
    """Most recent attempt for an order, whatever its status"""
    return db.query(PaymentAttempt).filter(
        PaymentAttempt.tenant_id == tenant_id,
        PaymentAttempt.order_id == order_id,
    ).order_by(PaymentAttempt.created_at.desc(), PaymentAttempt.id.desc()).first()


async def cancel_active_attempt(tenant_id: str, order_id: str, db: Session) -> Optional[PaymentAttempt]:
    """Cancel the order's non-terminal attempt, if any, so a new one can start.

    For the terminal flow the provider-side cancel is scheduled as
    best-effort work; the database transition happens regardless.
    """
    attempt = find_active_attempt_for_order(tenant_id, order_id, db)
    if not attempt:
        return None

    if attempt.terminal_id and attempt.provider_transaction_id:
        creds = await credentials_service.get_credentials(tenant_id, db)
        if creds:
            spawn_best_effort(
                payments.cancel_pdv_payment_intent(creds.access_token, attempt.provider_transaction_id),
                name=f"cancel-intent-{attempt.provider_transaction_id}",
            )
        else:
            logger.warning(
                f"Skipping terminal cancel for attempt {attempt.id}: tenant {tenant_id} has no credentials"
            )

    return update_attempt(attempt.id, AttemptStatus.CANCELED, db)

