"""Audited dispatch of domain events.

``dispatch`` writes a ``pending`` row to ``domain_events``, runs the single
handler registered for the event type and records ``processed`` with the
result or ``failed`` with the error before re-raising. There is no retry
or queueing. A process crash while a handler runs leaves its row
``pending``; ``list_stale_pending_events`` surfaces those rows for an
operator.
"""
import inspect
import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, List, Optional

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from sqlalchemy.orm import Session

from paysync.core.metrics import domain_events_counter
from paysync.core.otel import traced
from paysync.models.domain_event import DomainEvent
from paysync.services.events.contracts import EventPayload, EventType
from paysync.services.events.handlers import registry
from paysync.utils.dates import utcnow

dispatch_logger = logging.getLogger("dispatch")

PENDING = "pending"
PROCESSED = "processed"
FAILED = "failed"


def serialize_result(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    return jsonable_encoder(result)


class EventLogEntry:
    """Handle yielded by ``event_log_entry``; the block sets ``result``"""

    def __init__(self, event_id: int):
        self.event_id = event_id
        self.result: Any = None


def _finish(db: Session, event_id: int, event_type: str, status: str,
            result: Any = None, error_message: Optional[str] = None) -> None:
    try:
        entry = db.get(DomainEvent, event_id)
        entry.status = status
        entry.result = result
        entry.error_message = error_message
        db.commit()
    except Exception as e:
        db.rollback()
        dispatch_logger.error(
            f"Could not record outcome '{status}' for domain event {event_id} ({event_type}): {e}",
            exc_info=True,
        )
        return
    domain_events_counter.labels(event_type=event_type, status=status).inc()


@contextmanager
def event_log_entry(db: Session, event_type: EventType, payload: EventPayload):
    """Insert a pending log row and guarantee exactly one terminal update on exit"""
    entry = DomainEvent(
        tenant_id=payload.tenant_id,
        event_type=event_type.value,
        payload=payload.model_dump(mode="json"),
        status=PENDING,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    handle = EventLogEntry(entry.id)

    try:
        yield handle
    except BaseException as exc:
        # Drop whatever the handler left half-written before recording the failure
        db.rollback()
        message = str(exc) or type(exc).__name__
        dispatch_logger.warning(f"Domain event {handle.event_id} ({event_type.value}) failed: {message}")
        _finish(db, handle.event_id, event_type.value, FAILED, error_message=message)
        raise
    else:
        _finish(db, handle.event_id, event_type.value, PROCESSED, result=serialize_result(handle.result))
        dispatch_logger.info(f"Domain event {handle.event_id} ({event_type.value}) processed")


async def dispatch(event_type, payload: Any, db: Session) -> Any:
    """Run the handler for ``event_type`` inside an audited event log entry.

    ``payload`` may be the event's payload model or a mapping validated
    against it. Handler exceptions propagate after the failure is recorded.
    """
    event_type = EventType(event_type)
    registration = registry.get(event_type)
    payload = registration.payload_model.model_validate(payload)

    with traced("domain_event.dispatch", **{"event.type": event_type.value, "tenant.id": payload.tenant_id}):
        with event_log_entry(db, event_type, payload) as entry:
            result = registration.handler(payload, db)
            if inspect.isawaitable(result):
                result = await result
            entry.result = result

    return result


def list_stale_pending_events(db: Session, older_than: timedelta = timedelta(minutes=15)) -> List[DomainEvent]:
    """Rows still ``pending`` after ``older_than``: handlers interrupted by a crash"""
    cutoff = utcnow() - older_than
    return db.query(DomainEvent).filter(
        DomainEvent.status == PENDING,
        DomainEvent.created_at < cutoff,
    ).order_by(DomainEvent.created_at.asc()).all()
