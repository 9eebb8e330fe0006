"""Prometheus metrics for the application"""
from datetime import timedelta

from prometheus_client import Counter, Gauge, REGISTRY


def _register(metric_class, name, documentation, labelnames=()):
    # Re-importing the module (tests, reloads) must not fail on duplicate registration
    try:
        return metric_class(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Event log metrics
domain_events_counter = _register(
    Counter,
    'paysync_domain_events_total',
    'Total number of dispatched domain events by final status',
    ['event_type', 'status']
)

stale_domain_events_gauge = _register(
    Gauge,
    'paysync_stale_pending_domain_events',
    'Domain events still pending after the staleness window (interrupted handlers)'
)

# Webhook metrics
webhook_notifications_counter = _register(
    Counter,
    'paysync_webhook_notifications_total',
    'Total number of provider webhook notifications by outcome',
    ['type', 'outcome']
)

# Credential metrics
credential_refresh_counter = _register(
    Counter,
    'paysync_credential_refresh_total',
    'Total number of provider token refresh attempts by outcome',
    ['outcome']
)

# Payment attempt metrics
attempt_transitions_counter = _register(
    Counter,
    'paysync_payment_attempt_transitions_total',
    'Total number of payment attempt status transitions',
    ['status']
)

active_attempts_gauge = _register(
    Gauge,
    'paysync_active_payment_attempts',
    'Payment attempts currently pending or processing',
    ['status']
)


def update_stale_events_gauge(db, older_than: timedelta = timedelta(minutes=15)):
    """Refresh the stale pending events gauge from the database"""
    from paysync.services.events.dispatcher import list_stale_pending_events

    stale_domain_events_gauge.set(len(list_stale_pending_events(db, older_than)))


def update_active_attempts_gauge(db):
    """Refresh the active attempt gauge from the database"""
    from sqlalchemy import func
    from paysync.models.payment_attempt import PaymentAttempt

    counts = dict(
        db.query(PaymentAttempt.status, func.count(PaymentAttempt.id))
        .filter(PaymentAttempt.status.in_(("pending", "processing")))
        .group_by(PaymentAttempt.status)
        .all()
    )
    for status in ("pending", "processing"):
        active_attempts_gauge.labels(status=status).set(counts.get(status, 0))
