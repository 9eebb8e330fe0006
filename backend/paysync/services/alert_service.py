"""Platform alerts: persisted notifications plus realtime fan-out via Redis pub/sub"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from paysync.db import redis as redis_module
from paysync.db.session import SessionLocal
from paysync.models.platform_alert import PlatformAlert
from paysync.utils.tasks import spawn_best_effort

logger = logging.getLogger(__name__)

INFO = "info"
WARNING = "warning"
CRITICAL = "critical"

TENANT = "tenant"
ADMIN = "admin"

# Attempt status -> alert severity for terminal transitions
SEVERITY_BY_STATUS = {
    "approved": INFO,
    "rejected": WARNING,
    "canceled": WARNING,
    "error": CRITICAL,
}


@dataclass
class Alert:
    tenant_id: Optional[str]
    severity: str
    kind: str
    title: str
    message: str
    audience: str = TENANT
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def channel(self) -> str:
        if self.audience == ADMIN or not self.tenant_id:
            return redis_module.ADMIN_ALERT_CHANNEL
        return redis_module.tenant_alert_channel(self.tenant_id)


async def publish_alert(alert: Alert, alert_id: Optional[int] = None) -> None:
    """Publish one alert to its Redis channel"""
    event = {
        "type": "platform_alert",
        "data": {
            "id": alert_id,
            "tenant_id": alert.tenant_id,
            "audience": alert.audience,
            "severity": alert.severity,
            "kind": alert.kind,
            "title": alert.title,
            "message": alert.message,
            "details": alert.details,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    receivers = await redis_module.publish(alert.channel, event)
    logger.info(f"Published {alert.severity} alert {alert.kind} to {alert.channel}: {receivers} subscriber(s)")


def persist_alerts(alerts: List[Alert], db: Session) -> List[PlatformAlert]:
    rows = [
        PlatformAlert(
            tenant_id=alert.tenant_id,
            audience=alert.audience,
            severity=alert.severity,
            kind=alert.kind,
            title=alert.title,
            message=alert.message,
            details=alert.details or None,
        )
        for alert in alerts
    ]
    db.add_all(rows)
    db.commit()
    for row in rows:
        db.refresh(row)
    return rows


async def _deliver(alerts: List[Alert]) -> None:
    db = SessionLocal()
    try:
        rows = persist_alerts(alerts, db)
        ids = [row.id for row in rows]
    finally:
        db.close()

    for alert, alert_id in zip(alerts, ids):
        try:
            await publish_alert(alert, alert_id)
        except Exception as e:
            # Row is stored; realtime delivery is optional
            logger.warning(f"Failed to publish alert {alert.kind} for tenant {alert.tenant_id}: {e}")


def emit_alerts(*alerts: Alert) -> None:
    """Persist and publish alerts in the background. Never raises into the caller."""
    if not alerts:
        return
    spawn_best_effort(_deliver(list(alerts)), name=f"alerts-{alerts[0].kind}")


def list_alerts(db: Session, tenant_id: Optional[str] = None, audience: str = TENANT, limit: int = 50) -> List[PlatformAlert]:
    query = db.query(PlatformAlert).filter(PlatformAlert.audience == audience)
    if tenant_id is not None:
        query = query.filter(PlatformAlert.tenant_id == tenant_id)
    return query.order_by(PlatformAlert.created_at.desc(), PlatformAlert.id.desc()).limit(limit).all()
