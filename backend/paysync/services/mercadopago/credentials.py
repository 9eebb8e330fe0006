"""Tenant-scoped Mercado Pago credential store with lazy token refresh.

Only one live (active, not deleted) credential row exists per tenant.
Replacing credentials deactivates the previous row and inserts a new one;
live tokens are never rewritten in place except by a successful refresh.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from paysync.core.config import settings
from paysync.core.exceptions import CredentialDecryptError, ProviderAPIError
from paysync.core.metrics import credential_refresh_counter
from paysync.models.provider_credential import ProviderCredential
from paysync.services.mercadopago import oauth
from paysync.utils.dates import as_utc, utcnow
from paysync.utils.encryption import encrypt, read_stored_token

mercadopago_logger = logging.getLogger("mercadopago")

CONNECTED = "connected"
ERROR = "error"
NOT_CONNECTED = "not_connected"

TRANSIENT_ERROR_PATTERN = re.compile(
    r"ECONNREFUSED|ECONNRESET|ENOTFOUND|ETIMEDOUT|EAI_AGAIN|abort|timed? ?out"
    r"|socket hang up|fetch failed|\b5\d\d\b",
    re.IGNORECASE,
)

TRANSIENT_EXCEPTION_TYPES = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class ProviderCredentials:
    """Decrypted, session-detached view of a tenant's active credential"""
    credential_id: int
    tenant_id: str
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    app_id: Optional[str]
    provider_user_id: Optional[str]
    contact_email: Optional[str]
    status: str


def is_transient_refresh_error(exc: BaseException) -> bool:
    """Classify a refresh failure as transient (keep the stale token) or permanent.

    Structured signals (exception type, HTTP status) decide first; the
    message pattern is the fallback for errors that only carry text.
    """
    if isinstance(exc, TRANSIENT_EXCEPTION_TYPES):
        return True
    if isinstance(exc, ProviderAPIError):
        return exc.status_code >= 500
    message = f"{type(exc).__name__}: {exc}"
    return bool(TRANSIENT_ERROR_PATTERN.search(message))


def _active_row(tenant_id: str, db: Session) -> Optional[ProviderCredential]:
    return db.query(ProviderCredential).filter(
        ProviderCredential.tenant_id == tenant_id,
        ProviderCredential.status == "active",
        ProviderCredential.deleted_at.is_(None),
    ).order_by(ProviderCredential.created_at.desc(), ProviderCredential.id.desc()).first()


def _to_credentials(row: ProviderCredential, access_token: str, refresh_token: Optional[str]) -> ProviderCredentials:
    return ProviderCredentials(
        credential_id=row.id,
        tenant_id=row.tenant_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=as_utc(row.expires_at),
        app_id=row.app_id,
        provider_user_id=row.provider_user_id,
        contact_email=row.contact_email,
        status=row.status,
    )


def _needs_refresh(expires_at: Optional[datetime]) -> bool:
    if expires_at is None:
        return False
    return expires_at <= utcnow() + timedelta(seconds=settings.TOKEN_REFRESH_SKEW_SECONDS)


def _expiry_from(expires_in: Any) -> Optional[datetime]:
    if expires_in in (None, ""):
        return None
    return utcnow() + timedelta(seconds=int(expires_in))


async def get_credentials(tenant_id: str, db: Session) -> Optional[ProviderCredentials]:
    """Return the tenant's active credential, refreshing the token when it is about to expire.

    - Legacy plaintext tokens are re-encrypted and persisted on read.
    - Undecryptable tokens mark the row ``error`` and return None.
    - Transient refresh failures return the stale credential and leave the row untouched.
    - Permanent refresh failures mark the row ``error`` but still return the stale credential.
    """
    row = _active_row(tenant_id, db)
    if not row:
        return None

    try:
        access_token, access_legacy = read_stored_token(row.access_token)
        refresh_token, refresh_legacy = read_stored_token(row.refresh_token)
    except (CredentialDecryptError, ValueError) as e:
        mercadopago_logger.error(f"Cannot decrypt credentials for tenant {tenant_id}: {e}")
        row.status = "error"
        row.error_message = f"Token decryption failed: {e}"
        db.commit()
        return None

    if access_legacy or refresh_legacy:
        mercadopago_logger.info(f"Re-encrypting legacy plaintext credentials for tenant {tenant_id}")
        if access_legacy:
            row.access_token = encrypt(access_token)
        if refresh_legacy:
            row.refresh_token = encrypt(refresh_token)
        db.commit()
        db.refresh(row)

    current = _to_credentials(row, access_token, refresh_token)

    if not _needs_refresh(current.expires_at) or not refresh_token:
        return current

    try:
        token_data = await oauth.refresh_access_token(refresh_token)
    except Exception as e:
        if is_transient_refresh_error(e):
            credential_refresh_counter.labels(outcome="transient_failure").inc()
            mercadopago_logger.warning(
                f"Transient token refresh failure for tenant {tenant_id}, using stale token: "
                f"{type(e).__name__}: {e}"
            )
            return current

        credential_refresh_counter.labels(outcome="permanent_failure").inc()
        mercadopago_logger.error(
            f"Token refresh rejected for tenant {tenant_id}, reconnect required: {type(e).__name__}: {e}"
        )
        row.status = "error"
        row.error_message = str(e) or type(e).__name__
        db.commit()
        return current

    new_access = token_data.get("access_token")
    if not new_access:
        credential_refresh_counter.labels(outcome="permanent_failure").inc()
        mercadopago_logger.error(f"Token refresh for tenant {tenant_id} returned no access_token")
        row.status = "error"
        row.error_message = "Token refresh returned no access_token"
        db.commit()
        return current

    new_refresh = token_data.get("refresh_token") or refresh_token
    row.access_token = encrypt(new_access)
    row.refresh_token = encrypt(new_refresh)
    row.expires_at = _expiry_from(token_data.get("expires_in"))
    row.refreshed_at = utcnow()
    row.error_message = None
    db.commit()
    db.refresh(row)

    credential_refresh_counter.labels(outcome="success").inc()
    mercadopago_logger.info(f"Refreshed Mercado Pago token for tenant {tenant_id}")
    return _to_credentials(row, new_access, new_refresh)


def upsert_credentials(
    tenant_id: str,
    access_token: str,
    db: Session,
    refresh_token: Optional[str] = None,
    expires_in: Optional[int] = None,
    app_id: Optional[str] = None,
    provider_user_id: Optional[str] = None,
    contact_email: Optional[str] = None,
) -> ProviderCredentials:
    """Replace the tenant's credentials: deactivate live rows, then insert a fresh active row"""
    now = utcnow()
    replaced = db.query(ProviderCredential).filter(
        ProviderCredential.tenant_id == tenant_id,
        ProviderCredential.status.in_(("active", "error")),
        ProviderCredential.deleted_at.is_(None),
    ).update({"status": "inactive", "deleted_at": now}, synchronize_session=False)

    row = ProviderCredential(
        tenant_id=tenant_id,
        access_token=encrypt(access_token),
        refresh_token=encrypt(refresh_token) if refresh_token else None,
        expires_at=_expiry_from(expires_in),
        app_id=app_id or settings.MP_CLIENT_ID or None,
        provider_user_id=str(provider_user_id) if provider_user_id is not None else None,
        contact_email=contact_email,
        status="active",
    )
    db.add(row)
    db.commit()
    db.refresh(row)

    mercadopago_logger.info(
        f"Stored Mercado Pago credentials for tenant {tenant_id} "
        f"(provider user {row.provider_user_id}, replaced {replaced} row(s))"
    )
    return _to_credentials(row, access_token, refresh_token)


def mark_credentials_error(tenant_id: str, error_message: str, db: Session) -> int:
    """Flag the tenant's live credential as requiring reconnection"""
    updated = db.query(ProviderCredential).filter(
        ProviderCredential.tenant_id == tenant_id,
        ProviderCredential.status == "active",
        ProviderCredential.deleted_at.is_(None),
    ).update({"status": "error", "error_message": error_message}, synchronize_session=False)
    db.commit()
    if updated:
        mercadopago_logger.error(f"Marked credentials for tenant {tenant_id} as error: {error_message}")
    return updated


def deactivate_credentials(tenant_id: str, db: Session, reason: Optional[str] = None) -> int:
    """Soft-delete the tenant's live credential (disconnect or provider deauthorization)"""
    updated = db.query(ProviderCredential).filter(
        ProviderCredential.tenant_id == tenant_id,
        ProviderCredential.status.in_(("active", "error")),
        ProviderCredential.deleted_at.is_(None),
    ).update(
        {"status": "inactive", "deleted_at": utcnow(), "error_message": reason},
        synchronize_session=False,
    )
    db.commit()
    mercadopago_logger.info(f"Deactivated {updated} credential row(s) for tenant {tenant_id}")
    return updated


def get_connection_status(tenant_id: str, db: Session) -> Dict[str, Any]:
    """Connection summary for tenant-facing UI. Reads the row as stored, never refreshes."""
    row = db.query(ProviderCredential).filter(
        ProviderCredential.tenant_id == tenant_id,
        ProviderCredential.deleted_at.is_(None),
    ).order_by(ProviderCredential.created_at.desc(), ProviderCredential.id.desc()).first()

    if not row or row.status == "inactive":
        return {"status": NOT_CONNECTED}

    return {
        "status": CONNECTED if row.status == "active" else ERROR,
        "provider_user_id": row.provider_user_id,
        "contact_email": row.contact_email,
        "expires_at": as_utc(row.expires_at),
        "error_message": row.error_message,
        "connected_at": as_utc(row.created_at),
    }

