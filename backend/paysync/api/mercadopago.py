"""Mercado Pago API routes: tenant connection, payment collection and attempt status"""
import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from paysync.core.config import settings
from paysync.core.exceptions import ConflictError
from paysync.core.security import require_tenant
from paysync.db import redis as redis_module
from paysync.db.session import get_db
from paysync.schemas.mercadopago import (
    AlertResponse,
    AttemptResponse,
    AuthorizeResponse,
    ConnectionStatusResponse,
    CredentialsUpsertRequest,
    RefundRequest,
    StartPaymentRequest,
    TerminalsResponse,
)
from paysync.services import alert_service
from paysync.services.events.contracts import EventType
from paysync.services.events.dispatcher import dispatch
from paysync.services.mercadopago import attempts, oauth, payments
from paysync.services.mercadopago import credentials as credentials_service

logger = logging.getLogger(__name__)
mercadopago_logger = logging.getLogger("mercadopago")

router = APIRouter(prefix="/api/mercadopago", tags=["mercadopago"])


# ============================================================================
# CONNECTION
# ============================================================================

@router.get("/credentials", response_model=ConnectionStatusResponse)
def get_credentials_status(
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Connection status for the tenant's Mercado Pago account"""
    return credentials_service.get_connection_status(tenant_id, db)


@router.put("/credentials")
async def put_credentials(
    request_data: CredentialsUpsertRequest,
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Store tokens obtained out of band (manual connect)"""
    result = await dispatch(
        EventType.CREDENTIALS_UPSERTED,
        {"tenant_id": tenant_id, **request_data.model_dump()},
        db,
    )
    return result


@router.delete("/credentials")
async def delete_credentials(
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Disconnect the tenant's Mercado Pago account"""
    return await dispatch(
        EventType.CREDENTIALS_DISCONNECTED,
        {"tenant_id": tenant_id, "reason": "Disconnected by tenant"},
        db,
    )


@router.get("/oauth/authorize", response_model=AuthorizeResponse)
def oauth_authorize(tenant_id: str = Depends(require_tenant)):
    """Start the OAuth connect flow; the frontend redirects the browser to ``url``"""
    if not settings.oauth_configured:
        raise HTTPException(503, "Mercado Pago OAuth is not configured")

    state = oauth.generate_oauth_state()
    redis_module.set_oauth_state(state, tenant_id)
    mercadopago_logger.info(f"Starting Mercado Pago OAuth for tenant {tenant_id}")
    return {"url": oauth.get_authorize_url(state), "state": state}


@router.get("/oauth/callback")
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    """OAuth redirect target. Always ends in a redirect back to the frontend."""
    frontend = f"{settings.FRONTEND_URL}/settings/payments"

    if error:
        mercadopago_logger.warning(f"Mercado Pago OAuth denied: {error}")
        return RedirectResponse(f"{frontend}?mercadopago=error&reason={quote(error)}")
    if not code or not state:
        return RedirectResponse(f"{frontend}?mercadopago=error&reason=missing_code")

    tenant_id = redis_module.pop_oauth_state(state)
    if not tenant_id:
        mercadopago_logger.warning("Mercado Pago OAuth callback with unknown or expired state")
        return RedirectResponse(f"{frontend}?mercadopago=error&reason=invalid_state")

    try:
        token_data = await oauth.exchange_code_for_token(code)
        contact_email = None
        try:
            user_info = await oauth.get_user_info(token_data["access_token"])
            contact_email = user_info.get("email")
        except Exception as e:
            mercadopago_logger.warning(f"Could not fetch Mercado Pago user info for tenant {tenant_id}: {e}")

        await dispatch(
            EventType.CREDENTIALS_UPSERTED,
            {
                "tenant_id": tenant_id,
                "access_token": token_data["access_token"],
                "refresh_token": token_data.get("refresh_token"),
                "expires_in": token_data.get("expires_in"),
                "provider_user_id": (
                    str(token_data["user_id"]) if token_data.get("user_id") is not None else None
                ),
                "contact_email": contact_email,
            },
            db,
        )
    except Exception as e:
        mercadopago_logger.error(f"Mercado Pago OAuth exchange failed for tenant {tenant_id}: {e}", exc_info=True)
        return RedirectResponse(f"{frontend}?mercadopago=error&reason=exchange_failed")

    return RedirectResponse(f"{frontend}?mercadopago=connected")


# ============================================================================
# COLLECTION
# ============================================================================

@router.get("/terminals", response_model=TerminalsResponse)
async def get_terminals(
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Point devices registered to the tenant's account"""
    creds = await credentials_service.get_credentials(tenant_id, db)
    if not creds:
        raise ConflictError(ConflictError.CREDENTIALS_MISSING, "Mercado Pago is not connected for this tenant")
    return {"terminals": await payments.list_terminals(creds.access_token)}


@router.post("/payments")
async def start_payment(
    request_data: StartPaymentRequest,
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Start collecting an order on a Point terminal or with an in-store QR"""
    return await dispatch(
        EventType.PAYMENT_START,
        {"tenant_id": tenant_id, **request_data.model_dump()},
        db,
    )


@router.get("/payments/{order_id}")
def get_order_payment(
    order_id: str,
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Latest attempt for an order (null when none was ever started)"""
    attempt = attempts.get_latest_attempt(tenant_id, order_id, db)
    if not attempt:
        return {"attempt": None}
    return {"attempt": AttemptResponse.model_validate(attempt)}


@router.post("/payments/{order_id}/cancel")
async def cancel_order_payment(
    order_id: str,
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Cancel the in-flight attempt so a new one can be started"""
    return await dispatch(EventType.PAYMENT_CANCEL, {"tenant_id": tenant_id, "order_id": order_id}, db)


@router.post("/payments/{order_id}/refund")
async def refund_order_payment(
    order_id: str,
    request_data: Optional[RefundRequest] = None,
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Refund an approved payment, fully or partially"""
    amount_cents = request_data.amount_cents if request_data else None
    return await dispatch(
        EventType.PAYMENT_REFUND,
        {"tenant_id": tenant_id, "order_id": order_id, "amount_cents": amount_cents},
        db,
    )


@router.get("/attempts/{attempt_id}", response_model=AttemptResponse)
def get_attempt(
    attempt_id: int,
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Single attempt, polled by the staff UI while a payment is in flight"""
    attempt = attempts.get_attempt(tenant_id, attempt_id, db)
    if not attempt:
        raise HTTPException(404, "Payment attempt not found")
    return attempt


# ============================================================================
# ALERTS
# ============================================================================

alerts_router = APIRouter(prefix="/api/alerts", tags=["alerts"])


@alerts_router.get("", response_model=list[AlertResponse])
def get_alerts(
    limit: int = Query(50, ge=1, le=200),
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Recent alerts for the tenant, newest first"""
    return alert_service.list_alerts(db, tenant_id=tenant_id, limit=limit)
