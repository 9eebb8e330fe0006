"""Pydantic schemas for the Mercado Pago API"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from paysync.services.events.contracts import AttemptResult
from paysync.services.mercadopago.attempts import PaymentFlow


class CredentialsUpsertRequest(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, gt=0)
    app_id: Optional[str] = None
    provider_user_id: Optional[str] = None
    contact_email: Optional[str] = None


class ConnectionStatusResponse(BaseModel):
    status: str  # connected, error, not_connected
    provider_user_id: Optional[str] = None
    contact_email: Optional[str] = None
    expires_at: Optional[datetime] = None
    error_message: Optional[str] = None
    connected_at: Optional[datetime] = None


class AuthorizeResponse(BaseModel):
    url: str
    state: str


class StartPaymentRequest(BaseModel):
    order_id: str = Field(min_length=1)
    flow: PaymentFlow = PaymentFlow.PDV
    terminal_id: Optional[str] = None


class RefundRequest(BaseModel):
    amount_cents: Optional[int] = Field(default=None, gt=0)


class AttemptResponse(AttemptResult):
    """Attempt as shown to staff UI"""
    model_config = ConfigDict(from_attributes=True)

    response_payload: Optional[Dict[str, Any]] = None
    error_payload: Optional[Dict[str, Any]] = None
    last_processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TerminalsResponse(BaseModel):
    terminals: List[Dict[str, Any]]


class AlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    severity: str
    kind: str
    title: str
    message: str
    details: Optional[Dict[str, Any]] = None
    created_at: datetime
