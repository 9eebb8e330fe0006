"""Closed set of domain events with their payload and result shapes"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from paysync.services.mercadopago.attempts import PaymentFlow


class EventType(str, Enum):
    ORDER_CLOSED = "order.closed"
    PAYMENT_START = "order.payment.mercadopago.start"
    PAYMENT_CANCEL = "order.payment.mercadopago.cancel"
    PAYMENT_REFUND = "order.payment.mercadopago.refund"
    CREDENTIALS_UPSERTED = "mercadopago.credentials.upserted"
    CREDENTIALS_DISCONNECTED = "mercadopago.credentials.disconnected"


class EventPayload(BaseModel):
    """Every payload is tenant scoped"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    tenant_id: str = Field(min_length=1)


# Payloads

class OrderClosedPayload(EventPayload):
    order_id: str


class PaymentStartPayload(EventPayload):
    order_id: str
    flow: PaymentFlow = PaymentFlow.PDV
    terminal_id: Optional[str] = None


class PaymentCancelPayload(EventPayload):
    order_id: str


class PaymentRefundPayload(EventPayload):
    order_id: str
    amount_cents: Optional[int] = Field(default=None, gt=0)


class CredentialsUpsertedPayload(EventPayload):
    # SecretStr keeps tokens out of the audit log
    access_token: SecretStr
    refresh_token: Optional[SecretStr] = None
    expires_in: Optional[int] = None
    app_id: Optional[str] = None
    provider_user_id: Optional[str] = None
    contact_email: Optional[str] = None


class CredentialsDisconnectedPayload(EventPayload):
    reason: Optional[str] = None


# Results

class OrderClosedResult(BaseModel):
    order_id: str
    total_cents: int
    closed_at: datetime


class AttemptResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: str
    status: str
    flow: str
    amount_cents: int
    terminal_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    qr_data: Optional[str] = None


class CancelResult(BaseModel):
    canceled: bool
    attempt: Optional[AttemptResult] = None


class CredentialsResult(BaseModel):
    credential_id: int
    provider_user_id: Optional[str] = None
    contact_email: Optional[str] = None
    expires_at: Optional[datetime] = None


class DisconnectResult(BaseModel):
    deactivated: int
