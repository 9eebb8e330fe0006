"""API endpoint tests"""
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, patch

import pytest

from paysync.core.config import settings
from paysync.models.domain_event import DomainEvent
from paysync.models.payment_attempt import PaymentAttempt
from paysync.models.platform_alert import PlatformAlert

from conftest import MP_USER_ID, TENANT_ID

PAYMENTS = "paysync.services.mercadopago.payments"


@pytest.mark.critical
class TestTenantContext:
    """Test tenant-scoped routes require a valid tenant header"""

    def test_missing_tenant_is_401(self, client):
        """Test requests without X-Tenant-Id are rejected"""
        assert client.get("/api/mercadopago/credentials").status_code == 401

    def test_malformed_tenant_is_400(self, client):
        """Test tenant ids outside the allowed alphabet are rejected"""
        response = client.get("/api/mercadopago/credentials", headers={"X-Tenant-Id": "a b/../c"})
        assert response.status_code == 400


@pytest.mark.high
class TestCredentialsEndpoints:
    """Test connect, status and disconnect"""

    def test_status_not_connected(self, client, tenant_headers):
        """Test a fresh tenant reports not_connected"""
        response = client.get("/api/mercadopago/credentials", headers=tenant_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "not_connected"

    def test_put_then_delete(self, client, tenant_headers, db_session):
        """Test manual connect and disconnect go through audited events"""
        response = client.put("/api/mercadopago/credentials", headers=tenant_headers, json={
            "access_token": "APP_USR-1", "refresh_token": "TG-1", "expires_in": 21600,
            "provider_user_id": MP_USER_ID,
        })
        assert response.status_code == 200
        assert response.json()["provider_user_id"] == MP_USER_ID
        assert "APP_USR-1" not in response.text

        status = client.get("/api/mercadopago/credentials", headers=tenant_headers).json()
        assert status["status"] == "connected"

        response = client.delete("/api/mercadopago/credentials", headers=tenant_headers)
        assert response.status_code == 200
        assert response.json() == {"deactivated": 1}

        events = [row.event_type for row in db_session.query(DomainEvent).order_by(DomainEvent.id)]
        assert events == ["mercadopago.credentials.upserted", "mercadopago.credentials.disconnected"]

    def test_oauth_authorize_stores_state(self, client, tenant_headers, mock_redis):
        """Test the authorize endpoint remembers which tenant started the flow"""
        with patch.object(settings, "MP_CLIENT_SECRET", "secret"):
            response = client.get("/api/mercadopago/oauth/authorize", headers=tenant_headers)

        assert response.status_code == 200
        state = response.json()["state"]
        assert mock_redis.get(f"oauth_state:{state}") == TENANT_ID
        assert f"state={state}" in response.json()["url"]

    def test_oauth_callback_connects_tenant(self, client, tenant_headers, mock_redis):
        """Test the callback exchanges the code and stores credentials for the state's tenant"""
        mock_redis.setex("oauth_state:s1", 600, TENANT_ID)

        with patch("paysync.services.mercadopago.oauth.exchange_code_for_token", new_callable=AsyncMock,
                   return_value={"access_token": "APP_USR-2", "refresh_token": "TG-2", "expires_in": 21600,
                                 "user_id": 123456789}):
            with patch("paysync.services.mercadopago.oauth.get_user_info", new_callable=AsyncMock,
                       return_value={"email": "owner@example.com"}):
                response = client.get("/api/mercadopago/oauth/callback?code=abc&state=s1", follow_redirects=False)

        assert response.status_code in (302, 307)
        assert "mercadopago=connected" in response.headers["location"]
        assert mock_redis.get("oauth_state:s1") is None

        status = client.get("/api/mercadopago/credentials", headers=tenant_headers).json()
        assert status["status"] == "connected"
        assert status["contact_email"] == "owner@example.com"

    def test_oauth_callback_rejects_unknown_state(self, client):
        """Test a forged or expired state never stores credentials"""
        response = client.get("/api/mercadopago/oauth/callback?code=abc&state=unknown", follow_redirects=False)
        assert "reason=invalid_state" in response.headers["location"]


@pytest.mark.critical
class TestPaymentEndpoints:
    """Test payment collection through the API"""

    def test_start_without_credentials_is_412(self, client, tenant_headers, make_order):
        """Test credentials_missing maps to 412 with its code"""
        make_order("order-1")
        response = client.post("/api/mercadopago/payments", headers=tenant_headers, json={"order_id": "order-1"})

        assert response.status_code == 412
        assert response.json()["detail"]["code"] == "credentials_missing"

    def test_start_open_order_is_409(self, client, tenant_headers, credentials, make_order):
        """Test order_not_closed maps to 409"""
        make_order("order-1", closed=False)
        response = client.post("/api/mercadopago/payments", headers=tenant_headers, json={"order_id": "order-1"})

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "order_not_closed"

    def test_start_pdv_payment(self, client, tenant_headers, credentials, make_order, db_session):
        """Test a PDV start sends the intent and returns a processing attempt"""
        make_order("order-1", total_cents=1500)

        with patch(f"{PAYMENTS}.list_terminals", new_callable=AsyncMock, return_value=[{"id": "PAX_A910__1"}]):
            with patch(f"{PAYMENTS}.create_pdv_payment_intent", new_callable=AsyncMock,
                       return_value={"id": "ORD01", "status": "created"}) as create_intent:
                response = client.post("/api/mercadopago/payments", headers=tenant_headers,
                                       json={"order_id": "order-1", "flow": "pdv"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processing"
        assert body["provider_transaction_id"] == "ORD01"
        assert body["terminal_id"] == "PAX_A910__1"
        create_intent.assert_awaited_once_with("APP_USR-access-token", "PAX_A910__1", "order-1", 1500)

    def test_second_start_conflicts(self, client, tenant_headers, credentials, make_order, make_attempt):
        """Test attempt_in_progress maps to 409 and names the blocking attempt"""
        make_order("order-1")
        existing = make_attempt("order-1", status="processing")

        response = client.post("/api/mercadopago/payments", headers=tenant_headers,
                               json={"order_id": "order-1", "terminal_id": "PAX_A910__1"})

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["code"] == "attempt_in_progress"
        assert detail["attempt_id"] == existing.id

    def test_provider_failure_is_502_and_attempt_errors(self, client, tenant_headers, credentials,
                                                        make_order, db_session):
        """Test a provider rejection returns 502 and leaves an error attempt that does not block retries"""
        from paysync.core.exceptions import ProviderAPIError

        make_order("order-1")
        with patch(f"{PAYMENTS}.create_pdv_payment_intent", new_callable=AsyncMock,
                   side_effect=ProviderAPIError(400, "terminal busy", payload={"message": "terminal busy"})):
            response = client.post("/api/mercadopago/payments", headers=tenant_headers,
                                   json={"order_id": "order-1", "terminal_id": "PAX_A910__1"})

        assert response.status_code == 502
        assert response.json()["detail"]["provider_status"] == 400

        attempt = db_session.query(PaymentAttempt).one()
        assert attempt.status == "error"
        assert attempt.error_payload["status_code"] == 400

        failed = db_session.query(DomainEvent).one()
        assert failed.status == "failed"

    def test_cancel_and_status(self, client, tenant_headers, make_attempt):
        """Test cancel frees the order and the status endpoints reflect it"""
        attempt = make_attempt("order-1", status="pending", flow="qr")

        response = client.post("/api/mercadopago/payments/order-1/cancel", headers=tenant_headers)
        assert response.status_code == 200
        assert response.json()["canceled"] is True
        assert response.json()["attempt"]["status"] == "canceled"

        latest = client.get("/api/mercadopago/payments/order-1", headers=tenant_headers).json()
        assert latest["attempt"]["id"] == attempt.id
        assert latest["attempt"]["status"] == "canceled"

        single = client.get(f"/api/mercadopago/attempts/{attempt.id}", headers=tenant_headers)
        assert single.status_code == 200
        assert client.get(f"/api/mercadopago/attempts/{attempt.id}",
                          headers={"X-Tenant-Id": "tenant-b"}).status_code == 404

    def test_no_attempt_returns_null(self, client, tenant_headers):
        """Test an order without attempts returns attempt: null"""
        response = client.get("/api/mercadopago/payments/order-9", headers=tenant_headers)
        assert response.json() == {"attempt": None}

    def test_refund_requires_approved_attempt(self, client, tenant_headers, credentials, make_attempt):
        """Test refunding a processing attempt is refused"""
        make_attempt("order-1", status="processing")
        response = client.post("/api/mercadopago/payments/order-1/refund", headers=tenant_headers, json={})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "refund_not_allowed"

    def test_partial_then_full_refund(self, client, tenant_headers, credentials, make_attempt, db_session):
        """Test a partial refund keeps the attempt approved and a full one cancels it"""
        attempt = make_attempt("order-1", status="approved", response_payload={"payment_id": "55"})

        with patch(f"{PAYMENTS}.create_refund", new_callable=AsyncMock, return_value={"id": 1}) as refund:
            partial = client.post("/api/mercadopago/payments/order-1/refund", headers=tenant_headers,
                                  json={"amount_cents": 500})
            assert partial.status_code == 200
            assert partial.json()["status"] == "approved"

            full = client.post("/api/mercadopago/payments/order-1/refund", headers=tenant_headers)
            assert full.status_code == 200
            assert full.json()["status"] == "canceled"

        assert refund.await_args_list[0].args[1] == "55"
        db_session.expire_all()
        assert len(db_session.get(PaymentAttempt, attempt.id).response_payload["refunds"]) == 2

    def test_partial_refunds_accumulate(self, client, tenant_headers, credentials, make_attempt, db_session):
        """Test partial refunds add up, cancel the attempt at the charged total and block further refunds"""
        attempt = make_attempt("order-1", status="approved", amount_cents=1500,
                               response_payload={"payment_id": "55"})

        with patch(f"{PAYMENTS}.create_refund", new_callable=AsyncMock, return_value={"id": 1}) as refund:
            first = client.post("/api/mercadopago/payments/order-1/refund", headers=tenant_headers,
                                json={"amount_cents": 500})
            assert first.status_code == 200
            assert first.json()["status"] == "approved"

            too_much = client.post("/api/mercadopago/payments/order-1/refund", headers=tenant_headers,
                                   json={"amount_cents": 1500})
            assert too_much.status_code == 409
            assert too_much.json()["detail"]["code"] == "refund_not_allowed"
            assert too_much.json()["detail"]["refunded_cents"] == 500

            second = client.post("/api/mercadopago/payments/order-1/refund", headers=tenant_headers,
                                 json={"amount_cents": 1000})
            assert second.status_code == 200
            assert second.json()["status"] == "canceled"

            again = client.post("/api/mercadopago/payments/order-1/refund", headers=tenant_headers,
                                json={"amount_cents": 1500})
            assert again.status_code == 409

        assert refund.await_count == 2
        db_session.expire_all()
        payload = db_session.get(PaymentAttempt, attempt.id).response_payload
        assert payload["refunded_cents"] == 1500
        assert len(payload["refunds"]) == 2

    def test_full_refund_after_partial_sends_remaining_amount(self, client, tenant_headers, credentials,
                                                               make_attempt):
        """Test a refund without amount after a partial one refunds only the balance"""
        make_attempt("order-1", status="approved", amount_cents=1500, response_payload={"payment_id": "55"})

        with patch(f"{PAYMENTS}.create_refund", new_callable=AsyncMock, return_value={"id": 1}) as refund:
            client.post("/api/mercadopago/payments/order-1/refund", headers=tenant_headers,
                        json={"amount_cents": 500})
            rest = client.post("/api/mercadopago/payments/order-1/refund", headers=tenant_headers)

        assert rest.json()["status"] == "canceled"
        assert refund.await_args_list[1].kwargs["amount_cents"] == 1000

    def test_refund_above_charged_amount(self, client, tenant_headers, credentials, make_attempt):
        """Test refunds larger than the charge are refused"""
        make_attempt("order-1", status="approved", amount_cents=1000, response_payload={"payment_id": "55"})
        response = client.post("/api/mercadopago/payments/order-1/refund", headers=tenant_headers,
                               json={"amount_cents": 5000})
        assert response.status_code == 409


@pytest.mark.high
class TestOrderEndpoints:
    """Test order closing"""

    def test_close_order(self, client, tenant_headers, make_order):
        """Test closing an order returns its total and timestamp"""
        make_order("order-1", total_cents=990, closed=False)
        response = client.post("/api/orders/order-1/close", headers=tenant_headers)

        assert response.status_code == 200
        assert response.json()["total_cents"] == 990
        assert response.json()["closed_at"]

    def test_close_missing_order_is_404(self, client, tenant_headers):
        """Test order_not_found maps to 404"""
        response = client.post("/api/orders/nope/close", headers=tenant_headers)
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "order_not_found"


def _signed_headers(body: dict, secret: str, request_id="req-1", ts="1700000000000"):
    data_id = body["data"]["id"]
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return {"x-signature": f"ts={ts},v1={digest}", "x-request-id": request_id,
            "content-type": "application/json"}


@pytest.mark.critical
class TestWebhookEndpoint:
    """Test the webhook receiver"""

    body = {"id": "notif-1", "type": "claim", "action": "created", "user_id": int(MP_USER_ID),
            "data": {"id": "claim-1"}}

    def test_valid_signature_is_processed(self, client, credentials, db_session):
        """Test a signed notification is reconciled and acknowledged"""
        with patch.object(settings, "MP_WEBHOOK_SECRET", "whsec"):
            response = client.post("/api/mercadopago/webhook", content=json.dumps(self.body),
                                   headers=_signed_headers(self.body, "whsec"))

        assert response.status_code == 200
        payload = response.json()
        assert payload["received"] is True
        assert payload["outcome"] == "processed"
        assert payload["tenant_id"] == TENANT_ID

    def test_invalid_signature_is_401(self, client, credentials, db_session):
        """Test a bad signature is rejected before any processing"""
        headers = _signed_headers(self.body, "other-secret")
        with patch.object(settings, "MP_WEBHOOK_SECRET", "whsec"):
            response = client.post("/api/mercadopago/webhook", content=json.dumps(self.body), headers=headers)

        assert response.status_code == 401
        assert db_session.query(PlatformAlert).count() == 0

    def test_unparseable_body_is_400(self, client):
        """Test non-JSON bodies are rejected"""
        response = client.post("/api/mercadopago/webhook", content=b"{not json",
                               headers={"content-type": "application/json"})
        assert response.status_code == 400

    def test_unknown_tenant_is_still_200(self, client):
        """Test notifications for unknown accounts are acknowledged so the provider stops retrying"""
        with patch.object(settings, "MP_WEBHOOK_SECRET", ""):
            response = client.post("/api/mercadopago/webhook", json=self.body)

        assert response.status_code == 200
        assert response.json()["outcome"] == "tenant_not_found"
        assert response.json()["ok"] is False


@pytest.mark.medium
class TestMonitoringEndpoints:
    """Test health and metrics"""

    def test_health(self, client):
        """Test health reports the database and redis"""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] is True
        assert response.json()["redis"] is True

    def test_metrics_exposes_payment_series(self, client, make_attempt):
        """Test the Prometheus endpoint includes the attempt and stale event gauges"""
        make_attempt("order-1", status="processing")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "paysync_active_payment_attempts" in response.text
        assert "paysync_stale_pending_domain_events" in response.text

    def test_alerts_listing(self, client, tenant_headers, db_session):
        """Test tenant alerts are listed newest first and scoped to the tenant"""
        db_session.add_all([
            PlatformAlert(tenant_id=TENANT_ID, severity="info", kind="payment_approved", title="a", message="m"),
            PlatformAlert(tenant_id="tenant-b", severity="info", kind="payment_approved", title="b", message="m"),
        ])
        db_session.commit()

        response = client.get("/api/alerts", headers=tenant_headers)
        assert response.status_code == 200
        assert [alert["title"] for alert in response.json()] == ["a"]
