"""Model, encryption and small utility tests"""
import asyncio
import logging

import pytest
from sqlalchemy.exc import IntegrityError

from paysync.core.exceptions import ConflictError, CredentialDecryptError
from paysync.models.provider_credential import ProviderCredential
from paysync.services import alert_service, order_service
from paysync.services.alert_service import Alert
from paysync.models.platform_alert import PlatformAlert
from paysync.utils.encryption import decrypt, encrypt, is_encrypted, read_stored_token
from paysync.utils.tasks import drain_background_tasks, spawn_best_effort

from conftest import TENANT_ID


@pytest.mark.medium
class TestProviderCredentialModel:
    """Test the credential table constraints"""

    def test_one_live_credential_per_tenant(self, db_session):
        """Test the partial unique index rejects a second active row"""
        db_session.add(ProviderCredential(tenant_id=TENANT_ID, access_token="a", status="active"))
        db_session.commit()
        db_session.add(ProviderCredential(tenant_id=TENANT_ID, access_token="b", status="active"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_inactive_rows_do_not_count(self, db_session):
        """Test retired rows can accumulate next to the live one"""
        db_session.add_all([
            ProviderCredential(tenant_id=TENANT_ID, access_token="a", status="inactive"),
            ProviderCredential(tenant_id=TENANT_ID, access_token="b", status="inactive"),
            ProviderCredential(tenant_id=TENANT_ID, access_token="c", status="active"),
        ])
        db_session.commit()
        assert db_session.query(ProviderCredential).count() == 3


@pytest.mark.medium
class TestEncryption:
    """Test token encryption helpers"""

    def test_encrypt_decrypt(self):
        """Test ciphertext is prefixed and decrypts to the input"""
        ciphertext = encrypt("APP_USR-1")
        assert is_encrypted(ciphertext)
        assert decrypt(ciphertext) == "APP_USR-1"

    def test_decrypt_rejects_plaintext(self):
        """Test unprefixed values are not silently accepted"""
        with pytest.raises(CredentialDecryptError):
            decrypt("APP_USR-1")

    def test_read_stored_token_flags_legacy(self):
        """Test legacy plaintext is returned with is_legacy=True"""
        assert read_stored_token("plain") == ("plain", True)
        assert read_stored_token(encrypt("secret")) == ("secret", False)
        assert read_stored_token(None) == (None, False)


@pytest.mark.medium
class TestOrderService:
    """Test the order collaborator"""

    def test_order_total(self, db_session, make_order):
        """Test totals and closed state are reported"""
        make_order("order-1", total_cents=700, closed=False)
        total = order_service.get_order_total(TENANT_ID, "order-1", db_session)
        assert total.amount_cents == 700
        assert total.is_closed is False

    def test_missing_order(self, db_session):
        """Test unknown orders raise order_not_found"""
        with pytest.raises(ConflictError) as exc_info:
            order_service.get_order_total(TENANT_ID, "nope", db_session)
        assert exc_info.value.http_status == 404

    def test_close_is_idempotent(self, db_session, make_order):
        """Test closing twice keeps the first timestamp"""
        make_order("order-1", closed=False)
        first = order_service.close_order(TENANT_ID, "order-1", db_session).closed_at
        second = order_service.close_order(TENANT_ID, "order-1", db_session).closed_at
        assert first == second


@pytest.mark.high
class TestBackgroundWork:
    """Test best-effort tasks and alert delivery"""

    @pytest.mark.asyncio
    async def test_failures_are_logged_not_raised(self, caplog):
        """Test a failing best-effort task only produces a warning"""

        async def broken():
            raise RuntimeError("provider down")

        with caplog.at_level(logging.WARNING):
            spawn_best_effort(broken(), name="broken-task")
            await drain_background_tasks()

        assert "broken-task" in caplog.text
        assert "provider down" in caplog.text

    @pytest.mark.asyncio
    async def test_drain_waits_for_pending_work(self):
        """Test drain returns only after scheduled tasks finished"""
        done = []

        async def slow():
            await asyncio.sleep(0.01)
            done.append(True)

        spawn_best_effort(slow())
        await drain_background_tasks()
        assert done == [True]

    @pytest.mark.asyncio
    async def test_alerts_are_persisted_and_published(self, db_session, mock_redis):
        """Test emit_alerts stores the row and publishes on the tenant channel"""
        pubsub = mock_redis.pubsub()
        pubsub.subscribe(f"tenant:{TENANT_ID}:alerts")
        pubsub.get_message(timeout=0.1)  # subscribe confirmation

        alert_service.emit_alerts(Alert(
            tenant_id=TENANT_ID, severity=alert_service.INFO, kind="payment_approved",
            title="Pago aprobado", message="ok",
        ))
        await drain_background_tasks()

        row = db_session.query(PlatformAlert).one()
        assert row.kind == "payment_approved"
        message = pubsub.get_message(timeout=0.1)
        assert message is not None
        assert "payment_approved" in message["data"]

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_persisted_alert(self, db_session, monkeypatch):
        """Test Redis outages never lose the stored alert"""

        async def failing_publish(channel, message):
            raise ConnectionError("redis down")

        monkeypatch.setattr("paysync.db.redis.publish", failing_publish)
        alert_service.emit_alerts(Alert(
            tenant_id=None, audience=alert_service.ADMIN, severity=alert_service.WARNING,
            kind="claim", title="Reclamo", message="m",
        ))
        await drain_background_tasks()

        row = db_session.query(PlatformAlert).one()
        assert row.audience == "admin"
