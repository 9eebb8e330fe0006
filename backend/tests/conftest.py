"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import fakeredis
import fakeredis.aioredis
import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read at import time
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("MP_CLIENT_ID", "test-client-id")
os.environ.setdefault("MP_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("MP_REDIRECT_URI", "http://localhost:8000/api/mercadopago/oauth/callback")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from paysync.main import app
from paysync.db.session import get_db
from paysync.db import redis as redis_module
from paysync.models import Base
from paysync.models.order import Order
from paysync.models.payment_attempt import PaymentAttempt
from paysync.services.mercadopago.credentials import upsert_credentials


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

TENANT_ID = "tenant-a"
OTHER_TENANT_ID = "tenant-b"
MP_USER_ID = "123456789"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()

    # Background alert delivery opens its own session
    with patch("paysync.services.alert_service.SessionLocal", TestSessionLocal):
        try:
            yield session
        finally:
            session.close()
            Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis clients using fakeredis (sync for OAuth state, async for alert pub/sub)"""
    server = fakeredis.FakeServer()
    fake_redis = fakeredis.FakeStrictRedis(server=server, decode_responses=True)

    def get_async_client():
        return fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)

    with patch.object(redis_module, "get_redis_client", return_value=fake_redis):
        with patch.object(redis_module, "get_async_redis_client", side_effect=get_async_client):
            yield fake_redis


@pytest.fixture(scope="function", autouse=True)
def auto_mock_redis(mock_redis):
    """Every test runs against fakeredis"""
    yield mock_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry and the real database bootstrap in tests
        with patch("paysync.main.initialize_otel", return_value=False):
            with patch("paysync.main.setup_otel_logging", return_value=False):
                with patch("paysync.main.instrument_sqlalchemy"):
                    with patch("paysync.main.init_db"):
                        with TestClient(app) as test_client:
                            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def tenant_headers() -> dict:
    return {"X-Tenant-Id": TENANT_ID}


@pytest.fixture(scope="function")
def credentials(db_session: Session):
    """Active, non-expiring Mercado Pago credentials for TENANT_ID"""
    return upsert_credentials(
        TENANT_ID,
        "APP_USR-access-token",
        db_session,
        refresh_token="TG-refresh-token",
        expires_in=None,
        provider_user_id=MP_USER_ID,
        contact_email="owner@example.com",
    )


@pytest.fixture(scope="function")
def make_order(db_session: Session):
    """Factory for orders; closed with a positive total unless told otherwise"""

    def _make(order_id="order-1", total_cents=1500, closed=True, tenant_id=TENANT_ID):
        order = Order(
            id=order_id,
            tenant_id=tenant_id,
            total_cents=total_cents,
            closed_at=datetime.now(timezone.utc) if closed else None,
        )
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order

    return _make


@pytest.fixture(scope="function")
def make_attempt(db_session: Session):
    """Factory for payment attempts inserted directly (bypasses the service checks)"""

    def _make(order_id="order-1", status="processing", tenant_id=TENANT_ID, amount_cents=1500,
              flow="pdv", terminal_id=None, provider_transaction_id=None, response_payload=None,
              last_notification_id=None, created_at=None):
        attempt = PaymentAttempt(
            tenant_id=tenant_id,
            order_id=order_id,
            status=status,
            amount_cents=amount_cents,
            flow=flow,
            terminal_id=terminal_id,
            provider_transaction_id=provider_transaction_id,
            response_payload=response_payload,
            last_notification_id=last_notification_id,
            created_at=created_at or datetime.now(timezone.utc),
        )
        db_session.add(attempt)
        db_session.commit()
        db_session.refresh(attempt)
        return attempt

    return _make
