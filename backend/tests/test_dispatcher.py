"""Domain event dispatch and handler registry tests"""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import BaseModel, ValidationError

from paysync.core.exceptions import ConflictError
from paysync.models.domain_event import DomainEvent
from paysync.services.events.contracts import EventType, OrderClosedPayload
from paysync.services.events.dispatcher import (
    FAILED,
    PENDING,
    PROCESSED,
    dispatch,
    event_log_entry,
    list_stale_pending_events,
)
from paysync.services.events.handlers import registry
from paysync.services.events.registry import HandlerRegistry

from conftest import TENANT_ID


@pytest.mark.critical
class TestHandlerRegistry:
    """Test the handler table is complete and unambiguous"""

    def test_every_event_type_has_a_handler(self):
        """Test the sealed registry covers every EventType"""
        assert len(registry) == len(EventType)
        for event_type in EventType:
            assert event_type in registry
            assert registry.get(event_type).handler is not None

    def test_seal_fails_when_a_handler_is_missing(self):
        """Test seal() names the event types without a handler"""
        partial = HandlerRegistry(EventType)

        @partial.register(EventType.ORDER_CLOSED, OrderClosedPayload)
        def only_handler(payload, db):
            return None

        with pytest.raises(RuntimeError) as exc_info:
            partial.seal()
        assert EventType.PAYMENT_START.value in str(exc_info.value)

    def test_duplicate_registration_is_rejected(self):
        """Test registering a second handler for the same type raises"""
        table = HandlerRegistry(EventType)

        @table.register(EventType.ORDER_CLOSED, OrderClosedPayload)
        def first(payload, db):
            return None

        with pytest.raises(RuntimeError, match="Duplicate handler"):
            @table.register(EventType.ORDER_CLOSED, OrderClosedPayload)
            def second(payload, db):
                return None

    def test_unsealed_registry_cannot_be_used(self):
        """Test get() before seal() raises"""
        with pytest.raises(RuntimeError, match="before it was sealed"):
            HandlerRegistry(EventType).get(EventType.ORDER_CLOSED)

    def test_sealed_registry_rejects_new_handlers(self):
        """Test register() after seal() raises"""
        with pytest.raises(RuntimeError, match="sealed"):
            @registry.register(EventType.ORDER_CLOSED, OrderClosedPayload)
            def late(payload, db):
                return None


@pytest.mark.critical
class TestDispatch:
    """Test every dispatch leaves exactly one audited log row"""

    @pytest.mark.asyncio
    async def test_successful_dispatch_records_processed_with_result(self, db_session, make_order):
        """Test a sync handler's result is stored on a processed row"""
        make_order("order-1", total_cents=2500, closed=False)

        result = await dispatch(EventType.ORDER_CLOSED, {"tenant_id": TENANT_ID, "order_id": "order-1"}, db_session)

        assert result.order_id == "order-1"
        assert result.total_cents == 2500

        rows = db_session.query(DomainEvent).all()
        assert len(rows) == 1
        assert rows[0].status == PROCESSED
        assert rows[0].event_type == EventType.ORDER_CLOSED.value
        assert rows[0].tenant_id == TENANT_ID
        assert rows[0].result["total_cents"] == 2500
        assert rows[0].error_message is None

    @pytest.mark.asyncio
    async def test_async_handler_is_awaited(self, db_session):
        """Test an async handler (cancel with nothing to cancel) completes and is logged"""
        result = await dispatch(
            EventType.PAYMENT_CANCEL, {"tenant_id": TENANT_ID, "order_id": "missing"}, db_session
        )

        assert result.canceled is False
        row = db_session.query(DomainEvent).one()
        assert row.status == PROCESSED
        assert row.result == {"canceled": False, "attempt": None}

    @pytest.mark.asyncio
    async def test_failed_handler_records_failed_and_reraises(self, db_session):
        """Test handler exceptions propagate after the row is marked failed"""
        with pytest.raises(ConflictError) as exc_info:
            await dispatch(EventType.ORDER_CLOSED, {"tenant_id": TENANT_ID, "order_id": "nope"}, db_session)
        assert exc_info.value.code == ConflictError.ORDER_NOT_FOUND

        row = db_session.query(DomainEvent).one()
        assert row.status == FAILED
        assert "nope" in row.error_message
        assert row.result is None

    @pytest.mark.asyncio
    async def test_invalid_payload_is_rejected_before_logging(self, db_session):
        """Test a payload that fails validation never creates a log row"""
        with pytest.raises(ValidationError):
            await dispatch(
                EventType.ORDER_CLOSED,
                {"tenant_id": TENANT_ID, "order_id": "order-1", "unexpected": True},
                db_session,
            )
        assert db_session.query(DomainEvent).count() == 0

    @pytest.mark.asyncio
    async def test_unknown_event_type_raises(self, db_session):
        """Test dispatching a name outside the EventType set raises ValueError"""
        with pytest.raises(ValueError):
            await dispatch("order.exploded", {"tenant_id": TENANT_ID}, db_session)

    @pytest.mark.asyncio
    async def test_credential_tokens_are_not_written_to_the_log(self, db_session):
        """Test the audit payload masks secret token fields"""
        await dispatch(
            EventType.CREDENTIALS_UPSERTED,
            {"tenant_id": TENANT_ID, "access_token": "APP_USR-secret", "refresh_token": "TG-secret"},
            db_session,
        )
        row = db_session.query(DomainEvent).one()
        assert row.status == PROCESSED
        assert "APP_USR-secret" not in str(row.payload)
        assert "TG-secret" not in str(row.payload)


@pytest.mark.high
class TestEventLogEntry:
    """Test the log entry context manager directly"""

    def test_block_result_is_serialized(self, db_session):
        """Test pydantic results are stored as JSON"""

        class Out(BaseModel):
            value: int

        payload = OrderClosedPayload(tenant_id=TENANT_ID, order_id="o")
        with event_log_entry(db_session, EventType.ORDER_CLOSED, payload) as entry:
            entry.result = Out(value=3)

        row = db_session.get(DomainEvent, entry.event_id)
        assert row.status == PROCESSED
        assert row.result == {"value": 3}

    def test_row_is_pending_while_block_runs(self, db_session):
        """Test the row exists as pending before the handler finishes"""
        payload = OrderClosedPayload(tenant_id=TENANT_ID, order_id="o")
        with event_log_entry(db_session, EventType.ORDER_CLOSED, payload) as entry:
            assert db_session.get(DomainEvent, entry.event_id).status == PENDING

    def test_block_exception_marks_failed(self, db_session):
        """Test an exception inside the block is recorded then re-raised"""
        payload = OrderClosedPayload(tenant_id=TENANT_ID, order_id="o")
        with pytest.raises(RuntimeError):
            with event_log_entry(db_session, EventType.ORDER_CLOSED, payload) as entry:
                raise RuntimeError("boom")

        row = db_session.get(DomainEvent, entry.event_id)
        assert row.status == FAILED
        assert row.error_message == "boom"


@pytest.mark.medium
class TestStalePendingEvents:
    """Test crash-orphaned rows are discoverable"""

    def test_old_pending_rows_are_listed(self, db_session):
        """Test only pending rows older than the cutoff are returned"""
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        db_session.add_all([
            DomainEvent(tenant_id=TENANT_ID, event_type="order.closed", payload={}, status=PENDING, created_at=old),
            DomainEvent(tenant_id=TENANT_ID, event_type="order.closed", payload={}, status=PROCESSED, created_at=old),
            DomainEvent(tenant_id=TENANT_ID, event_type="order.closed", payload={}, status=PENDING),
        ])
        db_session.commit()

        stale = list_stale_pending_events(db_session, older_than=timedelta(minutes=15))
        assert len(stale) == 1
        assert stale[0].status == PENDING
