"""
Tests for the ConsistencyCoordinator unit of work.

Covers:
- All-or-nothing commit when the ledger fails mid-operation
- Ledger exceptions translated to DependencyFailureError
- Notifications dispatched only after commit, never after rollback
- Optimistic version check surfaced as StaleStateError
- Structured commit / rollback records
"""

from decimal import Decimal

import pytest
from sqlalchemy import select, update

from guarantee_config.schema import EngineConfig
from guarantee_kernel.db.engine import session_scope
from guarantee_kernel.domain.dtos import (
    QuoteRequestDraft,
    QuoteRequestStatus,
    RefundStatus,
    SlotStatus,
)
from guarantee_kernel.exceptions import (
    DependencyFailureError,
    InvalidTransitionError,
    StaleStateError,
)
from guarantee_kernel.models.guarantee_slot import GuaranteeSlotModel
from guarantee_kernel.models.outbox import OutboxMessageModel
from guarantee_kernel.selectors.guarantee_selector import GuaranteeSelector
from guarantee_services.consistency_coordinator import ConsistencyCoordinator
from guarantee_services.ledger import SqlLedger
from guarantee_services.orchestrator import GuaranteeWorkflowEngine


class FlakyLedger(SqlLedger):
    """SqlLedger whose chosen operation fails after the session work began."""

    fail_on: set[str] = set()

    def hold(self, **kwargs):
        if "hold" in self.fail_on:
            raise ConnectionError("ledger timeout")
        return super().hold(**kwargs)

    def release(self, **kwargs):
        if "release" in self.fail_on:
            raise ConnectionError("ledger timeout")
        return super().release(**kwargs)

    def settle(self, **kwargs):
        if "settle" in self.fail_on:
            raise ConnectionError("ledger timeout")
        return super().settle(**kwargs)


@pytest.fixture
def flaky_engine(session_factory, campaigns, engine_config, dispatcher, clock):
    FlakyLedger.fail_on = set()
    yield GuaranteeWorkflowEngine(
        session_factory=session_factory,
        campaigns=campaigns,
        config=engine_config,
        dispatcher=dispatcher,
        clock=clock,
        ledger_factory=FlakyLedger,
    )
    FlakyLedger.fail_on = set()


class TestAtomicity:
    """A failing ledger leaves no partial state behind."""

    def test_purchase_rolls_back_on_ledger_failure(
        self, flaky_engine, accepted_request, fund, buyer, dispatcher
    ):
        request = accepted_request()
        fund(buyer.actor_id)
        dispatcher.messages.clear()
        FlakyLedger.fail_on = {"hold"}

        with pytest.raises(DependencyFailureError) as exc_info:
            flaky_engine.quotes.purchase(buyer, request.id)

        assert exc_info.value.dependency == "ledger"
        assert exc_info.value.operation == "purchase.hold"
        assert flaky_engine.quotes.get(buyer, request.id).status == QuoteRequestStatus.ACCEPTED
        with session_scope() as session:
            assert GuaranteeSelector(session).slot_for_request(request.id) is None
            assert SqlLedger(session).available_balance(buyer.actor_id) == Decimal("1000000")
        assert dispatcher.messages == []

    def test_retry_after_failure_succeeds(self, flaky_engine, accepted_request, fund, buyer):
        """A rolled-back unit is safe to retry."""
        request = accepted_request()
        fund(buyer.actor_id)
        FlakyLedger.fail_on = {"hold"}
        with pytest.raises(DependencyFailureError):
            flaky_engine.quotes.purchase(buyer, request.id)

        FlakyLedger.fail_on = set()
        result = flaky_engine.quotes.purchase(buyer, request.id)
        assert result.slot.status == SlotStatus.PENDING

    def test_refund_approval_rolls_back(
        self, flaky_engine, active_slot, buyer, distributor, clock, dispatcher
    ):
        slot = active_slot()
        clock.advance_days(3)
        refund = flaky_engine.refunds.request_refund(buyer, slot.id, "rank dropped")
        dispatcher.messages.clear()
        FlakyLedger.fail_on = {"release"}

        with pytest.raises(DependencyFailureError):
            flaky_engine.refunds.approve(distributor, refund.id)

        history = flaky_engine.refunds.history(buyer, slot.id)
        assert history[0].status == RefundStatus.PENDING
        with session_scope() as session:
            assert SqlLedger(session).available_balance(buyer.actor_id) == Decimal("890000")
        assert dispatcher.messages == []

    def test_completion_rolls_back_refund_and_settlement(
        self, flaky_engine, active_slot, buyer, distributor, clock
    ):
        """The early-completion refund is undone when settlement fails."""
        slot = active_slot()
        clock.advance_days(3)
        FlakyLedger.fail_on = {"settle"}

        with pytest.raises(DependencyFailureError):
            flaky_engine.slots.complete(distributor, slot.id, "rank lost")

        assert flaky_engine.slots.get(distributor, slot.id).status == SlotStatus.ACTIVE
        assert flaky_engine.refunds.history(buyer, slot.id) == []
        with session_scope() as session:
            holding = GuaranteeSelector(session).holding_for_slot(slot.id)
        assert holding.user_holding_amount == Decimal("110000")


class TestNotifications:
    """Outbox rows commit with the unit; dispatch follows the commit."""

    def test_dispatched_after_commit(self, workflow_engine, purchased_slot, dispatcher):
        purchased_slot()

        assert dispatcher.event_types == [
            "quote_request_created",
            "quote_request_negotiating",
            "quote_request_accepted",
            "quote_request_purchased",
        ]
        purchase = dispatcher.messages[-1]
        assert purchase.aggregate_type == "QuoteRequest"
        assert purchase.payload["contracted_total"] == "110000"

    def test_rejected_operation_dispatches_nothing(
        self, workflow_engine, active_slot, distributor, dispatcher
    ):
        slot = active_slot()
        dispatcher.messages.clear()

        with pytest.raises(InvalidTransitionError):
            workflow_engine.slots.reject(distributor, slot.id, "too late")

        assert dispatcher.messages == []
        with session_scope() as session:
            rows = session.scalars(
                select(OutboxMessageModel).where(
                    OutboxMessageModel.event_type == "guarantee_slot_rejected"
                )
            ).all()
        assert rows == []

    def test_dispatch_failure_does_not_undo_commit(
        self, workflow_engine, purchased_slot, distributor, dispatcher
    ):
        """A broken channel leaves the row pending; the relay redelivers it."""
        slot = purchased_slot().slot
        dispatcher.fail = True

        active = workflow_engine.slots.approve(distributor, slot.id)
        assert active.status == SlotStatus.ACTIVE

        pending = workflow_engine.relay.pending()
        assert [m.event_type for m in pending] == ["guarantee_slot_approved"]

        dispatcher.fail = False
        result = workflow_engine.relay.relay()
        assert result.dispatched == 1
        assert result.failed == 0
        assert dispatcher.event_types[-1] == "guarantee_slot_approved"
        assert workflow_engine.relay.pending() == []

    def test_failed_attempts_recorded(self, workflow_engine, purchased_slot, distributor, dispatcher):
        slot = purchased_slot().slot
        dispatcher.fail = True
        workflow_engine.slots.approve(distributor, slot.id)
        workflow_engine.relay.relay()

        with session_scope() as session:
            row = session.scalars(
                select(OutboxMessageModel).where(
                    OutboxMessageModel.event_type == "guarantee_slot_approved"
                )
            ).one()
            assert row.attempts == 2
            assert "unavailable" in row.last_error
            assert row.dispatched_at is None

    def test_notifications_disabled(
        self, session_factory, campaigns, dispatcher, clock, buyer, campaign_id
    ):
        engine = GuaranteeWorkflowEngine(
            session_factory=session_factory,
            campaigns=campaigns,
            config=EngineConfig(notifications_enabled=False),
            dispatcher=dispatcher,
            clock=clock,
        )
        engine.quotes.create_request(
            buyer, campaign_id, QuoteRequestDraft(target_rank=1, guarantee_count=3)
        )

        assert dispatcher.messages == []
        assert engine.relay.pending() == []


class TestStaleWrites:
    """Optimistic version checks."""

    def test_concurrent_version_bump_is_stale(
        self, session_factory, workflow_engine, purchased_slot, distributor, clock
    ):
        slot = purchased_slot().slot
        coordinator = ConsistencyCoordinator(session_factory, clock=clock)

        with pytest.raises(StaleStateError) as exc_info:
            with coordinator.unit_of_work(distributor, "approve_slot") as uow:
                model = uow.session.get(GuaranteeSlotModel, slot.id)
                # Another writer commits a new version of the row.
                with session_scope() as other:
                    other.execute(
                        update(GuaranteeSlotModel)
                        .where(GuaranteeSlotModel.id == slot.id)
                        .values(version=GuaranteeSlotModel.version + 1)
                    )
                model.status = SlotStatus.ACTIVE.value

        assert exc_info.value.code == "STALE_STATE"
        assert exc_info.value.action == "approve_slot"
        assert workflow_engine.slots.get(distributor, slot.id).status == SlotStatus.PENDING


class TestAuditRecords:
    """Structured log records of the unit of work."""

    def test_commit_record(self, workflow_engine, purchased_slot, distributor, captured_logs):
        slot = purchased_slot().slot
        workflow_engine.slots.approve(distributor, slot.id)

        commits = [r for r in captured_logs() if r["message"] == "unit_of_work_committed"]
        record = commits[-1]
        assert record["operation"] == "approve_slot"
        assert record["entity_type"] == "GuaranteeSlot"
        assert record["entity_id"] == str(slot.id)
        assert record["actor_id"] == str(distributor.actor_id)
        assert record["slot_id"] == str(slot.id)
        assert "correlation_id" in record

    def test_rollback_record(self, workflow_engine, active_slot, distributor, captured_logs):
        slot = active_slot()
        with pytest.raises(InvalidTransitionError):
            workflow_engine.slots.reject(distributor, slot.id, "too late")

        rollbacks = [r for r in captured_logs() if r["message"] == "unit_of_work_rolled_back"]
        assert rollbacks[-1]["error_code"] == "INVALID_TRANSITION"

    def test_transition_trace(self, workflow_engine, purchased_slot, distributor, captured_logs):
        slot = purchased_slot().slot
        workflow_engine.slots.approve(distributor, slot.id)

        traces = [
            r for r in captured_logs()
            if r["message"] == "workflow_transition" and r.get("workflow") == "guarantee_slot"
        ]
        assert traces[-1]["from_state"] == "pending"
        assert traces[-1]["to_state"] == "active"
        assert traces[-1]["outcome"] == "success"
