"""
Tests for the workflow definitions and the WorkflowExecutor gate.

Covers:
- Workflow construction invariants
- Quote request, slot and refund state tables
- Executor order: authority, then state, then guard
- Guard executor fails closed for unknown guards
"""

from dataclasses import dataclass
from uuid import UUID, uuid4

import pytest

from guarantee_kernel.domain.roles import Actor, PermissionGroup
from guarantee_kernel.domain.workflow import Guard, Transition, Workflow
from guarantee_kernel.exceptions import InvalidTransitionError, PermissionDeniedError
from guarantee_services.workflow_executor import (
    GuardExecutor,
    WorkflowExecutor,
    default_guard_executor,
)
from guarantee_services.workflows import (
    QUOTE_REQUEST_WORKFLOW,
    REFUND_WORKFLOW,
    SLOT_WORKFLOW,
)


@dataclass
class _Row:
    id: UUID
    status: str
    user_id: UUID | None = None
    distributor_id: UUID | None = None


class TestWorkflowInvariants:
    """Workflow.__post_init__."""

    def test_unknown_initial_state(self):
        with pytest.raises(ValueError, match="initial state"):
            Workflow(name="w", description="", initial_state="x", states=("a",), transitions=())

    def test_transition_to_unknown_state(self):
        with pytest.raises(ValueError, match="unknown state"):
            Workflow(
                name="w", description="", initial_state="a", states=("a",),
                transitions=(Transition("a", "b", action="go"),),
            )

    def test_terminal_state_cannot_have_exits(self):
        with pytest.raises(ValueError, match="terminal state"):
            Workflow(
                name="w", description="", initial_state="a", states=("a", "b"),
                transitions=(Transition("b", "a", action="back"),),
                terminal_states=("b",),
            )


class TestStateTables:
    """The three lifecycles."""

    def test_quote_request_terminals(self):
        for state in ("expired", "purchased"):
            assert not [t for t in QUOTE_REQUEST_WORKFLOW.transitions if t.from_state == state]

    def test_rejected_request_only_reopens(self):
        actions = {t.action for t in QUOTE_REQUEST_WORKFLOW.transitions if t.from_state == "rejected"}
        assert actions == {"undo_rejection"}

    def test_purchase_moves_money(self):
        purchase = QUOTE_REQUEST_WORKFLOW.find("purchase", "accepted")
        assert purchase.moves_money
        assert purchase.required_level == PermissionGroup.CAMPAIGN

    def test_completed_slot_has_no_exits(self):
        assert SLOT_WORKFLOW.find("approve", "completed") is None
        assert "completed" in SLOT_WORKFLOW.terminal_states

    def test_slot_approval_and_completion_guarded(self):
        assert SLOT_WORKFLOW.find("approve", "pending").guard.name == "no_open_refund"
        assert SLOT_WORKFLOW.find("complete", "active").guard.name == "no_open_refund"

    def test_refund_open_states(self):
        sources = set(REFUND_WORKFLOW.sources_for("reject"))
        assert sources == {"pending", "pending_user_confirmation"}
        assert REFUND_WORKFLOW.sources_for("confirm") == ("pending_user_confirmation",)
        assert REFUND_WORKFLOW.sources_for("approve") == ("pending",)


class TestWorkflowExecutor:
    """execute_transition."""

    def setup_method(self):
        self.executor = WorkflowExecutor()
        self.distributor = Actor(actor_id=uuid4(), role="distributor")
        self.buyer = Actor(actor_id=uuid4(), role="advertiser")

    def _slot(self, status: str) -> _Row:
        return _Row(
            id=uuid4(),
            status=status,
            user_id=self.buyer.actor_id,
            distributor_id=self.distributor.actor_id,
        )

    def test_success_returns_transition(self):
        t = self.executor.execute_transition(
            SLOT_WORKFLOW, "approve", self.distributor,
            entity_type="GuaranteeSlot", entity=self._slot("pending"),
            context={"open_refund_count": 0},
        )
        assert t.to_state == "active"

    def test_authority_checked_before_state(self):
        """A buyer gets PermissionDenied even when the state is also wrong."""
        with pytest.raises(PermissionDeniedError):
            self.executor.execute_transition(
                SLOT_WORKFLOW, "approve", self.buyer,
                entity_type="GuaranteeSlot", entity=self._slot("completed"),
            )

    def test_no_transition(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            self.executor.execute_transition(
                SLOT_WORKFLOW, "complete", self.distributor,
                entity_type="GuaranteeSlot", entity=self._slot("pending"),
            )
        assert exc_info.value.allowed_statuses == ("active",)

    def test_guard_blocks(self):
        with pytest.raises(InvalidTransitionError, match="awaiting a decision"):
            self.executor.execute_transition(
                SLOT_WORKFLOW, "complete", self.distributor,
                entity_type="GuaranteeSlot", entity=self._slot("active"),
                context={"open_refund_count": 1},
            )

    def test_guard_without_context_fails_closed(self):
        with pytest.raises(InvalidTransitionError):
            self.executor.execute_transition(
                SLOT_WORKFLOW, "complete", self.distributor,
                entity_type="GuaranteeSlot", entity=self._slot("active"),
            )

    def test_unknown_action(self):
        with pytest.raises(ValueError, match="no action"):
            self.executor.authorize(
                SLOT_WORKFLOW, "cancel", self.distributor,
                entity_type="GuaranteeSlot", entity=self._slot("active"),
            )

    def test_scope_entity_used_for_ownership(self):
        """Refund rows are scoped through their slot."""
        refund = _Row(id=uuid4(), status="pending")
        slot = self._slot("active")
        self.executor.authorize(
            REFUND_WORKFLOW, "approve", self.distributor,
            entity_type="RefundRequest", entity=refund, scope_entity=slot,
        )
        with pytest.raises(PermissionDeniedError):
            self.executor.authorize(
                REFUND_WORKFLOW, "approve", self.distributor,
                entity_type="RefundRequest", entity=refund,
            )

    def test_trace_emitted(self, captured_logs):
        self.executor.execute_transition(
            SLOT_WORKFLOW, "reject", self.distributor,
            entity_type="GuaranteeSlot", entity=self._slot("pending"),
        )
        traces = [r for r in captured_logs() if r["message"] == "workflow_transition"]
        assert traces[-1]["action"] == "reject"
        assert traces[-1]["outcome"] == "success"
        assert traces[-1]["actor_role"] == "distributor"


class TestGuardExecutor:
    """GuardExecutor."""

    def test_unregistered_guard_fails_closed(self):
        assert GuardExecutor().evaluate(Guard("mystery", "")) is False

    def test_no_open_refund(self):
        ex = default_guard_executor()
        guard = Guard("no_open_refund", "")
        assert ex.evaluate(guard, {"open_refund_count": 0}) is True
        assert ex.evaluate(guard, {"open_refund_count": 2}) is False
        assert ex.evaluate(guard, {}) is False

    def test_custom_evaluator(self):
        ex = GuardExecutor()
        ex.register("always", lambda ctx: True)
        assert ex.evaluate(Guard("always", "")) is True
