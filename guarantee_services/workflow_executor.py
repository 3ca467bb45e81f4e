"""
guarantee_services.workflow_executor -- Workflow transition gate.

Responsibility:
    Decides whether an actor may fire an action on an entity right now.
    Thin coordinator: role and ownership checks are delegated to
    RoleAuthority, guard evaluation to GuardExecutor.  Every decision is
    emitted as one structured ``workflow_transition`` record.

Architecture position:
    Services layer.  May import from guarantee_engines/ and
    guarantee_kernel/ (domain, exceptions, logging).  Performs no I/O
    beyond logging; the owning service applies the state change.

Invariants enforced:
    - Authority is checked before state: an actor without the required
      level or ownership gets PermissionDeniedError whatever the state.
    - An action with no transition out of the current state raises
      InvalidTransitionError carrying the allowed source states.
    - A failing guard raises InvalidTransitionError naming the guard.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from guarantee_engines.authority import RoleAuthority
from guarantee_kernel.domain.roles import Actor
from guarantee_kernel.domain.workflow import Guard, Transition, Workflow
from guarantee_kernel.exceptions import InvalidTransitionError, PermissionDeniedError
from guarantee_kernel.logging_config import get_logger

logger = get_logger("services.workflow_executor")

TRACE_TYPE_WORKFLOW_TRANSITION = "WORKFLOW_TRANSITION"
OUTCOME_SUCCESS = "success"
OUTCOME_PERMISSION_DENIED = "permission_denied"
OUTCOME_NO_TRANSITION = "no_transition"
OUTCOME_GUARD_FAILED = "guard_failed"
OUTCOME_IDEMPOTENT = "idempotent_noop"


def _emit_workflow_trace(
    workflow_name: str,
    action: str,
    entity_type: str,
    entity_id: Any,
    from_state: str,
    outcome: str,
    reason: str,
    duration_ms: float,
    actor: Actor,
    to_state: str | None = None,
    moves_money: bool = False,
) -> None:
    """Emit a structured workflow transition record."""
    record: dict[str, Any] = {
        "trace_type": TRACE_TYPE_WORKFLOW_TRANSITION,
        "workflow": workflow_name,
        "action": action,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "from_state": from_state,
        "outcome": outcome,
        "reason": reason,
        "duration_ms": round(duration_ms, 3),
        "actor_role": actor.role,
        "moves_money": moves_money,
    }
    if to_state is not None:
        record["to_state"] = to_state
    level = logger.info if outcome in (OUTCOME_SUCCESS, OUTCOME_IDEMPOTENT) else logger.warning
    level("workflow_transition", extra=record)


# ---------------------------------------------------------------------------
# Guard evaluation
# ---------------------------------------------------------------------------


def _get_attr(context: Any, key: str, default: Any = None) -> Any:
    """Get attribute from context (object or dict)."""
    if context is None:
        return default
    if hasattr(context, "get") and callable(getattr(context, "get")):
        return context.get(key, default)
    return getattr(context, key, default)


def _no_open_refund(context: Any) -> bool:
    """Slot: no refund request is pending a decision."""
    count = _get_attr(context, "open_refund_count")
    return count is not None and int(count) == 0


class GuardExecutor:
    """Evaluates workflow guards against context.

    Guards are declared on transitions (name + description); this executor
    holds the evaluation function per guard name.  An unregistered guard
    fails closed.
    """

    def __init__(self) -> None:
        self._evaluators: dict[str, Callable[[Any], bool]] = {}

    def register(self, guard_name: str, evaluator: Callable[[Any], bool]) -> None:
        self._evaluators[guard_name] = evaluator

    def evaluate(self, guard: Guard, context: Any = None) -> bool:
        fn = self._evaluators.get(guard.name)
        if fn is None:
            logger.warning("guard_no_evaluator", extra={"guard_name": guard.name})
            return False
        return bool(fn(context))


def default_guard_executor() -> GuardExecutor:
    """Return a GuardExecutor with the built-in evaluators registered."""
    ex = GuardExecutor()
    ex.register("no_open_refund", _no_open_refund)
    return ex


# ---------------------------------------------------------------------------
# WorkflowExecutor
# ---------------------------------------------------------------------------


class WorkflowExecutor:
    """Validates transitions: authority first, then state, then guard."""

    def __init__(
        self,
        authority: RoleAuthority | None = None,
        guard_executor: GuardExecutor | None = None,
    ) -> None:
        self.authority = authority or RoleAuthority()
        self._guard_executor = guard_executor or default_guard_executor()

    @staticmethod
    def _required_for(workflow: Workflow, action: str) -> Transition:
        for t in workflow.transitions:
            if t.action == action:
                return t
        raise ValueError(f"Workflow {workflow.name} has no action {action!r}")

    def authorize(
        self,
        workflow: Workflow,
        action: str,
        actor: Actor,
        *,
        entity_type: str,
        entity: Any,
        scope_entity: Any = None,
    ) -> None:
        """Raise PermissionDeniedError unless ``actor`` may fire ``action``.

        ``scope_entity`` is the object carrying user_id/distributor_id when
        it differs from ``entity`` (a refund request is scoped by its slot).
        """
        template = self._required_for(workflow, action)
        t0 = time.monotonic()
        try:
            self.authority.require(
                actor,
                template.required_level,
                action=action,
                entity_type=entity_type,
                entity=scope_entity if scope_entity is not None else entity,
                entity_id=entity.id,
                scope=template.scope,
            )
        except PermissionDeniedError as exc:
            _emit_workflow_trace(
                workflow_name=workflow.name,
                action=action,
                entity_type=entity_type,
                entity_id=entity.id,
                from_state=entity.status,
                outcome=OUTCOME_PERMISSION_DENIED,
                reason=exc.reason,
                duration_ms=(time.monotonic() - t0) * 1000,
                actor=actor,
            )
            raise

    def execute_transition(
        self,
        workflow: Workflow,
        action: str,
        actor: Actor,
        *,
        entity_type: str,
        entity: Any,
        scope_entity: Any = None,
        context: dict[str, Any] | None = None,
    ) -> Transition:
        """
        Validate ``action`` on ``entity`` and return the matching transition.

        ``entity`` must expose ``id`` and ``status`` (string).  The caller
        applies ``transition.to_state`` and the side effects.

        Raises:
            PermissionDeniedError: Level or ownership check failed.
            InvalidTransitionError: No transition from the current status,
                or its guard is not satisfied.
        """
        t0 = time.monotonic()
        current_state = entity.status

        self.authorize(
            workflow, action, actor,
            entity_type=entity_type, entity=entity, scope_entity=scope_entity,
        )

        transition = workflow.find(action, current_state)
        if transition is None:
            allowed = workflow.sources_for(action)
            reason = (
                f"No transition from '{current_state}' via action '{action}' "
                f"in workflow '{workflow.name}'"
            )
            _emit_workflow_trace(
                workflow_name=workflow.name,
                action=action,
                entity_type=entity_type,
                entity_id=entity.id,
                from_state=current_state,
                outcome=OUTCOME_NO_TRANSITION,
                reason=reason,
                duration_ms=(time.monotonic() - t0) * 1000,
                actor=actor,
            )
            raise InvalidTransitionError(
                entity_type=entity_type,
                entity_id=str(entity.id),
                action=action,
                current_status=current_state,
                allowed_statuses=allowed,
            )

        if transition.guard is not None and not self._guard_executor.evaluate(
            transition.guard, context or {}
        ):
            reason = f"Guard not satisfied: {transition.guard.name}"
            _emit_workflow_trace(
                workflow_name=workflow.name,
                action=action,
                entity_type=entity_type,
                entity_id=entity.id,
                from_state=current_state,
                outcome=OUTCOME_GUARD_FAILED,
                reason=reason,
                duration_ms=(time.monotonic() - t0) * 1000,
                actor=actor,
            )
            raise InvalidTransitionError(
                entity_type=entity_type,
                entity_id=str(entity.id),
                action=action,
                current_status=current_state,
                allowed_statuses=workflow.sources_for(action),
                reason=transition.guard.description,
            )

        _emit_workflow_trace(
            workflow_name=workflow.name,
            action=action,
            entity_type=entity_type,
            entity_id=entity.id,
            from_state=current_state,
            outcome=OUTCOME_SUCCESS,
            reason="",
            duration_ms=(time.monotonic() - t0) * 1000,
            actor=actor,
            to_state=transition.to_state,
            moves_money=transition.moves_money,
        )
        return transition

    def record_noop(
        self,
        workflow: Workflow,
        action: str,
        actor: Actor,
        *,
        entity_type: str,
        entity: Any,
        reason: str,
    ) -> None:
        """Trace an idempotent re-invocation that changes nothing."""
        _emit_workflow_trace(
            workflow_name=workflow.name,
            action=action,
            entity_type=entity_type,
            entity_id=entity.id,
            from_state=entity.status,
            outcome=OUTCOME_IDEMPOTENT,
            reason=reason,
            duration_ms=0.0,
            actor=actor,
            to_state=entity.status,
        )
