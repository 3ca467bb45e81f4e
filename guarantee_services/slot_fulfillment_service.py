"""
guarantee_services.slot_fulfillment_service -- Guarantee slot state machine.

Responsibility:
    Owns the GuaranteeSlot lifecycle after purchase: distributor approval
    (activation), rejection and re-approval, and completion.  Completion
    settles the slot holding to the distributor and, when the slot ends
    early, refunds the unused remainder in the same commit.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Composes ConsistencyCoordinator, WorkflowExecutor, ProrationCalculator,
    GuaranteeSelector and a CampaignMetadataProvider.

Invariants enforced:
    - A slot reaches ``active`` only from pending or rejected, and
      ``completed`` only from active (SLOT_WORKFLOW).
    - Approval and completion are refused while a refund request is open
      (no_open_refund guard).
    - Completion and its early-completion refund are never split across
      two commits.
    - The refund never exceeds the contracted total minus approved refunds.

Failure modes:
    - ValidationError: blank rejection reason or work memo, negative refund.
    - RefundAmountExceededError: explicit completion refund above the
      unrefunded remainder.
    - DependencyFailureError: ledger, store or campaign provider failure.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from guarantee_engines.authority import SCOPE_PARTY
from guarantee_engines.proration import ProrationCalculator
from guarantee_kernel.domain.dtos import (
    GuaranteeSlot,
    GuaranteeUnit,
    RefundInitiator,
    RefundRequest,
    RefundSettings,
    RefundStatus,
    SlotHolding,
)
from guarantee_kernel.domain.roles import Actor, PermissionGroup
from guarantee_kernel.exceptions import (
    EntityNotFoundError,
    RefundAmountExceededError,
    ValidationError,
)
from guarantee_kernel.logging_config import LogContext, get_logger
from guarantee_kernel.models.guarantee_slot import GuaranteeSlotModel, RefundRequestModel
from guarantee_kernel.selectors.guarantee_selector import GuaranteeSelector
from guarantee_services.campaigns import CampaignMetadataProvider, refund_settings_for
from guarantee_services.consistency_coordinator import ConsistencyCoordinator, UnitOfWork
from guarantee_services.workflow_executor import WorkflowExecutor
from guarantee_services.workflows import SLOT_WORKFLOW

logger = get_logger("services.slot_fulfillment")

ENTITY = "GuaranteeSlot"
ZERO = Decimal("0")


@dataclass(frozen=True)
class CompletionResult:
    """Slot, optional early-completion refund and the settled holding."""

    slot: GuaranteeSlot
    refund: RefundRequest | None
    holding: SlotHolding


def _require_text(value: str | None, entity_id: UUID, field: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(ENTITY, str(entity_id), field, "must not be blank")
    return value.strip()


class SlotFulfillmentService:
    """
    GuaranteeSlot state machine.

    Contract:
        approve/reject/complete each run in one unit of work and return
        snapshots taken after the change.
    """

    def __init__(
        self,
        coordinator: ConsistencyCoordinator,
        campaigns: CampaignMetadataProvider,
        executor: WorkflowExecutor | None = None,
        proration: ProrationCalculator | None = None,
        default_refund_settings: RefundSettings | None = None,
    ):
        self._coordinator = coordinator
        self._campaigns = campaigns
        self._executor = executor or WorkflowExecutor()
        self._proration = proration or ProrationCalculator()
        self._default_refund_settings = default_refund_settings

    def _guard_context(self, uow: UnitOfWork, slot_id: UUID) -> dict:
        open_refund = GuaranteeSelector(uow.session).open_refund(slot_id)
        return {"open_refund_count": 0 if open_refund is None else 1}

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def approve(self, actor: Actor, slot_id: UUID, notes: str | None = None) -> GuaranteeSlot:
        """pending|rejected -> active.  Clears any previous rejection."""
        with LogContext.bind(slot_id=str(slot_id)):
            with self._coordinator.unit_of_work(actor, "approve_slot") as uow:
                slot = uow.lock(GuaranteeSlotModel, slot_id, ENTITY)
                transition = self._executor.execute_transition(
                    SLOT_WORKFLOW, "approve", actor,
                    entity_type=ENTITY, entity=slot,
                    context=self._guard_context(uow, slot_id),
                )
                slot.status = transition.to_state
                slot.approved_at = uow.now
                slot.approved_by = actor.actor_id
                slot.approval_notes = notes
                slot.rejected_at = None
                slot.rejected_by = None
                slot.rejection_reason = None
                slot.updated_by_id = actor.actor_id
                uow.notify(
                    "guarantee_slot_approved",
                    aggregate_type=ENTITY,
                    aggregate_id=slot.id,
                    recipients=[slot.user_id],
                    payload={"notes": notes},
                )
                uow.flush()
                return slot.to_dto()

    def reject(self, actor: Actor, slot_id: UUID, reason: str) -> GuaranteeSlot:
        """pending -> rejected.  A reason is required."""
        with LogContext.bind(slot_id=str(slot_id)):
            with self._coordinator.unit_of_work(actor, "reject_slot") as uow:
                slot = uow.lock(GuaranteeSlotModel, slot_id, ENTITY)
                transition = self._executor.execute_transition(
                    SLOT_WORKFLOW, "reject", actor,
                    entity_type=ENTITY, entity=slot,
                )
                slot.rejection_reason = _require_text(reason, slot_id, "rejection_reason")
                slot.status = transition.to_state
                slot.rejected_at = uow.now
                slot.rejected_by = actor.actor_id
                slot.updated_by_id = actor.actor_id
                uow.notify(
                    "guarantee_slot_rejected",
                    aggregate_type=ENTITY,
                    aggregate_id=slot.id,
                    recipients=[slot.user_id],
                    payload={"reason": slot.rejection_reason},
                )
                uow.flush()
                return slot.to_dto()

    def complete(
        self,
        actor: Actor,
        slot_id: UUID,
        work_memo: str,
        refund_amount: Decimal | None = None,
    ) -> CompletionResult:
        """
        active -> completed.

        Without ``refund_amount``, a day-unit slot completed before its
        end date refunds the prorated remainder under the campaign refund
        policy (cap and partial rule, not its usage windows); a disabled
        policy refunds nothing.  Count-unit slots refund only when an
        explicit amount is given.  A positive refund is
        recorded as an approved RefundRequest and released before the
        remaining holding is settled to the distributor.
        """
        if isinstance(refund_amount, float):
            raise TypeError("refund_amount must be Decimal, not float")

        with LogContext.bind(slot_id=str(slot_id)):
            with self._coordinator.unit_of_work(actor, "complete_slot") as uow:
                slot = uow.lock(GuaranteeSlotModel, slot_id, ENTITY)
                transition = self._executor.execute_transition(
                    SLOT_WORKFLOW, "complete", actor,
                    entity_type=ENTITY, entity=slot,
                    context=self._guard_context(uow, slot_id),
                )
                memo = _require_text(work_memo, slot_id, "work_memo")

                today = uow.now.date()
                amount = self._completion_refund(uow, slot, today, refund_amount)

                refund_dto = None
                if amount > 0:
                    refund_dto = self._record_completion_refund(uow, slot, actor, memo, amount)

                holding = uow.settle(
                    slot_id=slot.id,
                    description=f"Guarantee slot {slot.id} completed",
                )

                slot.status = transition.to_state
                slot.completed_at = uow.now
                slot.completed_by = actor.actor_id
                slot.work_memo = memo
                slot.updated_by_id = actor.actor_id
                uow.notify(
                    "guarantee_slot_completed",
                    aggregate_type=ENTITY,
                    aggregate_id=slot.id,
                    recipients=[slot.user_id],
                    payload={"refund_amount": amount},
                )
                uow.flush()
                result = CompletionResult(slot=slot.to_dto(), refund=refund_dto, holding=holding)

        logger.info(
            "guarantee_slot_completed",
            extra={
                "slot_id": str(slot_id),
                "refund_amount": str(amount),
                "settled_amount": str(result.holding.distributor_holding_amount),
            },
        )
        return result

    def _completion_refund(
        self,
        uow: UnitOfWork,
        slot: GuaranteeSlotModel,
        today: date,
        explicit: Decimal | None,
    ) -> Decimal:
        already = GuaranteeSelector(uow.session).approved_refund_total(slot.id)
        remainder = max(ZERO, slot.contracted_total - already)

        if explicit is not None:
            if explicit < 0:
                raise ValidationError(ENTITY, str(slot.id), "refund_amount", "must not be negative")
            if explicit > remainder:
                raise RefundAmountExceededError(str(slot.id), str(explicit), str(remainder))
            return explicit

        early = (
            slot.guarantee_unit == GuaranteeUnit.DAY.value
            and slot.end_date is not None
            and today < slot.end_date
        )
        if not early:
            return ZERO

        settings = refund_settings_for(
            self._campaigns, slot.campaign_id, "complete_slot", self._default_refund_settings
        )
        if not settings.enabled:
            logger.info(
                "completion_refund_disabled",
                extra={"slot_id": str(slot.id), "campaign_id": str(slot.campaign_id)},
            )
            return ZERO
        # Usage windows gate buyer requests only; the cap and partial rule still apply.
        settings = replace(
            settings,
            refund_rules=replace(
                settings.refund_rules, min_usage_days=None, max_refund_days=None
            ),
        )

        quote = self._proration.quote(
            slot_id=slot.id,
            daily_amount=slot.daily_amount,
            guarantee_count=slot.guarantee_count,
            start_date=slot.start_date,
            as_of=today,
            already_refunded=already,
            settings=settings,
        )
        return quote.refundable_amount

    def _record_completion_refund(
        self,
        uow: UnitOfWork,
        slot: GuaranteeSlotModel,
        actor: Actor,
        memo: str,
        amount: Decimal,
    ) -> RefundRequest:
        settings = refund_settings_for(
            self._campaigns, slot.campaign_id, "complete_slot", self._default_refund_settings
        )
        refund = RefundRequestModel(
            id=uuid4(),
            slot_id=slot.id,
            requester_id=actor.actor_id,
            initiated_by=RefundInitiator.COMPLETION.value,
            status=RefundStatus.APPROVED.value,
            refund_reason=f"Early completion: {memo}",
            refund_amount=amount,
            request_date=uow.now,
            approval_date=uow.now,
            approval_notes=memo,
            approved_by=actor.actor_id,
            expected_refund_date=self._proration.expected_refund_date(settings, uow.now),
            created_by_id=actor.actor_id,
        )
        uow.add(refund)
        uow.flush()
        uow.release(
            slot_id=slot.id,
            amount=amount,
            description=f"Early completion refund {refund.id}",
        )
        return refund.to_dto()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, actor: Actor, slot_id: UUID) -> GuaranteeSlot:
        with self._coordinator.read_session() as session:
            slot = session.get(GuaranteeSlotModel, slot_id)
            if slot is None:
                raise EntityNotFoundError(ENTITY, str(slot_id))
            self._executor.authority.require(
                actor,
                PermissionGroup.PUBLIC,
                action="view",
                entity_type=ENTITY,
                entity=slot,
                scope=SCOPE_PARTY,
            )
            return slot.to_dto()
