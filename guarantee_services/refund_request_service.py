"""
guarantee_services.refund_request_service -- Refund request state machine.

Responsibility:
    Owns the RefundRequest sub-lifecycle of an active slot: buyer requests
    (pending), distributor proposals (pending_user_confirmation), approval,
    rejection, buyer confirmation, and the read-only refund quote.
    Approval releases the refund amount from the slot holding back to the
    buyer in the same commit.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Composes ConsistencyCoordinator, WorkflowExecutor, ProrationCalculator,
    GuaranteeSelector and a CampaignMetadataProvider.

Invariants enforced:
    - At most one refund request per slot is open (pending or
      pending_user_confirmation); checked before insert and backed by a
      partial unique index.
    - Approved refunds of a slot never sum past its contracted total;
      re-verified at approval time.
    - approve/confirm are idempotent: a second call on an approved
      request changes nothing and releases nothing.
    - A buyer can never choose the refund amount.

Failure modes:
    - ConflictingRefundRequestError: slot already has an open request.
    - RefundNotAllowedError: campaign policy forbids the refund, or nothing
      remains refundable.
    - RefundAmountExceededError: explicit amount above the refundable amount.
    - ValidationError: blank reason or rejection notes.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from guarantee_engines.authority import SCOPE_PARTY
from guarantee_engines.proration import ProrationCalculator
from guarantee_kernel.domain.dtos import (
    RefundInitiator,
    RefundQuote,
    RefundRequest,
    RefundSettings,
    RefundStatus,
)
from guarantee_kernel.domain.roles import Actor, PermissionGroup
from guarantee_kernel.exceptions import (
    ConflictingRefundRequestError,
    EntityNotFoundError,
    RefundAmountExceededError,
    RefundNotAllowedError,
    ValidationError,
)
from guarantee_kernel.logging_config import LogContext, get_logger
from guarantee_kernel.models.guarantee_slot import GuaranteeSlotModel, RefundRequestModel
from guarantee_kernel.selectors.guarantee_selector import GuaranteeSelector
from guarantee_services.campaigns import CampaignMetadataProvider, refund_settings_for
from guarantee_services.consistency_coordinator import ConsistencyCoordinator, UnitOfWork
from guarantee_services.workflow_executor import WorkflowExecutor
from guarantee_services.workflows import REFUND_WORKFLOW, SLOT_WORKFLOW

logger = get_logger("services.refund_request")

ENTITY = "RefundRequest"
SLOT_ENTITY = "GuaranteeSlot"
ZERO = Decimal("0")


def _require_text(value: str | None, entity_type: str, entity_id: UUID, field: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(entity_type, str(entity_id), field, "must not be blank")
    return value.strip()


class RefundRequestService:
    """
    RefundRequest state machine.

    Contract:
        Creation and resolution each run in one unit of work.  The slot
        row is locked before the refund row so concurrent refund actions
        on one slot serialize.
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

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _settings(self, slot: GuaranteeSlotModel, operation: str) -> RefundSettings:
        return refund_settings_for(
            self._campaigns, slot.campaign_id, operation, self._default_refund_settings
        )

    def _quote(
        self,
        session: Session,
        slot: GuaranteeSlotModel,
        settings: RefundSettings,
        now: datetime,
    ) -> RefundQuote:
        already = GuaranteeSelector(session).approved_refund_total(slot.id)
        return self._proration.quote(
            slot_id=slot.id,
            daily_amount=slot.daily_amount,
            guarantee_count=slot.guarantee_count,
            start_date=slot.start_date,
            as_of=now.date(),
            already_refunded=already,
            settings=settings,
            now=now,
        )

    @staticmethod
    def _ensure_no_open_refund(uow: UnitOfWork, slot_id: UUID) -> None:
        existing = GuaranteeSelector(uow.session).open_refund(slot_id)
        if existing is not None:
            raise ConflictingRefundRequestError(str(slot_id), str(existing.id))

    def _lock_pair(
        self, uow: UnitOfWork, refund_id: UUID
    ) -> tuple[RefundRequestModel, GuaranteeSlotModel]:
        refund = uow.session.get(RefundRequestModel, refund_id)
        if refund is None:
            raise EntityNotFoundError(ENTITY, str(refund_id))
        slot = uow.lock(GuaranteeSlotModel, refund.slot_id, SLOT_ENTITY)
        refund = uow.lock(RefundRequestModel, refund_id, ENTITY)
        return refund, slot

    def _apply_approval(
        self,
        uow: UnitOfWork,
        refund: RefundRequestModel,
        slot: GuaranteeSlotModel,
        approver_id: UUID,
        notes: str | None,
    ) -> None:
        """Mark approved and release the amount.  Shared by approve and confirm."""
        already = GuaranteeSelector(uow.session).approved_refund_total(slot.id)
        remaining = max(ZERO, slot.contracted_total - already)
        if refund.refund_amount > remaining:
            raise RefundAmountExceededError(
                str(slot.id), str(refund.refund_amount), str(remaining)
            )

        refund.status = RefundStatus.APPROVED.value
        refund.approval_date = uow.now
        refund.approval_notes = notes
        refund.approved_by = approver_id
        if refund.expected_refund_date is None:
            refund.expected_refund_date = self._proration.expected_refund_date(
                self._settings(slot, uow.operation), uow.now
            )
        refund.updated_by_id = uow.actor.actor_id
        uow.flush()

        if refund.refund_amount > 0:
            uow.release(
                slot_id=slot.id,
                amount=refund.refund_amount,
                description=f"Refund {refund.id}",
            )

    def _new_refund(
        self,
        uow: UnitOfWork,
        slot: GuaranteeSlotModel,
        actor: Actor,
        *,
        initiator: RefundInitiator,
        status: RefundStatus,
        reason: str,
        amount: Decimal,
        quote: RefundQuote,
    ) -> RefundRequestModel:
        refund = RefundRequestModel(
            id=uuid4(),
            slot_id=slot.id,
            requester_id=actor.actor_id,
            initiated_by=initiator.value,
            status=status.value,
            refund_reason=reason,
            refund_amount=amount,
            request_date=uow.now,
            expected_refund_date=quote.expected_refund_date,
            created_by_id=actor.actor_id,
        )
        uow.add(refund)
        uow.flush()
        return refund

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def request_refund(self, actor: Actor, slot_id: UUID, reason: str) -> RefundRequest:
        """
        Buyer asks for the prorated remainder of an active slot.

        The amount is always computed.  When the campaign policy does not
        require approval the request is approved in the same commit.
        """
        with LogContext.bind(slot_id=str(slot_id)):
            with self._coordinator.unit_of_work(actor, "request_refund") as uow:
                slot = uow.lock(GuaranteeSlotModel, slot_id, SLOT_ENTITY)
                self._executor.execute_transition(
                    SLOT_WORKFLOW, "request_refund", actor,
                    entity_type=SLOT_ENTITY, entity=slot,
                )
                reason = _require_text(reason, SLOT_ENTITY, slot_id, "refund_reason")
                self._ensure_no_open_refund(uow, slot_id)

                settings = self._settings(slot, "request_refund")
                quote = self._quote(uow.session, slot, settings, uow.now)
                if quote.refundable_amount <= 0:
                    raise RefundNotAllowedError(str(slot_id), "no refundable amount remains")

                refund = self._new_refund(
                    uow, slot, actor,
                    initiator=RefundInitiator.BUYER,
                    status=RefundStatus.PENDING,
                    reason=reason,
                    amount=quote.refundable_amount,
                    quote=quote,
                )

                if not settings.requires_approval:
                    self._apply_approval(
                        uow, refund, slot, actor.actor_id, "approval not required by campaign policy"
                    )
                    event = "refund_approved"
                    recipients = [slot.user_id, slot.distributor_id]
                    logger.info(
                        "refund_auto_approved",
                        extra={"refund_request_id": str(refund.id), "amount": str(refund.refund_amount)},
                    )
                else:
                    event = "refund_requested"
                    recipients = [slot.distributor_id]

                uow.notify(
                    event,
                    aggregate_type=ENTITY,
                    aggregate_id=refund.id,
                    recipients=recipients,
                    payload={
                        "slot_id": slot.id,
                        "refund_amount": refund.refund_amount,
                        "elapsed_days": quote.elapsed_days,
                    },
                )
                uow.flush()
                return refund.to_dto()

    def propose_refund(
        self,
        actor: Actor,
        slot_id: UUID,
        reason: str,
        refund_amount: Decimal | None = None,
    ) -> RefundRequest:
        """
        Distributor proposes a refund the buyer must confirm.

        ``refund_amount`` defaults to the computed refundable amount and may
        not exceed it.
        """
        if isinstance(refund_amount, float):
            raise TypeError("refund_amount must be Decimal, not float")

        with LogContext.bind(slot_id=str(slot_id)):
            with self._coordinator.unit_of_work(actor, "propose_refund") as uow:
                slot = uow.lock(GuaranteeSlotModel, slot_id, SLOT_ENTITY)
                self._executor.execute_transition(
                    SLOT_WORKFLOW, "propose_refund", actor,
                    entity_type=SLOT_ENTITY, entity=slot,
                )
                reason = _require_text(reason, SLOT_ENTITY, slot_id, "refund_reason")
                self._ensure_no_open_refund(uow, slot_id)

                settings = self._settings(slot, "propose_refund")
                quote = self._quote(uow.session, slot, settings, uow.now)

                if refund_amount is None:
                    amount = quote.refundable_amount
                    if amount <= 0:
                        raise RefundNotAllowedError(str(slot_id), "no refundable amount remains")
                else:
                    if refund_amount <= 0:
                        raise ValidationError(
                            SLOT_ENTITY, str(slot_id), "refund_amount", "must be positive"
                        )
                    if refund_amount > quote.refundable_amount:
                        raise RefundAmountExceededError(
                            str(slot_id), str(refund_amount), str(quote.refundable_amount)
                        )
                    amount = refund_amount

                refund = self._new_refund(
                    uow, slot, actor,
                    initiator=RefundInitiator.DISTRIBUTOR,
                    status=RefundStatus.PENDING_USER_CONFIRMATION,
                    reason=reason,
                    amount=amount,
                    quote=quote,
                )
                uow.notify(
                    "refund_proposed",
                    aggregate_type=ENTITY,
                    aggregate_id=refund.id,
                    recipients=[slot.user_id],
                    payload={"slot_id": slot.id, "refund_amount": amount},
                )
                return refund.to_dto()

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def approve(self, actor: Actor, refund_id: UUID, notes: str | None = None) -> RefundRequest:
        """pending -> approved, releasing the amount.  Idempotent."""
        with LogContext.bind(refund_request_id=str(refund_id)):
            with self._coordinator.unit_of_work(actor, "approve_refund") as uow:
                refund, slot = self._lock_pair(uow, refund_id)
                if refund.status == RefundStatus.APPROVED.value:
                    self._executor.authorize(
                        REFUND_WORKFLOW, "approve", actor,
                        entity_type=ENTITY, entity=refund, scope_entity=slot,
                    )
                    self._executor.record_noop(
                        REFUND_WORKFLOW, "approve", actor,
                        entity_type=ENTITY, entity=refund, reason="already approved",
                    )
                    return refund.to_dto()

                self._executor.execute_transition(
                    REFUND_WORKFLOW, "approve", actor,
                    entity_type=ENTITY, entity=refund, scope_entity=slot,
                )
                self._apply_approval(uow, refund, slot, actor.actor_id, notes)
                uow.notify(
                    "refund_approved",
                    aggregate_type=ENTITY,
                    aggregate_id=refund.id,
                    recipients=[slot.user_id],
                    payload={"slot_id": slot.id, "refund_amount": refund.refund_amount},
                )
                return refund.to_dto()

    def reject(self, actor: Actor, refund_id: UUID, notes: str) -> RefundRequest:
        """pending|pending_user_confirmation -> rejected.  Notes are required."""
        with LogContext.bind(refund_request_id=str(refund_id)):
            with self._coordinator.unit_of_work(actor, "reject_refund") as uow:
                refund, slot = self._lock_pair(uow, refund_id)
                transition = self._executor.execute_transition(
                    REFUND_WORKFLOW, "reject", actor,
                    entity_type=ENTITY, entity=refund, scope_entity=slot,
                )
                refund.approval_notes = _require_text(notes, ENTITY, refund_id, "approval_notes")
                refund.status = transition.to_state
                refund.approval_date = uow.now
                refund.updated_by_id = actor.actor_id
                uow.notify(
                    "refund_rejected",
                    aggregate_type=ENTITY,
                    aggregate_id=refund.id,
                    recipients=[slot.user_id],
                    payload={"slot_id": slot.id, "notes": refund.approval_notes},
                )
                uow.flush()
                return refund.to_dto()

    def confirm(self, actor: Actor, refund_id: UUID) -> RefundRequest:
        """Buyer accepts a distributor proposal; approved via the approve path."""
        with LogContext.bind(refund_request_id=str(refund_id)):
            with self._coordinator.unit_of_work(actor, "confirm_refund") as uow:
                refund, slot = self._lock_pair(uow, refund_id)
                if refund.status == RefundStatus.APPROVED.value:
                    self._executor.authorize(
                        REFUND_WORKFLOW, "confirm", actor,
                        entity_type=ENTITY, entity=refund, scope_entity=slot,
                    )
                    self._executor.record_noop(
                        REFUND_WORKFLOW, "confirm", actor,
                        entity_type=ENTITY, entity=refund, reason="already approved",
                    )
                    return refund.to_dto()

                self._executor.execute_transition(
                    REFUND_WORKFLOW, "confirm", actor,
                    entity_type=ENTITY, entity=refund, scope_entity=slot,
                )
                self._apply_approval(uow, refund, slot, actor.actor_id, "confirmed by buyer")
                uow.notify(
                    "refund_confirmed",
                    aggregate_type=ENTITY,
                    aggregate_id=refund.id,
                    recipients=[slot.distributor_id],
                    payload={"slot_id": slot.id, "refund_amount": refund.refund_amount},
                )
                return refund.to_dto()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def quote_refund(self, actor: Actor, slot_id: UUID) -> RefundQuote:
        """What a refund request on this slot would return right now."""
        with self._coordinator.read_session() as session:
            slot = session.get(GuaranteeSlotModel, slot_id)
            if slot is None:
                raise EntityNotFoundError(SLOT_ENTITY, str(slot_id))
            self._executor.authority.require(
                actor,
                PermissionGroup.CAMPAIGN,
                action="quote_refund",
                entity_type=SLOT_ENTITY,
                entity=slot,
                scope=SCOPE_PARTY,
            )
            settings = self._settings(slot, "quote_refund")
            return self._quote(session, slot, settings, self._coordinator.clock.now())

    def history(self, actor: Actor, slot_id: UUID) -> list[RefundRequest]:
        """All refund requests of a slot, oldest first."""
        with self._coordinator.read_session() as session:
            slot = session.get(GuaranteeSlotModel, slot_id)
            if slot is None:
                raise EntityNotFoundError(SLOT_ENTITY, str(slot_id))
            self._executor.authority.require(
                actor,
                PermissionGroup.PUBLIC,
                action="view",
                entity_type=SLOT_ENTITY,
                entity=slot,
                scope=SCOPE_PARTY,
            )
            return GuaranteeSelector(session).refund_history(slot_id)
