"""
guarantee_services.quote_request_service -- Quote request state machine.

Responsibility:
    Owns the QuoteRequest lifecycle: creation by the buyer, negotiation,
    acceptance with final terms, rejection and its undo, caller-driven
    expiry, and purchase.  Purchase creates exactly one pending
    GuaranteeSlot and holds the contracted total from the buyer's balance
    in the same unit of work.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Composes ConsistencyCoordinator (transaction boundary), WorkflowExecutor
    (authority, transition and guard checks), ProrationCalculator
    (contracted total) and a CampaignMetadataProvider.

Invariants enforced:
    - final_* fields and the negotiated dates are set iff the status is
      accepted or purchased (also a CHECK constraint).
    - final_total_amount is always the engine's contracted total, never a
      caller-supplied figure.
    - A request reaches ``purchased`` only together with its slot and
      holding; any failure rolls the whole purchase back.

Failure modes:
    - PermissionDeniedError, InvalidTransitionError (see WorkflowExecutor).
    - MissingNegotiatedTermsError from accept() without amount or dates.
    - ValidationError from accept() while no distributor is assigned.
    - InsufficientBalanceError from purchase() via the ledger.
    - DependencyFailureError when the campaign provider, store or ledger fails.

Usage:
    service = QuoteRequestService(coordinator, campaigns)
    request = service.create_request(buyer, campaign_id, QuoteRequestDraft(3, 10))
    service.open_negotiation(distributor, request.id)
    service.accept(distributor, request.id, NegotiatedTerms(
        final_daily_amount=Decimal("10000"),
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 10),
    ))
    result = service.purchase(buyer, request.id)
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid4

from guarantee_engines.authority import SCOPE_PARTY, RoleAuthority
from guarantee_engines.proration import ProrationCalculator
from guarantee_kernel.domain.dtos import (
    GuaranteeSlot,
    NegotiatedTerms,
    QuoteRequest,
    QuoteRequestDraft,
    QuoteRequestStatus,
    SlotHolding,
    SlotStatus,
)
from guarantee_kernel.domain.roles import Actor, PermissionGroup
from guarantee_kernel.exceptions import (
    EntityNotFoundError,
    MissingNegotiatedTermsError,
    ValidationError,
)
from guarantee_kernel.logging_config import LogContext, get_logger
from guarantee_kernel.models.guarantee_slot import GuaranteeSlotModel
from guarantee_kernel.models.quote_request import QuoteRequestModel
from guarantee_services.campaigns import CampaignMetadataProvider, fetch_campaign
from guarantee_services.consistency_coordinator import ConsistencyCoordinator
from guarantee_services.workflow_executor import WorkflowExecutor
from guarantee_services.workflows import QUOTE_REQUEST_WORKFLOW

logger = get_logger("services.quote_request")

ENTITY = "QuoteRequest"


@dataclass(frozen=True)
class PurchaseResult:
    """Everything one purchase committed."""

    request: QuoteRequest
    slot: GuaranteeSlot
    holding: SlotHolding


class QuoteRequestService:
    """
    QuoteRequest state machine.

    Contract:
        Every mutating method runs in one ConsistencyCoordinator unit of
        work and returns a DTO snapshot taken after the change.

    Non-goals:
        - Price counter-offers inside ``negotiating`` are not modelled.
        - Expiry deadlines are not evaluated on read; see
          ``scripts/expire_quotes.py``.
    """

    def __init__(
        self,
        coordinator: ConsistencyCoordinator,
        campaigns: CampaignMetadataProvider,
        executor: WorkflowExecutor | None = None,
        proration: ProrationCalculator | None = None,
    ):
        self._coordinator = coordinator
        self._campaigns = campaigns
        self._executor = executor or WorkflowExecutor()
        self._proration = proration or ProrationCalculator()

    @property
    def authority(self) -> RoleAuthority:
        return self._executor.authority

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_request(
        self,
        actor: Actor,
        campaign_id: UUID,
        draft: QuoteRequestDraft,
    ) -> QuoteRequest:
        """Buyer asks for a guarantee on a campaign (status=requested)."""
        self.authority.require(
            actor,
            PermissionGroup.CAMPAIGN,
            action="create_request",
            entity_type=ENTITY,
            scope=None,
        )
        campaign = fetch_campaign(self._campaigns, campaign_id, "create_request")
        if not campaign.is_guarantee:
            raise ValidationError(
                "Campaign", str(campaign_id), "is_guarantee",
                "campaign does not sell guarantee placements",
            )

        request_id = uuid4()
        with LogContext.bind(quote_request_id=str(request_id)):
            with self._coordinator.unit_of_work(actor, "create_request") as uow:
                model = QuoteRequestModel(
                    id=request_id,
                    campaign_id=campaign_id,
                    user_id=actor.actor_id,
                    distributor_id=campaign.default_distributor_id,
                    keyword_id=draft.keyword_id,
                    status=QuoteRequestStatus.REQUESTED.value,
                    target_rank=draft.target_rank,
                    guarantee_count=draft.guarantee_count,
                    guarantee_unit=campaign.guarantee_unit.value,
                    guarantee_period=draft.guarantee_period,
                    quantity=draft.quantity,
                    initial_budget=draft.initial_budget,
                    user_reason=draft.user_reason,
                    additional_requirements=draft.additional_requirements,
                    expires_at=draft.expires_at,
                    created_by_id=actor.actor_id,
                )
                uow.add(model)
                uow.flush()
                uow.notify(
                    "quote_request_created",
                    aggregate_type=ENTITY,
                    aggregate_id=model.id,
                    recipients=[model.distributor_id],
                    payload={
                        "campaign_id": campaign_id,
                        "target_rank": draft.target_rank,
                        "guarantee_count": draft.guarantee_count,
                    },
                )
                result = model.to_dto()

        logger.info(
            "quote_request_created",
            extra={
                "quote_request_id": str(result.id),
                "campaign_id": str(campaign_id),
                "guarantee_unit": result.guarantee_unit.value,
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Negotiation
    # -------------------------------------------------------------------------

    def open_negotiation(self, actor: Actor, request_id: UUID) -> QuoteRequest:
        """requested -> negotiating.  A distributor may claim an unassigned request."""
        with LogContext.bind(quote_request_id=str(request_id)):
            with self._coordinator.unit_of_work(actor, "open_negotiation") as uow:
                model = uow.lock(QuoteRequestModel, request_id, ENTITY)
                transition = self._executor.execute_transition(
                    QUOTE_REQUEST_WORKFLOW, "open_negotiation", actor,
                    entity_type=ENTITY, entity=model,
                )
                if model.distributor_id is None and not self.authority.is_admin(actor):
                    model.distributor_id = actor.actor_id
                model.status = transition.to_state
                model.updated_by_id = actor.actor_id
                uow.notify(
                    "quote_request_negotiating",
                    aggregate_type=ENTITY,
                    aggregate_id=model.id,
                    recipients=[model.user_id],
                )
                uow.flush()
                return model.to_dto()

    def accept(self, actor: Actor, request_id: UUID, terms: NegotiatedTerms) -> QuoteRequest:
        """
        negotiating -> accepted, recording the final terms.

        Raises:
            MissingNegotiatedTermsError: Amount or either date missing.
            ValidationError: No distributor is assigned to the request.
        """
        with LogContext.bind(quote_request_id=str(request_id)):
            with self._coordinator.unit_of_work(actor, "accept") as uow:
                model = uow.lock(QuoteRequestModel, request_id, ENTITY)
                transition = self._executor.execute_transition(
                    QUOTE_REQUEST_WORKFLOW, "accept", actor,
                    entity_type=ENTITY, entity=model,
                )
                missing = terms.missing_fields()
                if missing:
                    raise MissingNegotiatedTermsError(str(request_id), missing)
                if model.distributor_id is None:
                    raise ValidationError(
                        ENTITY, str(request_id), "distributor_id",
                        "request has no assigned distributor",
                    )

                model.final_daily_amount = terms.final_daily_amount
                model.final_budget_type = terms.final_budget_type.value
                model.final_total_amount = self._proration.contracted_total(
                    terms.final_daily_amount, model.guarantee_count
                )
                model.start_date = terms.start_date
                model.end_date = terms.end_date
                model.status = transition.to_state
                model.updated_by_id = actor.actor_id
                uow.notify(
                    "quote_request_accepted",
                    aggregate_type=ENTITY,
                    aggregate_id=model.id,
                    recipients=[model.user_id],
                    payload={
                        "final_daily_amount": model.final_daily_amount,
                        "final_total_amount": model.final_total_amount,
                        "start_date": model.start_date,
                        "end_date": model.end_date,
                    },
                )
                uow.flush()
                return model.to_dto()

    def reject(self, actor: Actor, request_id: UUID, reason: str | None = None) -> QuoteRequest:
        """requested|negotiating -> rejected."""
        with LogContext.bind(quote_request_id=str(request_id)):
            with self._coordinator.unit_of_work(actor, "reject") as uow:
                model = uow.lock(QuoteRequestModel, request_id, ENTITY)
                transition = self._executor.execute_transition(
                    QUOTE_REQUEST_WORKFLOW, "reject", actor,
                    entity_type=ENTITY, entity=model,
                )
                model.status = transition.to_state
                model.rejection_reason = reason
                model.updated_by_id = actor.actor_id
                uow.notify(
                    "quote_request_rejected",
                    aggregate_type=ENTITY,
                    aggregate_id=model.id,
                    recipients=[model.user_id],
                    payload={"reason": reason},
                )
                uow.flush()
                return model.to_dto()

    def undo_rejection(self, actor: Actor, request_id: UUID) -> QuoteRequest:
        """rejected -> negotiating, for a rejection made in error."""
        with LogContext.bind(quote_request_id=str(request_id)):
            with self._coordinator.unit_of_work(actor, "undo_rejection") as uow:
                model = uow.lock(QuoteRequestModel, request_id, ENTITY)
                transition = self._executor.execute_transition(
                    QUOTE_REQUEST_WORKFLOW, "undo_rejection", actor,
                    entity_type=ENTITY, entity=model,
                )
                model.status = transition.to_state
                model.updated_by_id = actor.actor_id
                uow.notify(
                    "quote_request_reopened",
                    aggregate_type=ENTITY,
                    aggregate_id=model.id,
                    recipients=[model.user_id],
                )
                uow.flush()
                return model.to_dto()

    def expire(self, actor: Actor, request_id: UUID) -> QuoteRequest:
        """requested|negotiating|accepted -> expired.  Clears any final terms."""
        with LogContext.bind(quote_request_id=str(request_id)):
            with self._coordinator.unit_of_work(actor, "expire") as uow:
                model = uow.lock(QuoteRequestModel, request_id, ENTITY)
                transition = self._executor.execute_transition(
                    QUOTE_REQUEST_WORKFLOW, "expire", actor,
                    entity_type=ENTITY, entity=model,
                )
                model.clear_negotiated_terms()
                model.status = transition.to_state
                model.updated_by_id = actor.actor_id
                uow.notify(
                    "quote_request_expired",
                    aggregate_type=ENTITY,
                    aggregate_id=model.id,
                    recipients=[model.user_id, model.distributor_id],
                )
                uow.flush()
                return model.to_dto()

    # -------------------------------------------------------------------------
    # Purchase
    # -------------------------------------------------------------------------

    def purchase(
        self,
        actor: Actor,
        request_id: UUID,
        purchase_reason: str | None = None,
    ) -> PurchaseResult:
        """
        accepted -> purchased.

        Preconditions: Request is accepted; buyer balance covers the
            contracted total.
        Postconditions: Exactly one pending slot exists for the request,
            with dates copied from it, and the contracted total is held.
        """
        with LogContext.bind(quote_request_id=str(request_id)):
            with self._coordinator.unit_of_work(actor, "purchase") as uow:
                model = uow.lock(QuoteRequestModel, request_id, ENTITY)
                transition = self._executor.execute_transition(
                    QUOTE_REQUEST_WORKFLOW, "purchase", actor,
                    entity_type=ENTITY, entity=model,
                )
                contracted = self._proration.contracted_total(
                    model.final_daily_amount, model.guarantee_count
                )

                slot = GuaranteeSlotModel(
                    id=uuid4(),
                    request_id=model.id,
                    campaign_id=model.campaign_id,
                    user_id=model.user_id,
                    distributor_id=model.distributor_id,
                    status=SlotStatus.PENDING.value,
                    guarantee_unit=model.guarantee_unit,
                    guarantee_count=model.guarantee_count,
                    target_rank=model.target_rank,
                    daily_amount=model.final_daily_amount,
                    contracted_total=contracted,
                    start_date=model.start_date,
                    end_date=model.end_date,
                    created_by_id=actor.actor_id,
                )
                uow.add(slot)
                # Slot row must exist before the holding references it.
                uow.flush()

                holding = uow.hold(
                    user_id=model.user_id,
                    slot_id=slot.id,
                    distributor_id=model.distributor_id,
                    amount=contracted,
                    description=f"Guarantee purchase for request {model.id}",
                )

                model.status = transition.to_state
                model.final_total_amount = contracted
                model.purchase_reason = purchase_reason
                model.purchased_at = uow.now
                model.updated_by_id = actor.actor_id
                uow.notify(
                    "quote_request_purchased",
                    aggregate_type=ENTITY,
                    aggregate_id=model.id,
                    recipients=[model.distributor_id],
                    payload={"slot_id": slot.id, "contracted_total": contracted},
                )
                uow.flush()
                result = PurchaseResult(
                    request=model.to_dto(),
                    slot=slot.to_dto(),
                    holding=holding,
                )

        logger.info(
            "quote_request_purchased",
            extra={
                "quote_request_id": str(request_id),
                "slot_id": str(result.slot.id),
                "contracted_total": str(result.slot.contracted_total),
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, actor: Actor, request_id: UUID) -> QuoteRequest:
        """Read one request.  Owner, assignee, admins, and any distributor
        while the request is still unassigned."""
        with self._coordinator.read_session() as session:
            model = session.get(QuoteRequestModel, request_id)
            if model is None:
                raise EntityNotFoundError(ENTITY, str(request_id))
            claimable = (
                model.distributor_id is None
                and self.authority.authorize(actor, PermissionGroup.DISTRIBUTOR)
            )
            if not claimable:
                self.authority.require(
                    actor,
                    PermissionGroup.PUBLIC,
                    action="view",
                    entity_type=ENTITY,
                    entity=model,
                    scope=SCOPE_PARTY,
                )
            return model.to_dto()


__all__ = ["PurchaseResult", "QuoteRequestService"]
