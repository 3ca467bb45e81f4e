"""
Tests for the QuoteRequest lifecycle.

Covers:
- Creation: campaign unit copied, default distributor assignment, level gate
- Negotiation: claiming an unassigned request, reject / undo rejection
- Accept: final terms required, contracted total derived
- Expire: final terms cleared, terminal afterwards
- Purchase: slot created with copied dates, contracted total held,
  insufficient balance rolls back
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from guarantee_kernel.db.engine import session_scope
from guarantee_kernel.domain.dtos import (
    CampaignMetadata,
    GuaranteeUnit,
    HoldingStatus,
    NegotiatedTerms,
    QuoteRequestDraft,
    QuoteRequestStatus,
    SlotStatus,
    TransactionType,
)
from guarantee_kernel.domain.roles import Actor
from guarantee_kernel.exceptions import (
    DependencyFailureError,
    EntityNotFoundError,
    InsufficientBalanceError,
    InvalidTransitionError,
    MissingNegotiatedTermsError,
    PermissionDeniedError,
    ValidationError,
)
from guarantee_kernel.selectors.guarantee_selector import GuaranteeSelector
from guarantee_services.ledger import SqlLedger

DRAFT = QuoteRequestDraft(target_rank=3, guarantee_count=10, user_reason="launch week")
TERMS = NegotiatedTerms(
    final_daily_amount=Decimal("10000"),
    start_date=date(2024, 1, 1),
    end_date=date(2024, 1, 10),
)


class TestCreateRequest:
    """create_request."""

    def test_creates_requested(self, workflow_engine, buyer, campaign_id):
        request = workflow_engine.quotes.create_request(buyer, campaign_id, DRAFT)

        assert request.status == QuoteRequestStatus.REQUESTED
        assert request.user_id == buyer.actor_id
        assert request.distributor_id is None
        assert request.guarantee_unit == GuaranteeUnit.DAY
        assert request.user_reason == "launch week"

    def test_unit_copied_from_campaign(self, workflow_engine, buyer, count_campaign_id):
        request = workflow_engine.quotes.create_request(buyer, count_campaign_id, DRAFT)
        assert request.guarantee_unit == GuaranteeUnit.COUNT

    def test_default_distributor_assigned(self, workflow_engine, campaigns, buyer, distributor):
        campaign = CampaignMetadata(
            campaign_id=uuid4(),
            guarantee_unit=GuaranteeUnit.DAY,
            default_distributor_id=distributor.actor_id,
        )
        campaigns.register(campaign)

        request = workflow_engine.quotes.create_request(buyer, campaign.campaign_id, DRAFT)
        assert request.distributor_id == distributor.actor_id

    def test_non_guarantee_campaign_rejected(self, workflow_engine, campaigns, buyer):
        campaign = CampaignMetadata(
            campaign_id=uuid4(), guarantee_unit=GuaranteeUnit.DAY, is_guarantee=False
        )
        campaigns.register(campaign)

        with pytest.raises(ValidationError):
            workflow_engine.quotes.create_request(buyer, campaign.campaign_id, DRAFT)

    def test_unknown_campaign(self, workflow_engine, buyer):
        with pytest.raises(EntityNotFoundError):
            workflow_engine.quotes.create_request(buyer, uuid4(), DRAFT)

    def test_guest_cannot_create(self, workflow_engine, campaign_id):
        guest = Actor(actor_id=uuid4(), role="guest")
        with pytest.raises(PermissionDeniedError):
            workflow_engine.quotes.create_request(guest, campaign_id, DRAFT)

    def test_campaign_provider_failure(self, workflow_engine, buyer, campaign_id):
        """A provider that blows up is reported as a dependency failure."""

        class BrokenProvider:
            def get_campaign(self, campaign_id):
                raise ConnectionError("campaign service down")

        workflow_engine.quotes._campaigns = BrokenProvider()
        with pytest.raises(DependencyFailureError) as exc_info:
            workflow_engine.quotes.create_request(buyer, campaign_id, DRAFT)
        assert exc_info.value.dependency == "campaign_metadata"

    def test_draft_validation(self):
        with pytest.raises(ValueError, match="target_rank"):
            QuoteRequestDraft(target_rank=0, guarantee_count=10)
        with pytest.raises(ValueError, match="guarantee_count"):
            QuoteRequestDraft(target_rank=1, guarantee_count=0)


class TestNegotiation:
    """open_negotiation, reject, undo_rejection."""

    def test_distributor_claims_unassigned(self, workflow_engine, buyer, distributor, campaign_id):
        quotes = workflow_engine.quotes
        request = quotes.create_request(buyer, campaign_id, DRAFT)

        request = quotes.open_negotiation(distributor, request.id)

        assert request.status == QuoteRequestStatus.NEGOTIATING
        assert request.distributor_id == distributor.actor_id

    def test_other_distributor_cannot_take_over(
        self, workflow_engine, buyer, distributor, other_distributor, campaign_id
    ):
        quotes = workflow_engine.quotes
        request = quotes.create_request(buyer, campaign_id, DRAFT)
        quotes.open_negotiation(distributor, request.id)

        with pytest.raises(PermissionDeniedError):
            quotes.reject(other_distributor, request.id, "not mine")

    def test_buyer_cannot_open_negotiation(self, workflow_engine, buyer, campaign_id):
        quotes = workflow_engine.quotes
        request = quotes.create_request(buyer, campaign_id, DRAFT)

        with pytest.raises(PermissionDeniedError):
            quotes.open_negotiation(buyer, request.id)

    def test_reject_and_undo(self, workflow_engine, buyer, distributor, campaign_id):
        quotes = workflow_engine.quotes
        request = quotes.create_request(buyer, campaign_id, DRAFT)
        quotes.open_negotiation(distributor, request.id)

        rejected = quotes.reject(distributor, request.id, "rank 3 is sold out")
        assert rejected.status == QuoteRequestStatus.REJECTED
        assert rejected.rejection_reason == "rank 3 is sold out"

        reopened = quotes.undo_rejection(distributor, request.id)
        assert reopened.status == QuoteRequestStatus.NEGOTIATING
        # Undo clears nothing; the reason stays as the audit trail.
        assert reopened.rejection_reason == "rank 3 is sold out"

    def test_open_twice_is_invalid(self, workflow_engine, buyer, distributor, campaign_id):
        quotes = workflow_engine.quotes
        request = quotes.create_request(buyer, campaign_id, DRAFT)
        quotes.open_negotiation(distributor, request.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            quotes.open_negotiation(distributor, request.id)
        assert exc_info.value.current_status == "negotiating"
        assert exc_info.value.allowed_statuses == ("requested",)


class TestAccept:
    """accept."""

    def _negotiating(self, workflow_engine, buyer, distributor, campaign_id):
        quotes = workflow_engine.quotes
        request = quotes.create_request(buyer, campaign_id, DRAFT)
        return quotes.open_negotiation(distributor, request.id)

    def test_accept_records_terms(self, workflow_engine, buyer, distributor, campaign_id):
        request = self._negotiating(workflow_engine, buyer, distributor, campaign_id)

        accepted = workflow_engine.quotes.accept(distributor, request.id, TERMS)

        assert accepted.status == QuoteRequestStatus.ACCEPTED
        assert accepted.final_daily_amount == Decimal("10000")
        assert accepted.final_total_amount == Decimal("110000")
        assert accepted.start_date == date(2024, 1, 1)
        assert accepted.end_date == date(2024, 1, 10)

    def test_missing_terms(self, workflow_engine, buyer, distributor, campaign_id):
        request = self._negotiating(workflow_engine, buyer, distributor, campaign_id)
        partial = NegotiatedTerms(
            final_daily_amount=Decimal("10000"), start_date=None, end_date=None
        )

        with pytest.raises(MissingNegotiatedTermsError) as exc_info:
            workflow_engine.quotes.accept(distributor, request.id, partial)

        assert exc_info.value.missing_fields == ("start_date", "end_date")
        assert isinstance(exc_info.value, InvalidTransitionError)
        assert isinstance(exc_info.value, ValidationError)
        # Nothing was committed.
        again = workflow_engine.quotes.get(distributor, request.id)
        assert again.status == QuoteRequestStatus.NEGOTIATING
        assert again.final_daily_amount is None

    def test_accept_from_requested_is_invalid(self, workflow_engine, buyer, campaign_id, operator):
        request = workflow_engine.quotes.create_request(buyer, campaign_id, DRAFT)

        with pytest.raises(InvalidTransitionError):
            workflow_engine.quotes.accept(operator, request.id, TERMS)

    def test_accept_requires_assigned_distributor(
        self, workflow_engine, buyer, operator, campaign_id
    ):
        """An operator negotiating an unassigned request does not claim it."""
        quotes = workflow_engine.quotes
        request = quotes.create_request(buyer, campaign_id, DRAFT)
        negotiating = quotes.open_negotiation(operator, request.id)
        assert negotiating.distributor_id is None

        with pytest.raises(ValidationError) as exc_info:
            quotes.accept(operator, request.id, TERMS)

        assert exc_info.value.field == "distributor_id"
        again = quotes.get(operator, request.id)
        assert again.status == QuoteRequestStatus.NEGOTIATING
        assert again.final_total_amount is None
        with session_scope() as session:
            assert GuaranteeSelector(session).slot_for_request(request.id) is None

    def test_operator_accepts_assigned_request(
        self, workflow_engine, buyer, distributor, operator, campaign_id
    ):
        request = self._negotiating(workflow_engine, buyer, distributor, campaign_id)

        accepted = workflow_engine.quotes.accept(operator, request.id, TERMS)

        assert accepted.status == QuoteRequestStatus.ACCEPTED
        assert accepted.distributor_id == distributor.actor_id

    def test_terms_validation(self):
        with pytest.raises(ValueError, match="end_date"):
            NegotiatedTerms(
                final_daily_amount=Decimal("1"),
                start_date=date(2024, 1, 10),
                end_date=date(2024, 1, 1),
            )
        with pytest.raises(TypeError):
            NegotiatedTerms(final_daily_amount=1.5, start_date=None, end_date=None)


class TestExpire:
    """expire."""

    def test_expire_clears_terms(self, workflow_engine, accepted_request, operator):
        request = accepted_request()

        expired = workflow_engine.quotes.expire(operator, request.id)

        assert expired.status == QuoteRequestStatus.EXPIRED
        assert expired.final_daily_amount is None
        assert expired.final_total_amount is None
        assert expired.start_date is None
        assert expired.end_date is None

    def test_expired_is_terminal(self, workflow_engine, accepted_request, operator, buyer):
        request = accepted_request()
        workflow_engine.quotes.expire(operator, request.id)

        with pytest.raises(InvalidTransitionError):
            workflow_engine.quotes.purchase(buyer, request.id)

    def test_buyer_cannot_expire(self, workflow_engine, accepted_request, buyer):
        request = accepted_request()
        with pytest.raises(PermissionDeniedError):
            workflow_engine.quotes.expire(buyer, request.id)

    def test_expirable_selector(self, workflow_engine, buyer, campaign_id, clock, session_factory):
        quotes = workflow_engine.quotes
        past = quotes.create_request(
            buyer, campaign_id,
            QuoteRequestDraft(
                target_rank=1, guarantee_count=5,
                expires_at=datetime(2023, 12, 31, tzinfo=timezone.utc),
            ),
        )
        quotes.create_request(
            buyer, campaign_id,
            QuoteRequestDraft(
                target_rank=1, guarantee_count=5,
                expires_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
            ),
        )

        with session_scope() as session:
            ids = GuaranteeSelector(session).expirable_request_ids(clock.now())
        assert ids == [past.id]


class TestPurchase:
    """purchase."""

    def test_purchase_creates_slot_and_holds(self, purchased_slot, session_factory, buyer):
        result = purchased_slot()

        assert result.request.status == QuoteRequestStatus.PURCHASED
        slot = result.slot
        assert slot.status == SlotStatus.PENDING
        assert slot.request_id == result.request.id
        assert slot.contracted_total == Decimal("110000")
        assert slot.start_date == date(2024, 1, 1)
        assert slot.end_date == date(2024, 1, 10)

        assert result.holding.total_amount == Decimal("110000")
        assert result.holding.user_holding_amount == Decimal("110000")
        assert result.holding.status == HoldingStatus.HOLDING

        with session_scope() as session:
            assert SqlLedger(session).available_balance(buyer.actor_id) == Decimal("890000")
            txns = GuaranteeSelector(session).transactions_for_slot(slot.id)
        assert [t.transaction_type for t in txns] == [TransactionType.PURCHASE]
        assert txns[0].balance_before == Decimal("1000000")
        assert txns[0].balance_after == Decimal("890000")

    def test_free_cash_covers_remainder(self, workflow_engine, accepted_request, fund, buyer):
        request = accepted_request()
        fund(buyer.actor_id, Decimal("100000"))
        fund(buyer.actor_id, Decimal("20000"), free=True)

        workflow_engine.quotes.purchase(buyer, request.id)

        with session_scope() as session:
            assert SqlLedger(session).available_balance(buyer.actor_id) == Decimal("10000")

    def test_insufficient_balance_rolls_back(
        self, workflow_engine, accepted_request, fund, buyer, dispatcher
    ):
        request = accepted_request()
        fund(buyer.actor_id, Decimal("1000"))
        dispatcher.messages.clear()

        with pytest.raises(InsufficientBalanceError):
            workflow_engine.quotes.purchase(buyer, request.id)

        assert workflow_engine.quotes.get(buyer, request.id).status == QuoteRequestStatus.ACCEPTED
        with session_scope() as session:
            assert GuaranteeSelector(session).slot_for_request(request.id) is None
            assert SqlLedger(session).available_balance(buyer.actor_id) == Decimal("1000")
        assert dispatcher.messages == []

    def test_only_owner_purchases(self, workflow_engine, accepted_request, fund, other_buyer):
        request = accepted_request()
        fund(other_buyer.actor_id)

        with pytest.raises(PermissionDeniedError):
            workflow_engine.quotes.purchase(other_buyer, request.id)

    def test_purchase_twice_is_invalid(self, workflow_engine, purchased_slot, buyer):
        result = purchased_slot()

        with pytest.raises(InvalidTransitionError):
            workflow_engine.quotes.purchase(buyer, result.request.id)

    def test_purchase_reason_recorded(self, workflow_engine, accepted_request, fund, buyer):
        request = accepted_request()
        fund(buyer.actor_id)

        result = workflow_engine.quotes.purchase(buyer, request.id, purchase_reason="Q1 push")
        assert result.request.purchase_reason == "Q1 push"


class TestVisibility:
    """get."""

    def test_stranger_cannot_read(self, workflow_engine, accepted_request, other_buyer):
        request = accepted_request()
        with pytest.raises(PermissionDeniedError):
            workflow_engine.quotes.get(other_buyer, request.id)

    def test_any_distributor_reads_unassigned(
        self, workflow_engine, buyer, other_distributor, campaign_id
    ):
        request = workflow_engine.quotes.create_request(buyer, campaign_id, DRAFT)
        assert workflow_engine.quotes.get(other_distributor, request.id).id == request.id

    def test_assigned_request_hidden_from_other_distributor(
        self, workflow_engine, accepted_request, other_distributor
    ):
        request = accepted_request()
        with pytest.raises(PermissionDeniedError):
            workflow_engine.quotes.get(other_distributor, request.id)

    def test_missing(self, workflow_engine, buyer):
        with pytest.raises(EntityNotFoundError):
            workflow_engine.quotes.get(buyer, uuid4())
