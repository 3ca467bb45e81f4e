"""
Module: guarantee_kernel.selectors.guarantee_selector
Responsibility: Read-only queries over quote requests, slots, refund
    requests, holdings and the slot transaction log.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/ DTOs and selectors/base.py.

Invariants enforced:
    - Listing queries need no atomicity boundary and may run against a
      replica; only ``approved_refund_total`` and ``open_refund`` are used
      inside a unit of work, where they see the transaction's own writes.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from guarantee_kernel.domain.dtos import (
    OPEN_REFUND_STATUSES,
    GuaranteeSlot,
    QuoteRequest,
    QuoteRequestStatus,
    RefundRequest,
    RefundStatus,
    SlotHolding,
    SlotStatus,
    SlotTransactionRecord,
)
from guarantee_kernel.models.guarantee_slot import GuaranteeSlotModel, RefundRequestModel
from guarantee_kernel.models.ledger import SlotHoldingModel, SlotTransactionModel
from guarantee_kernel.models.quote_request import QuoteRequestModel
from guarantee_kernel.selectors.base import BaseSelector

EXPIRABLE_STATUSES: tuple[str, ...] = (
    QuoteRequestStatus.REQUESTED.value,
    QuoteRequestStatus.NEGOTIATING.value,
    QuoteRequestStatus.ACCEPTED.value,
)


class GuaranteeSelector(BaseSelector[QuoteRequestModel]):
    """Read side of the guarantee workflow."""

    def list_requests(
        self,
        *,
        user_id: UUID | None = None,
        distributor_id: UUID | None = None,
        campaign_id: UUID | None = None,
        status: QuoteRequestStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[QuoteRequest]:
        stmt = select(QuoteRequestModel)
        if user_id is not None:
            stmt = stmt.where(QuoteRequestModel.user_id == user_id)
        if distributor_id is not None:
            stmt = stmt.where(QuoteRequestModel.distributor_id == distributor_id)
        if campaign_id is not None:
            stmt = stmt.where(QuoteRequestModel.campaign_id == campaign_id)
        if status is not None:
            stmt = stmt.where(QuoteRequestModel.status == status.value)
        stmt = (
            stmt.order_by(QuoteRequestModel.created_at.desc(), QuoteRequestModel.id)
            .limit(limit)
            .offset(offset)
        )
        return [m.to_dto() for m in self.session.scalars(stmt)]

    def list_slots(
        self,
        *,
        user_id: UUID | None = None,
        distributor_id: UUID | None = None,
        campaign_id: UUID | None = None,
        status: SlotStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[GuaranteeSlot]:
        stmt = select(GuaranteeSlotModel)
        if user_id is not None:
            stmt = stmt.where(GuaranteeSlotModel.user_id == user_id)
        if distributor_id is not None:
            stmt = stmt.where(GuaranteeSlotModel.distributor_id == distributor_id)
        if campaign_id is not None:
            stmt = stmt.where(GuaranteeSlotModel.campaign_id == campaign_id)
        if status is not None:
            stmt = stmt.where(GuaranteeSlotModel.status == status.value)
        stmt = (
            stmt.order_by(GuaranteeSlotModel.created_at.desc(), GuaranteeSlotModel.id)
            .limit(limit)
            .offset(offset)
        )
        return [m.to_dto() for m in self.session.scalars(stmt)]

    def slot_for_request(self, request_id: UUID) -> GuaranteeSlot | None:
        model = self.session.scalars(
            select(GuaranteeSlotModel).where(GuaranteeSlotModel.request_id == request_id)
        ).one_or_none()
        return model.to_dto() if model else None

    def refund_history(self, slot_id: UUID) -> list[RefundRequest]:
        """All refund requests of a slot, oldest first."""
        stmt = (
            select(RefundRequestModel)
            .where(RefundRequestModel.slot_id == slot_id)
            .order_by(RefundRequestModel.request_date, RefundRequestModel.id)
        )
        return [m.to_dto() for m in self.session.scalars(stmt)]

    def open_refund(self, slot_id: UUID) -> RefundRequest | None:
        model = self.session.scalars(
            select(RefundRequestModel).where(
                RefundRequestModel.slot_id == slot_id,
                RefundRequestModel.status.in_(OPEN_REFUND_STATUSES),
            )
        ).first()
        return model.to_dto() if model else None

    def approved_refund_total(self, slot_id: UUID) -> Decimal:
        total = self.session.scalar(
            select(func.coalesce(func.sum(RefundRequestModel.refund_amount), 0)).where(
                RefundRequestModel.slot_id == slot_id,
                RefundRequestModel.status == RefundStatus.APPROVED.value,
            )
        )
        return Decimal(str(total))

    def holding_for_slot(self, slot_id: UUID) -> SlotHolding | None:
        model = self.session.scalars(
            select(SlotHoldingModel).where(SlotHoldingModel.slot_id == slot_id)
        ).one_or_none()
        return model.to_dto() if model else None

    def transactions_for_slot(self, slot_id: UUID) -> list[SlotTransactionRecord]:
        stmt = (
            select(SlotTransactionModel)
            .where(SlotTransactionModel.slot_id == slot_id)
            .order_by(SlotTransactionModel.created_at, SlotTransactionModel.id)
        )
        return [m.to_dto() for m in self.session.scalars(stmt)]

    def expirable_request_ids(self, as_of: datetime, limit: int = 500) -> list[UUID]:
        """Ids of non-terminal requests whose expires_at has passed."""
        stmt = (
            select(QuoteRequestModel.id)
            .where(
                QuoteRequestModel.status.in_(EXPIRABLE_STATUSES),
                QuoteRequestModel.expires_at.is_not(None),
                QuoteRequestModel.expires_at <= as_of,
            )
            .order_by(QuoteRequestModel.expires_at)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))
