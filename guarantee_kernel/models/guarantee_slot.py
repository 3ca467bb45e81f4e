"""
Module: guarantee_kernel.models.guarantee_slot
Responsibility: ORM persistence for guarantee slots and their refund requests.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ DTOs only.

Invariants enforced:
    - One slot per quote request: UNIQUE(request_id).
    - At most one open refund request per slot: partial unique index on
      guarantee_refund_requests(slot_id) where status is pending or
      pending_user_confirmation.
    - refund_amount is never negative.
    - Optimistic versioning on both tables.

Failure modes:
    - IntegrityError on a second slot for the same request.
    - IntegrityError on a second open refund request for the same slot.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from guarantee_kernel.db.base import UUIDString, VersionedBase
from guarantee_kernel.domain.dtos import (
    GuaranteeSlot,
    GuaranteeUnit,
    RefundInitiator,
    RefundRequest,
    RefundStatus,
    SlotStatus,
)

OPEN_REFUND_PREDICATE = "status IN ('pending', 'pending_user_confirmation')"


class GuaranteeSlotModel(VersionedBase):
    """Persistent guarantee slot.

    Contract:
        Created exactly once, by the purchase transition of its request.
        approved_* and rejected_* are mutually exclusive per activation cycle.
    """

    __tablename__ = "guarantee_slots"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'completed', 'cancelled', 'rejected')",
            name="ck_guarantee_slots_valid_status",
        ),
        CheckConstraint("contracted_total >= 0", name="ck_guarantee_slots_total"),
        Index("ix_guarantee_slots_user_status", "user_id", "status"),
        Index("ix_guarantee_slots_distributor_status", "distributor_id", "status"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("guarantee_quote_requests.id"),
        nullable=False,
        unique=True,
    )
    campaign_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    distributor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=SlotStatus.PENDING.value,
    )
    guarantee_unit: Mapped[str] = mapped_column(String(10), nullable=False)
    guarantee_count: Mapped[int] = mapped_column(Integer, nullable=False)
    target_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    contracted_total: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    work_memo: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<GuaranteeSlot {self.id} request={self.request_id} status={self.status}>"

    def to_dto(self) -> GuaranteeSlot:
        """Convert ORM model to frozen domain DTO."""
        return GuaranteeSlot(
            id=self.id,
            request_id=self.request_id,
            campaign_id=self.campaign_id,
            user_id=self.user_id,
            distributor_id=self.distributor_id,
            status=SlotStatus(self.status),
            guarantee_unit=GuaranteeUnit(self.guarantee_unit),
            guarantee_count=self.guarantee_count,
            target_rank=self.target_rank,
            daily_amount=self.daily_amount,
            contracted_total=self.contracted_total,
            start_date=self.start_date,
            end_date=self.end_date,
            approved_at=self.approved_at,
            approved_by=self.approved_by,
            approval_notes=self.approval_notes,
            rejected_at=self.rejected_at,
            rejected_by=self.rejected_by,
            rejection_reason=self.rejection_reason,
            completed_at=self.completed_at,
            completed_by=self.completed_by,
            work_memo=self.work_memo,
            version=self.version,
        )


class RefundRequestModel(VersionedBase):
    """Persistent refund request attached to a slot.

    Contract:
        approved and rejected are terminal; only RefundRequestService and
        the completion path of SlotFulfillmentService write rows.
    """

    __tablename__ = "guarantee_refund_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'pending_user_confirmation', 'approved', 'rejected')",
            name="ck_guarantee_refund_requests_valid_status",
        ),
        CheckConstraint("refund_amount >= 0", name="ck_guarantee_refund_requests_amount"),
        Index(
            "ix_guarantee_refund_requests_open_unique",
            "slot_id",
            unique=True,
            postgresql_where=text(OPEN_REFUND_PREDICATE),
            sqlite_where=text(OPEN_REFUND_PREDICATE),
        ),
        Index("ix_guarantee_refund_requests_slot_status", "slot_id", "status"),
    )

    slot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("guarantee_slots.id"),
        nullable=False,
    )
    requester_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    initiated_by: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    refund_reason: Mapped[str] = mapped_column(Text, nullable=False)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    request_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approval_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    expected_refund_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<RefundRequest {self.id} slot={self.slot_id} "
            f"status={self.status} amount={self.refund_amount}>"
        )

    def to_dto(self) -> RefundRequest:
        """Convert ORM model to frozen domain DTO."""
        return RefundRequest(
            id=self.id,
            slot_id=self.slot_id,
            requester_id=self.requester_id,
            initiated_by=RefundInitiator(self.initiated_by),
            status=RefundStatus(self.status),
            refund_reason=self.refund_reason,
            refund_amount=self.refund_amount,
            request_date=self.request_date,
            approval_date=self.approval_date,
            approval_notes=self.approval_notes,
            approved_by=self.approved_by,
            expected_refund_date=self.expected_refund_date,
            version=self.version,
        )
