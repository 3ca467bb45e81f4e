"""
Module: guarantee_kernel.models.quote_request
Responsibility: ORM persistence for quote requests.

Architecture position: Kernel > Models.  May import from db/base.py,
    db/types.py and domain/ DTOs only.

Invariants enforced:
    - Status values limited by a check constraint.
    - final_daily_amount / final_total_amount / start_date / end_date are
      non-null iff status is accepted or purchased (check constraint; the
      QuoteRequestService maintains it, the database backs it).
    - Optimistic versioning: concurrent writers fail with StaleDataError.

Failure modes:
    - IntegrityError when the negotiated-terms constraint is violated.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from guarantee_kernel.db.base import UUIDString, VersionedBase
from guarantee_kernel.domain.dtos import (
    BudgetType,
    GuaranteeUnit,
    QuoteRequest,
    QuoteRequestStatus,
)


class QuoteRequestModel(VersionedBase):
    """Persistent quote request.

    Contract:
        Only QuoteRequestService mutates rows; every mutation bumps ``version``.
    """

    __tablename__ = "guarantee_quote_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('requested', 'negotiating', 'accepted', 'rejected', "
            "'expired', 'purchased')",
            name="ck_guarantee_quote_requests_valid_status",
        ),
        CheckConstraint(
            "(status IN ('accepted', 'purchased')) = "
            "(final_daily_amount IS NOT NULL AND final_total_amount IS NOT NULL "
            "AND start_date IS NOT NULL AND end_date IS NOT NULL)",
            name="ck_guarantee_quote_requests_final_terms",
        ),
        CheckConstraint("target_rank > 0", name="ck_guarantee_quote_requests_rank"),
        CheckConstraint("guarantee_count > 0", name="ck_guarantee_quote_requests_count"),
        Index("ix_guarantee_quote_requests_user_status", "user_id", "status"),
        Index("ix_guarantee_quote_requests_distributor_status", "distributor_id", "status"),
        Index("ix_guarantee_quote_requests_expiry", "status", "expires_at"),
    )

    campaign_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, index=True)
    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    distributor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    keyword_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=QuoteRequestStatus.REQUESTED.value,
    )
    target_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    guarantee_count: Mapped[int] = mapped_column(Integer, nullable=False)
    guarantee_unit: Mapped[str] = mapped_column(String(10), nullable=False)
    guarantee_period: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    initial_budget: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    user_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    additional_requirements: Mapped[str | None] = mapped_column(Text, nullable=True)

    final_daily_amount: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    final_budget_type: Mapped[str | None] = mapped_column(String(10), nullable=True)
    final_total_amount: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    purchase_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<QuoteRequest {self.id} status={self.status}>"

    def clear_negotiated_terms(self) -> None:
        self.final_daily_amount = None
        self.final_budget_type = None
        self.final_total_amount = None
        self.start_date = None
        self.end_date = None

    def to_dto(self) -> QuoteRequest:
        """Convert ORM model to frozen domain DTO."""
        return QuoteRequest(
            id=self.id,
            campaign_id=self.campaign_id,
            user_id=self.user_id,
            distributor_id=self.distributor_id,
            status=QuoteRequestStatus(self.status),
            target_rank=self.target_rank,
            guarantee_count=self.guarantee_count,
            guarantee_unit=GuaranteeUnit(self.guarantee_unit),
            guarantee_period=self.guarantee_period,
            initial_budget=self.initial_budget,
            keyword_id=self.keyword_id,
            quantity=self.quantity,
            user_reason=self.user_reason,
            additional_requirements=self.additional_requirements,
            final_daily_amount=self.final_daily_amount,
            final_budget_type=(
                BudgetType(self.final_budget_type) if self.final_budget_type else None
            ),
            final_total_amount=self.final_total_amount,
            start_date=self.start_date,
            end_date=self.end_date,
            rejection_reason=self.rejection_reason,
            purchase_reason=self.purchase_reason,
            expires_at=self.expires_at,
            created_at=self.created_at,
            version=self.version,
        )
