"""
Module: guarantee_kernel.models.ledger
Responsibility: ORM persistence for buyer cash balances, per-slot holdings
    and the append-only slot transaction log.

Architecture position: Kernel > Models.  May import from db/base.py,
    domain/ DTOs and exceptions only.

Invariants enforced:
    - Cash balances never go negative (check constraints).
    - One holding per slot: UNIQUE(slot_id).
    - user_holding_amount + distributor_holding_amount <= total_amount.
    - Slot transactions are append-only: ORM listeners refuse UPDATE and
      DELETE.

Failure modes:
    - ImmutabilityViolationError on UPDATE/DELETE of a SlotTransactionModel.
    - IntegrityError when a balance or holding would go negative.

Audit relevance:
    Every money movement (hold, release, settle) writes exactly one
    SlotTransactionModel row with balance_before and balance_after.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Numeric, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from guarantee_kernel.db.base import TrackedBase, UUIDString, VersionedBase
from guarantee_kernel.domain.dtos import (
    HoldingStatus,
    SlotHolding,
    SlotTransactionRecord,
    TransactionType,
)
from guarantee_kernel.exceptions import ImmutabilityViolationError


class UserCashBalanceModel(VersionedBase):
    """A buyer's spendable balance: paid cash plus promotional free cash."""

    __tablename__ = "user_cash_balances"

    __table_args__ = (
        CheckConstraint("cash_amount >= 0", name="ck_user_cash_balances_cash"),
        CheckConstraint("free_cash_amount >= 0", name="ck_user_cash_balances_free_cash"),
    )

    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    cash_amount: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0"),
    )
    free_cash_amount: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0"),
    )

    @property
    def available(self) -> Decimal:
        return self.cash_amount + self.free_cash_amount

    def __repr__(self) -> str:
        return f"<UserCashBalance user={self.user_id} available={self.available}>"


class SlotHoldingModel(VersionedBase):
    """Money held against one slot until it completes or is refunded."""

    __tablename__ = "guarantee_slot_holdings"

    __table_args__ = (
        CheckConstraint(
            "status IN ('holding', 'partial_released', 'completed', 'refunded')",
            name="ck_guarantee_slot_holdings_valid_status",
        ),
        CheckConstraint(
            "user_holding_amount >= 0 AND distributor_holding_amount >= 0",
            name="ck_guarantee_slot_holdings_non_negative",
        ),
        CheckConstraint(
            "user_holding_amount + distributor_holding_amount <= total_amount",
            name="ck_guarantee_slot_holdings_conserved",
        ),
    )

    slot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("guarantee_slots.id"),
        nullable=False,
        unique=True,
    )
    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    distributor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    user_holding_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    distributor_holding_amount: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0"),
    )
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=HoldingStatus.HOLDING.value,
    )

    def __repr__(self) -> str:
        return (
            f"<SlotHolding slot={self.slot_id} user={self.user_holding_amount} "
            f"distributor={self.distributor_holding_amount} status={self.status}>"
        )

    def to_dto(self) -> SlotHolding:
        return SlotHolding(
            id=self.id,
            slot_id=self.slot_id,
            user_id=self.user_id,
            distributor_id=self.distributor_id,
            total_amount=self.total_amount,
            user_holding_amount=self.user_holding_amount,
            distributor_holding_amount=self.distributor_holding_amount,
            status=HoldingStatus(self.status),
        )


class SlotTransactionModel(TrackedBase):
    """Append-only record of one money movement on a slot."""

    __tablename__ = "guarantee_slot_transactions"

    __table_args__ = (
        CheckConstraint(
            "transaction_type IN ('purchase', 'settlement', 'refund')",
            name="ck_guarantee_slot_transactions_type",
        ),
        CheckConstraint("amount >= 0", name="ck_guarantee_slot_transactions_amount"),
        Index("ix_guarantee_slot_transactions_slot", "slot_id", "created_at"),
    )

    __mapper_args__ = {"eager_defaults": True}

    slot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("guarantee_slots.id"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    def __repr__(self) -> str:
        return (
            f"<SlotTransaction {self.id} slot={self.slot_id} "
            f"{self.transaction_type} {self.amount}>"
        )

    def to_dto(self) -> SlotTransactionRecord:
        return SlotTransactionRecord(
            id=self.id,
            slot_id=self.slot_id,
            user_id=self.user_id,
            transaction_type=TransactionType(self.transaction_type),
            amount=self.amount,
            balance_before=self.balance_before,
            balance_after=self.balance_after,
            description=self.description,
            created_at=self.created_at,
        )


# =============================================================================
# ORM-Level Immutability for the transaction log (Append-Only)
# =============================================================================


@event.listens_for(SlotTransactionModel, "before_update")
def prevent_transaction_update(mapper, connection, target):
    """Prevent updates to slot transaction records."""
    raise ImmutabilityViolationError(
        entity_type="SlotTransaction",
        entity_id=str(target.id),
        reason="Slot transactions are append-only -- cannot modify",
    )


@event.listens_for(SlotTransactionModel, "before_delete")
def prevent_transaction_delete(mapper, connection, target):
    """Prevent deletion of slot transaction records."""
    raise ImmutabilityViolationError(
        entity_type="SlotTransaction",
        entity_id=str(target.id),
        reason="Slot transactions are append-only -- cannot delete",
    )
