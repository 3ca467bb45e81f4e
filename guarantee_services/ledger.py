"""
guarantee_services.ledger -- Buyer balance and slot holding ledger.

Responsibility:
    LedgerPort is the balance collaborator the workflow calls at exactly
    three commit points: purchase (hold), refund approval (release) and
    completion (settle).  SqlLedger implements it over user_cash_balances,
    guarantee_slot_holdings and the append-only guarantee_slot_transactions
    log, inside the caller's session.

Architecture position:
    Services layer.  Flush-only: SqlLedger never commits or rolls back; the
    ConsistencyCoordinator owns the transaction, so a ledger movement and
    the state transition that caused it commit or roll back together.

Invariants enforced:
    - Balances and holdings are locked (SELECT ... FOR UPDATE) before they
      are read for a movement.
    - hold() refuses to overdraw: available = cash + free cash.
    - release() never returns more than the user-side holding.
    - Every movement writes one SlotTransactionModel with balance_before
      and balance_after.

Failure modes:
    - InsufficientBalanceError from hold().
    - RefundAmountExceededError from release() beyond the user holding.
    - EntityNotFoundError when a slot has no holding.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from guarantee_kernel.domain.dtos import HoldingStatus, SlotHolding, TransactionType
from guarantee_kernel.exceptions import (
    EntityNotFoundError,
    InsufficientBalanceError,
    RefundAmountExceededError,
)
from guarantee_kernel.logging_config import get_logger
from guarantee_kernel.models.ledger import (
    SlotHoldingModel,
    SlotTransactionModel,
    UserCashBalanceModel,
)

logger = get_logger("services.ledger")

ZERO = Decimal("0")


@runtime_checkable
class LedgerPort(Protocol):
    """Balance collaborator.  Every call runs inside the caller's unit of work."""

    def hold(
        self,
        *,
        user_id: UUID,
        slot_id: UUID,
        distributor_id: UUID | None,
        amount: Decimal,
        actor_id: UUID,
        description: str = "",
    ) -> SlotHolding:
        ...

    def release(
        self,
        *,
        slot_id: UUID,
        amount: Decimal,
        actor_id: UUID,
        description: str = "",
    ) -> SlotHolding:
        ...

    def settle(self, *, slot_id: UUID, actor_id: UUID, description: str = "") -> SlotHolding:
        ...


class SqlLedger:
    """LedgerPort over the kernel's balance, holding and transaction tables."""

    def __init__(self, session: Session):
        self.session = session

    # -------------------------------------------------------------------------
    # Balance helpers
    # -------------------------------------------------------------------------

    def _lock_balance(self, user_id: UUID) -> UserCashBalanceModel | None:
        return self.session.scalars(
            select(UserCashBalanceModel)
            .where(UserCashBalanceModel.user_id == user_id)
            .with_for_update()
        ).one_or_none()

    def _lock_holding(self, slot_id: UUID) -> SlotHoldingModel:
        holding = self.session.scalars(
            select(SlotHoldingModel)
            .where(SlotHoldingModel.slot_id == slot_id)
            .with_for_update()
        ).one_or_none()
        if holding is None:
            raise EntityNotFoundError("SlotHolding", str(slot_id))
        return holding

    def deposit(self, *, user_id: UUID, amount: Decimal, actor_id: UUID, free: bool = False) -> Decimal:
        """Credit a buyer's balance (top-up).  Returns the new available balance."""
        balance = self._lock_balance(user_id)
        if balance is None:
            balance = UserCashBalanceModel(
                user_id=user_id,
                cash_amount=ZERO,
                free_cash_amount=ZERO,
                created_by_id=actor_id,
            )
            self.session.add(balance)
        if free:
            balance.free_cash_amount = balance.free_cash_amount + amount
        else:
            balance.cash_amount = balance.cash_amount + amount
        balance.updated_by_id = actor_id
        self.session.flush()
        return balance.available

    def available_balance(self, user_id: UUID) -> Decimal:
        balance = self.session.scalars(
            select(UserCashBalanceModel).where(UserCashBalanceModel.user_id == user_id)
        ).one_or_none()
        return balance.available if balance is not None else ZERO

    def _record(
        self,
        *,
        slot_id: UUID,
        user_id: UUID,
        transaction_type: TransactionType,
        amount: Decimal,
        before: Decimal,
        after: Decimal,
        actor_id: UUID,
        description: str,
    ) -> None:
        self.session.add(
            SlotTransactionModel(
                slot_id=slot_id,
                user_id=user_id,
                transaction_type=transaction_type.value,
                amount=amount,
                balance_before=before,
                balance_after=after,
                description=description,
                created_by_id=actor_id,
            )
        )

    # -------------------------------------------------------------------------
    # LedgerPort
    # -------------------------------------------------------------------------

    def hold(
        self,
        *,
        user_id: UUID,
        slot_id: UUID,
        distributor_id: UUID | None,
        amount: Decimal,
        actor_id: UUID,
        description: str = "",
    ) -> SlotHolding:
        """Move ``amount`` from the buyer's balance into a new slot holding.

        Paid cash is consumed first; free cash covers the remainder.
        """
        balance = self._lock_balance(user_id)
        available = balance.available if balance is not None else ZERO
        if balance is None or available < amount:
            raise InsufficientBalanceError(str(user_id), str(amount), str(available))

        from_cash = min(balance.cash_amount, amount)
        balance.cash_amount = balance.cash_amount - from_cash
        balance.free_cash_amount = balance.free_cash_amount - (amount - from_cash)
        balance.updated_by_id = actor_id

        holding = SlotHoldingModel(
            slot_id=slot_id,
            user_id=user_id,
            distributor_id=distributor_id,
            total_amount=amount,
            user_holding_amount=amount,
            distributor_holding_amount=ZERO,
            status=HoldingStatus.HOLDING.value,
            created_by_id=actor_id,
        )
        self.session.add(holding)
        self._record(
            slot_id=slot_id,
            user_id=user_id,
            transaction_type=TransactionType.PURCHASE,
            amount=amount,
            before=available,
            after=available - amount,
            actor_id=actor_id,
            description=description,
        )
        self.session.flush()

        logger.info(
            "ledger_hold",
            extra={
                "user_id": str(user_id),
                "slot_id": str(slot_id),
                "amount": str(amount),
                "balance_after": str(available - amount),
            },
        )
        return holding.to_dto()

    def release(
        self,
        *,
        slot_id: UUID,
        amount: Decimal,
        actor_id: UUID,
        description: str = "",
    ) -> SlotHolding:
        """Return ``amount`` from the slot holding to the buyer's cash balance."""
        holding = self._lock_holding(slot_id)
        if amount > holding.user_holding_amount:
            raise RefundAmountExceededError(
                str(slot_id), str(amount), str(holding.user_holding_amount)
            )

        balance = self._lock_balance(holding.user_id)
        if balance is None:
            balance = UserCashBalanceModel(
                user_id=holding.user_id,
                cash_amount=ZERO,
                free_cash_amount=ZERO,
                created_by_id=actor_id,
            )
            self.session.add(balance)
            self.session.flush()
        before = balance.available
        balance.cash_amount = balance.cash_amount + amount
        balance.updated_by_id = actor_id

        holding.user_holding_amount = holding.user_holding_amount - amount
        if holding.user_holding_amount == 0 and holding.distributor_holding_amount == 0:
            holding.status = HoldingStatus.REFUNDED.value
        else:
            holding.status = HoldingStatus.PARTIAL_RELEASED.value
        holding.updated_by_id = actor_id

        self._record(
            slot_id=slot_id,
            user_id=holding.user_id,
            transaction_type=TransactionType.REFUND,
            amount=amount,
            before=before,
            after=before + amount,
            actor_id=actor_id,
            description=description,
        )
        self.session.flush()

        logger.info(
            "ledger_release",
            extra={
                "user_id": str(holding.user_id),
                "slot_id": str(slot_id),
                "amount": str(amount),
                "user_holding_after": str(holding.user_holding_amount),
            },
        )
        return holding.to_dto()

    def settle(self, *, slot_id: UUID, actor_id: UUID, description: str = "") -> SlotHolding:
        """Move whatever the buyer still holds on the slot to the distributor."""
        holding = self._lock_holding(slot_id)
        moved = holding.user_holding_amount
        if moved == 0 and holding.distributor_holding_amount == 0:
            # Fully refunded before completion; nothing left to settle.
            return holding.to_dto()

        before = holding.distributor_holding_amount
        holding.distributor_holding_amount = before + moved
        holding.user_holding_amount = ZERO
        holding.status = HoldingStatus.COMPLETED.value
        holding.updated_by_id = actor_id

        if moved > 0:
            self._record(
                slot_id=slot_id,
                user_id=holding.user_id,
                transaction_type=TransactionType.SETTLEMENT,
                amount=moved,
                before=before,
                after=before + moved,
                actor_id=actor_id,
                description=description,
            )
        self.session.flush()

        logger.info(
            "ledger_settle",
            extra={
                "slot_id": str(slot_id),
                "distributor_id": str(holding.distributor_id),
                "amount": str(moved),
            },
        )
        return holding.to_dto()
