"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the immutable data structures that cross the service boundary:
    QuoteRequest, GuaranteeSlot, RefundRequest, SlotHolding and
    SlotTransactionRecord (persistence snapshots), the inputs callers supply
    (QuoteRequestDraft, NegotiatedTerms), campaign metadata with its refund
    policy, and the RefundQuote produced by the proration engine.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Free of ORM dependencies.  ORM models convert themselves with
    ``to_dto()``; domain and engine code never sees an ORM entity.

Invariants enforced:
    - Monetary fields are Decimal, never float.
    - RefundSettings.from_mapping() rejects unknown keys.

Failure modes:
    - ValueError on NegotiatedTerms with a non-positive daily amount or an
      end date before the start date.
    - ValueError on QuoteRequestDraft with non-positive rank/count.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping
from uuid import UUID


class QuoteRequestStatus(str, Enum):
    """Lifecycle: requested -> negotiating -> accepted -> purchased.

    rejected is reversible (undo rejection); expired and purchased are terminal.
    """

    REQUESTED = "requested"
    NEGOTIATING = "negotiating"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    PURCHASED = "purchased"


class SlotStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class RefundStatus(str, Enum):
    """pending is buyer-initiated; pending_user_confirmation is distributor-initiated."""

    PENDING = "pending"
    PENDING_USER_CONFIRMATION = "pending_user_confirmation"
    APPROVED = "approved"
    REJECTED = "rejected"


OPEN_REFUND_STATUSES: tuple[str, ...] = (
    RefundStatus.PENDING.value,
    RefundStatus.PENDING_USER_CONFIRMATION.value,
)


class RefundInitiator(str, Enum):
    BUYER = "buyer"
    DISTRIBUTOR = "distributor"
    COMPLETION = "completion"


class GuaranteeUnit(str, Enum):
    DAY = "day"
    COUNT = "count"


class BudgetType(str, Enum):
    DAILY = "daily"
    TOTAL = "total"


class HoldingStatus(str, Enum):
    HOLDING = "holding"
    PARTIAL_RELEASED = "partial_released"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    SETTLEMENT = "settlement"
    REFUND = "refund"


class RefundType(str, Enum):
    """When an approved refund is expected to reach the buyer."""

    IMMEDIATE = "immediate"
    DELAYED = "delayed"
    CUTOFF_BASED = "cutoff_based"


# =============================================================================
# Campaign refund policy
# =============================================================================


def _flag(data: Mapping[str, Any], key: str, default: bool = True) -> bool:
    # YAML/JSON strings such as "false" must not read as True.
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be true or false, got {value!r}")
    return value


@dataclass(frozen=True)
class RefundRules:
    """Usage-window and amount rules of a campaign refund policy.

    ``None`` for a bound means the bound is not enforced.
    """

    min_usage_days: int | None = None
    max_refund_days: int | None = None
    partial_refund: bool = True
    max_refund_amount: Decimal | None = None


@dataclass(frozen=True)
class RefundSettings:
    """Per-campaign refund policy.

    Contract:
        ``requires_approval=False`` makes buyer-initiated refunds approve
        in the same commit that creates them.
    """

    enabled: bool = True
    requires_approval: bool = True
    refund_rules: RefundRules = field(default_factory=RefundRules)
    type: RefundType = RefundType.IMMEDIATE
    delay_days: int = 0
    cutoff_time: time = time(14, 0)

    _KEYS = frozenset(
        {"enabled", "requires_approval", "refund_rules", "type", "delay_days", "cutoff_time"}
    )
    _RULE_KEYS = frozenset(
        {"min_usage_days", "max_refund_days", "partial_refund", "max_refund_amount"}
    )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> RefundSettings:
        """Build settings from a plain mapping (YAML block or campaign blob)."""
        if not data:
            return cls()
        unknown = set(data) - cls._KEYS
        if unknown:
            raise ValueError(f"Unknown refund settings keys: {sorted(unknown)}")

        rules_data = data.get("refund_rules") or {}
        unknown_rules = set(rules_data) - cls._RULE_KEYS
        if unknown_rules:
            raise ValueError(f"Unknown refund_rules keys: {sorted(unknown_rules)}")
        cap = rules_data.get("max_refund_amount")
        rules = RefundRules(
            min_usage_days=rules_data.get("min_usage_days"),
            max_refund_days=rules_data.get("max_refund_days"),
            partial_refund=_flag(rules_data, "partial_refund"),
            max_refund_amount=Decimal(str(cap)) if cap is not None else None,
        )

        cutoff = data.get("cutoff_time", "14:00")
        if isinstance(cutoff, str):
            hours, minutes = cutoff.split(":")
            cutoff = time(int(hours), int(minutes))

        return cls(
            enabled=_flag(data, "enabled"),
            requires_approval=_flag(data, "requires_approval"),
            refund_rules=rules,
            type=RefundType(data.get("type", RefundType.IMMEDIATE.value)),
            delay_days=int(data.get("delay_days", 0)),
            cutoff_time=cutoff,
        )


@dataclass(frozen=True)
class CampaignMetadata:
    """What the engine needs to know about a campaign."""

    campaign_id: UUID
    guarantee_unit: GuaranteeUnit
    refund_settings: RefundSettings | None = None
    is_guarantee: bool = True
    default_distributor_id: UUID | None = None
    name: str = ""


# =============================================================================
# Caller inputs
# =============================================================================


@dataclass(frozen=True)
class QuoteRequestDraft:
    """Buyer-supplied terms of a new quote request."""

    target_rank: int
    guarantee_count: int
    initial_budget: Decimal | None = None
    guarantee_period: int | None = None
    keyword_id: UUID | None = None
    quantity: int | None = None
    user_reason: str | None = None
    additional_requirements: str | None = None
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.target_rank <= 0:
            raise ValueError("target_rank must be a positive integer")
        if self.guarantee_count <= 0:
            raise ValueError("guarantee_count must be a positive integer")
        if self.initial_budget is not None and self.initial_budget < 0:
            raise ValueError("initial_budget must not be negative")
        if self.guarantee_period is not None and self.guarantee_period <= 0:
            raise ValueError("guarantee_period must be positive")


@dataclass(frozen=True)
class NegotiatedTerms:
    """Outcome of a negotiation, recorded when a request is accepted.

    The contracted total is not part of the terms: the engine always
    derives it from ``final_daily_amount`` and the request's count.
    """

    final_daily_amount: Decimal | None
    start_date: date | None
    end_date: date | None
    final_budget_type: BudgetType = BudgetType.DAILY

    def missing_fields(self) -> tuple[str, ...]:
        missing = []
        if self.final_daily_amount is None:
            missing.append("final_daily_amount")
        if self.start_date is None:
            missing.append("start_date")
        if self.end_date is None:
            missing.append("end_date")
        return tuple(missing)

    def __post_init__(self) -> None:
        if isinstance(self.final_daily_amount, float):
            raise TypeError("final_daily_amount must be Decimal, not float")
        if self.final_daily_amount is not None and self.final_daily_amount <= 0:
            raise ValueError("final_daily_amount must be positive")
        if (
            self.start_date is not None
            and self.end_date is not None
            and self.end_date < self.start_date
        ):
            raise ValueError("end_date must not be before start_date")


# =============================================================================
# Persistence snapshots
# =============================================================================


@dataclass(frozen=True)
class QuoteRequest:
    id: UUID
    campaign_id: UUID
    user_id: UUID
    distributor_id: UUID | None
    status: QuoteRequestStatus
    target_rank: int
    guarantee_count: int
    guarantee_unit: GuaranteeUnit
    guarantee_period: int | None = None
    initial_budget: Decimal | None = None
    keyword_id: UUID | None = None
    quantity: int | None = None
    user_reason: str | None = None
    additional_requirements: str | None = None
    final_daily_amount: Decimal | None = None
    final_budget_type: BudgetType | None = None
    final_total_amount: Decimal | None = None
    start_date: date | None = None
    end_date: date | None = None
    rejection_reason: str | None = None
    purchase_reason: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    version: int = 1


@dataclass(frozen=True)
class GuaranteeSlot:
    id: UUID
    request_id: UUID
    campaign_id: UUID
    user_id: UUID
    distributor_id: UUID | None
    status: SlotStatus
    guarantee_unit: GuaranteeUnit
    guarantee_count: int
    target_rank: int
    daily_amount: Decimal
    contracted_total: Decimal
    start_date: date | None = None
    end_date: date | None = None
    approved_at: datetime | None = None
    approved_by: UUID | None = None
    approval_notes: str | None = None
    rejected_at: datetime | None = None
    rejected_by: UUID | None = None
    rejection_reason: str | None = None
    completed_at: datetime | None = None
    completed_by: UUID | None = None
    work_memo: str | None = None
    version: int = 1


@dataclass(frozen=True)
class RefundRequest:
    id: UUID
    slot_id: UUID
    requester_id: UUID
    initiated_by: RefundInitiator
    status: RefundStatus
    refund_reason: str
    refund_amount: Decimal
    request_date: datetime
    approval_date: datetime | None = None
    approval_notes: str | None = None
    approved_by: UUID | None = None
    expected_refund_date: date | None = None
    version: int = 1

    @property
    def is_open(self) -> bool:
        return self.status.value in OPEN_REFUND_STATUSES


@dataclass(frozen=True)
class SlotHolding:
    id: UUID
    slot_id: UUID
    user_id: UUID
    distributor_id: UUID | None
    total_amount: Decimal
    user_holding_amount: Decimal
    distributor_holding_amount: Decimal
    status: HoldingStatus


@dataclass(frozen=True)
class SlotTransactionRecord:
    id: UUID
    slot_id: UUID
    user_id: UUID
    transaction_type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class RefundQuote:
    """How much of a slot may be refunded today, and why.

    ``refundable_amount`` is already capped by campaign policy and by the
    amount previously refunded; it is never negative.
    """

    slot_id: UUID
    as_of: date
    elapsed_days: int
    contracted_total: Decimal
    earned_to_date: Decimal
    prorated_refund: Decimal
    already_refunded: Decimal
    refundable_amount: Decimal
    expected_refund_date: date | None = None
