"""
Pure domain layer.

Immutable value objects with NO dependencies on the ORM, the database,
wall-clock time (outside SystemClock) or any other I/O.
"""

from guarantee_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from guarantee_kernel.domain.dtos import (
    OPEN_REFUND_STATUSES,
    BudgetType,
    CampaignMetadata,
    GuaranteeSlot,
    GuaranteeUnit,
    HoldingStatus,
    NegotiatedTerms,
    QuoteRequest,
    QuoteRequestDraft,
    QuoteRequestStatus,
    RefundInitiator,
    RefundQuote,
    RefundRequest,
    RefundRules,
    RefundSettings,
    RefundStatus,
    RefundType,
    SlotHolding,
    SlotStatus,
    SlotTransactionRecord,
    TransactionType,
)
from guarantee_kernel.domain.roles import DEFAULT_ROLE_LEVELS, Actor, PermissionGroup, Role
from guarantee_kernel.domain.workflow import Guard, Transition, Workflow

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "Actor",
    "Role",
    "PermissionGroup",
    "DEFAULT_ROLE_LEVELS",
    "Guard",
    "Transition",
    "Workflow",
    "OPEN_REFUND_STATUSES",
    "BudgetType",
    "CampaignMetadata",
    "GuaranteeSlot",
    "GuaranteeUnit",
    "HoldingStatus",
    "NegotiatedTerms",
    "QuoteRequest",
    "QuoteRequestDraft",
    "QuoteRequestStatus",
    "RefundInitiator",
    "RefundQuote",
    "RefundRequest",
    "RefundRules",
    "RefundSettings",
    "RefundStatus",
    "RefundType",
    "SlotHolding",
    "SlotStatus",
    "SlotTransactionRecord",
    "TransactionType",
]
