"""ORM models for the guarantee kernel."""

from guarantee_kernel.models.guarantee_slot import GuaranteeSlotModel, RefundRequestModel
from guarantee_kernel.models.ledger import (
    SlotHoldingModel,
    SlotTransactionModel,
    UserCashBalanceModel,
)
from guarantee_kernel.models.outbox import OutboxMessageModel
from guarantee_kernel.models.quote_request import QuoteRequestModel

__all__ = [
    "QuoteRequestModel",
    "GuaranteeSlotModel",
    "RefundRequestModel",
    "UserCashBalanceModel",
    "SlotHoldingModel",
    "SlotTransactionModel",
    "OutboxMessageModel",
]
