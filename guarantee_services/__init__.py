"""
guarantee_services -- Package init and public API.

Responsibility:
    Stateful orchestration: the three workflow state machines, the
    ConsistencyCoordinator that owns every transaction boundary, the
    balance ledger and the notification outbox.  This is the only layer
    that holds database sessions or reads the clock.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        guarantee_services/ -> guarantee_engines/  (allowed)
        guarantee_services/ -> guarantee_kernel/   (allowed)
        guarantee_engines/  -> guarantee_services/ (FORBIDDEN)
        guarantee_kernel/   -> guarantee_services/ (FORBIDDEN)

Invariants enforced:
    - Layer isolation: guarantee_kernel and guarantee_engines never import
      from this package.
    - DI transparency: service wiring is centralised in
      GuaranteeWorkflowEngine.
"""

from guarantee_services.campaigns import CampaignMetadataProvider, StaticCampaignProvider
from guarantee_services.consistency_coordinator import ConsistencyCoordinator, UnitOfWork
from guarantee_services.ledger import LedgerPort, SqlLedger
from guarantee_services.notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationMessage,
    OutboxRelay,
    RelayResult,
)
from guarantee_services.orchestrator import GuaranteeWorkflowEngine
from guarantee_services.quote_request_service import PurchaseResult, QuoteRequestService
from guarantee_services.refund_request_service import RefundRequestService
from guarantee_services.slot_fulfillment_service import CompletionResult, SlotFulfillmentService
from guarantee_services.workflow_executor import GuardExecutor, WorkflowExecutor

__all__ = [
    "CampaignMetadataProvider",
    "CompletionResult",
    "ConsistencyCoordinator",
    "GuaranteeWorkflowEngine",
    "GuardExecutor",
    "LedgerPort",
    "LoggingNotificationDispatcher",
    "NotificationDispatcher",
    "NotificationMessage",
    "OutboxRelay",
    "PurchaseResult",
    "QuoteRequestService",
    "RefundRequestService",
    "RelayResult",
    "SlotFulfillmentService",
    "SqlLedger",
    "StaticCampaignProvider",
    "UnitOfWork",
    "WorkflowExecutor",
]
