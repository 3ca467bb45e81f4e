"""
guarantee_services.orchestrator -- Central DI container for the workflow services.

Responsibility:
    Creates the coordinator, authority, workflow executor, proration
    calculator and the three state machine services exactly once, from
    one EngineConfig, and wires them together.  No service constructs
    another service internally.

Architecture position:
    Services -- top of the service layer; the only place where services
    are composed.  Scripts and API adapters build one of these and call
    the services it exposes.

Invariants enforced:
    - Single-instance lifecycle: all three services share one
      coordinator, one executor and one proration calculator.
    - DI transparency: all wiring is visible in ``__init__``.

Usage:
    from guarantee_config import get_active_config
    from guarantee_kernel.db.engine import get_session_factory

    engine = GuaranteeWorkflowEngine(
        session_factory=get_session_factory(),
        campaigns=StaticCampaignProvider([...]),
        config=get_active_config(),
    )
    engine.quotes.create_request(buyer, campaign_id, draft)
    engine.slots.approve(distributor, slot_id)
    engine.refunds.request_refund(buyer, slot_id, "no longer needed")
"""

from __future__ import annotations

from typing import Callable

from sqlalchemy.orm import Session

from guarantee_config.schema import EngineConfig
from guarantee_engines.authority import RoleAuthority
from guarantee_engines.proration import ProrationCalculator
from guarantee_kernel.domain.clock import Clock, SystemClock
from guarantee_kernel.logging_config import get_logger
from guarantee_services.campaigns import CampaignMetadataProvider
from guarantee_services.consistency_coordinator import ConsistencyCoordinator
from guarantee_services.ledger import LedgerPort, SqlLedger
from guarantee_services.notifications import NotificationDispatcher, OutboxRelay
from guarantee_services.quote_request_service import QuoteRequestService
from guarantee_services.refund_request_service import RefundRequestService
from guarantee_services.slot_fulfillment_service import SlotFulfillmentService
from guarantee_services.workflow_executor import WorkflowExecutor

logger = get_logger("services.orchestrator")


class GuaranteeWorkflowEngine:
    """
    Wires every workflow service from one configuration.

    Args:
        session_factory: sessionmaker (or equivalent) for units of work.
        campaigns: Campaign metadata collaborator.
        config: Engine configuration; defaults to EngineConfig().
        dispatcher: Post-commit notification channel.
        clock: Time source; SystemClock in production.
        ledger_factory: LedgerPort bound to a unit's session.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        campaigns: CampaignMetadataProvider,
        config: EngineConfig | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        ledger_factory: Callable[[Session], LedgerPort] | None = None,
    ):
        self.config = config or EngineConfig()
        self._clock = clock or SystemClock()

        self.coordinator = ConsistencyCoordinator(
            session_factory,
            dispatcher=dispatcher,
            clock=self._clock,
            ledger_factory=ledger_factory or SqlLedger,
            notifications_enabled=self.config.notifications_enabled,
        )
        self.authority = RoleAuthority(self.config.role_levels)
        self.workflow_executor = WorkflowExecutor(authority=self.authority)
        self.proration = ProrationCalculator(
            tax_rate=self.config.tax_rate,
            decimal_places=self.config.currency_decimal_places,
        )

        self.quotes = QuoteRequestService(
            self.coordinator,
            campaigns,
            executor=self.workflow_executor,
            proration=self.proration,
        )
        self.slots = SlotFulfillmentService(
            self.coordinator,
            campaigns,
            executor=self.workflow_executor,
            proration=self.proration,
            default_refund_settings=self.config.default_refund_settings,
        )
        self.refunds = RefundRequestService(
            self.coordinator,
            campaigns,
            executor=self.workflow_executor,
            proration=self.proration,
            default_refund_settings=self.config.default_refund_settings,
        )

        logger.info(
            "guarantee_workflow_engine_built",
            extra={
                "config_checksum": self.config.checksum,
                "tax_rate": str(self.config.tax_rate),
                "notifications_enabled": self.config.notifications_enabled,
            },
        )

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def relay(self) -> OutboxRelay:
        return self.coordinator.relay
