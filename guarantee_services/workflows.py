"""
Guarantee Workflows.

State machines for the quote request, guarantee slot and refund request
lifecycles.  Each transition names the minimum role level and the
ownership scope RoleAuthority checks before it fires.
"""

from guarantee_engines.authority import (
    SCOPE_ASSIGNEE,
    SCOPE_CLAIMABLE,
    SCOPE_OWNER,
    SCOPE_PARTY,
)
from guarantee_kernel.domain.roles import PermissionGroup
from guarantee_kernel.domain.workflow import Guard, Transition, Workflow
from guarantee_kernel.logging_config import get_logger

logger = get_logger("services.workflows")

CAMPAIGN = int(PermissionGroup.CAMPAIGN)
DISTRIBUTOR = int(PermissionGroup.DISTRIBUTOR)


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

NO_OPEN_REFUND = Guard(
    name="no_open_refund",
    description="Slot has no refund request awaiting a decision",
)

logger.info(
    "guarantee_workflow_guards_defined",
    extra={"guards": [NO_OPEN_REFUND.name]},
)


# -----------------------------------------------------------------------------
# Quote Request Workflow
# -----------------------------------------------------------------------------

QUOTE_REQUEST_WORKFLOW = Workflow(
    name="guarantee_quote_request",
    description="Buyer quote request from ask to purchase",
    initial_state="requested",
    states=(
        "requested",
        "negotiating",
        "accepted",
        "rejected",
        "expired",
        "purchased",
    ),
    transitions=(
        Transition("requested", "negotiating", action="open_negotiation",
                   required_level=DISTRIBUTOR, scope=SCOPE_CLAIMABLE),
        Transition("negotiating", "accepted", action="accept",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE),
        Transition("requested", "rejected", action="reject",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE),
        Transition("negotiating", "rejected", action="reject",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE),
        Transition("rejected", "negotiating", action="undo_rejection",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE),
        Transition("requested", "expired", action="expire",
                   required_level=DISTRIBUTOR, scope=SCOPE_PARTY),
        Transition("negotiating", "expired", action="expire",
                   required_level=DISTRIBUTOR, scope=SCOPE_PARTY),
        Transition("accepted", "expired", action="expire",
                   required_level=DISTRIBUTOR, scope=SCOPE_PARTY),
        Transition("accepted", "purchased", action="purchase",
                   required_level=CAMPAIGN, scope=SCOPE_OWNER, moves_money=True),
    ),
    terminal_states=("expired", "purchased"),
)


# -----------------------------------------------------------------------------
# Guarantee Slot Workflow
# -----------------------------------------------------------------------------

SLOT_WORKFLOW = Workflow(
    name="guarantee_slot",
    description="Guarantee slot execution after purchase",
    initial_state="pending",
    states=("pending", "active", "completed", "cancelled", "rejected"),
    transitions=(
        Transition("pending", "active", action="approve",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE, guard=NO_OPEN_REFUND),
        Transition("rejected", "active", action="approve",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE, guard=NO_OPEN_REFUND),
        Transition("pending", "rejected", action="reject",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE),
        Transition("active", "completed", action="complete",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE,
                   guard=NO_OPEN_REFUND, moves_money=True),
        # Refund sub-flow entry points; the slot stays active.
        Transition("active", "active", action="request_refund",
                   required_level=CAMPAIGN, scope=SCOPE_OWNER),
        Transition("active", "active", action="propose_refund",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE),
    ),
    terminal_states=("completed", "cancelled"),
)


# -----------------------------------------------------------------------------
# Refund Request Workflow
# -----------------------------------------------------------------------------

REFUND_WORKFLOW = Workflow(
    name="guarantee_refund_request",
    description="Refund claim against the money held for a slot",
    initial_state="pending",
    states=("pending", "pending_user_confirmation", "approved", "rejected"),
    transitions=(
        Transition("pending", "approved", action="approve",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE, moves_money=True),
        Transition("pending", "rejected", action="reject",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE),
        # The distributor may withdraw a proposal the buyer has not confirmed.
        Transition("pending_user_confirmation", "rejected", action="reject",
                   required_level=DISTRIBUTOR, scope=SCOPE_ASSIGNEE),
        Transition("pending_user_confirmation", "approved", action="confirm",
                   required_level=CAMPAIGN, scope=SCOPE_OWNER, moves_money=True),
    ),
    terminal_states=("approved", "rejected"),
)

logger.info(
    "guarantee_workflows_defined",
    extra={
        "workflows": [
            QUOTE_REQUEST_WORKFLOW.name,
            SLOT_WORKFLOW.name,
            REFUND_WORKFLOW.name,
        ],
    },
)
