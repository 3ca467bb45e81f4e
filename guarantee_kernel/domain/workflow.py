"""
Canonical workflow types (``guarantee_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the three guarantee lifecycles (quote request,
slot fulfillment, refund request).  Guard, Transition, and Workflow are
defined once; each transition declares the minimum role level allowed
to fire it and whether the actor must own or be assigned to the entity.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing transitions.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Contract: frozen, descriptive only.
    Non-goals: does not evaluate the condition -- the owning service does.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow.

    ``required_level`` is the minimum role level (see
    ``guarantee_kernel.domain.roles``).  ``scope`` names the ownership rule
    checked after the level gate ("party", "owner", "assignee",
    "claimable"; None skips it).  ``moves_money=True`` marks transitions
    that touch the ledger.
    """
    from_state: str
    to_state: str
    action: str
    required_level: int = 0
    scope: str | None = "party"
    guard: Guard | None = None
    moves_money: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for an entity lifecycle.

    Contract: frozen; ``transitions`` reference only states in ``states``.
    """
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(
                f"Workflow {self.name}: initial state {self.initial_state!r} "
                f"is not one of {self.states}"
            )
        for t in self.transitions:
            for state in (t.from_state, t.to_state):
                if state not in self.states:
                    raise ValueError(
                        f"Workflow {self.name}: transition {t.action!r} "
                        f"references unknown state {state!r}"
                    )
            if t.from_state in self.terminal_states:
                raise ValueError(
                    f"Workflow {self.name}: terminal state {t.from_state!r} "
                    f"has outgoing transition {t.action!r}"
                )

    def find(self, action: str, from_state: str) -> Transition | None:
        """Return the transition for ``action`` out of ``from_state``, if any."""
        for t in self.transitions:
            if t.action == action and t.from_state == from_state:
                return t
        return None

    def sources_for(self, action: str) -> tuple[str, ...]:
        """States from which ``action`` is legal."""
        return tuple(t.from_state for t in self.transitions if t.action == action)
