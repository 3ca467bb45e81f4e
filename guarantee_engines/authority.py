"""
Module: guarantee_engines.authority
Responsibility:
    RoleAuthority -- resolves an actor's role into a numeric level and
    answers the two questions every mutating operation asks first:
    "does the role reach the required level" and "does the actor own or is
    the actor assigned to this entity".

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import guarantee_kernel/domain and guarantee_kernel/exceptions.

Invariants enforced:
    - Table-driven: a single mapping from role name to level; unknown
      roles resolve to level 0.
    - Admin roles (level >= PermissionGroup.ADMIN) bypass ownership scoping.
    - A non-admin distributor is scoped to entities where
      ``distributor_id == actor_id``; a non-admin buyer to entities where
      ``user_id == actor_id``.
    - ``require`` raises PermissionDeniedError and never mutates anything.

Usage:
    authority = RoleAuthority()
    authority.require(
        actor, PermissionGroup.DISTRIBUTOR, action="approve",
        entity_type="GuaranteeSlot", entity=slot, scope=SCOPE_ASSIGNEE,
    )
"""

from __future__ import annotations

from typing import Any, Mapping

from guarantee_kernel.domain.roles import DEFAULT_ROLE_LEVELS, Actor, PermissionGroup
from guarantee_kernel.exceptions import PermissionDeniedError
from guarantee_kernel.logging_config import get_logger

logger = get_logger("engines.authority")

# Scoping modes a transition may declare.
SCOPE_PARTY = "party"          # role decides: distributors by assignment, others by ownership
SCOPE_OWNER = "owner"          # actor must be the buyer (user_id)
SCOPE_ASSIGNEE = "assignee"    # actor must be the assigned distributor
SCOPE_CLAIMABLE = "claimable"  # assignee, or the entity has no distributor yet

SCOPES = (SCOPE_PARTY, SCOPE_OWNER, SCOPE_ASSIGNEE, SCOPE_CLAIMABLE)


class RoleAuthority:
    """
    Table-driven role authority.

    Contract:
        ``authorize`` and ``owns_or_assigned`` are pure predicates.
        ``require`` combines them and raises PermissionDeniedError.

    Guarantees:
        - Same actor, same entity, same table: same answer.
    """

    def __init__(self, role_levels: Mapping[str, int] | None = None):
        self._levels = dict(role_levels or DEFAULT_ROLE_LEVELS)

    def level_of(self, role: str) -> int:
        return self._levels.get(role.lower(), 0)

    def authorize(self, actor: Actor, required_level: int) -> bool:
        """True iff the actor's role level reaches ``required_level``."""
        return self.level_of(actor.role) >= int(required_level)

    def is_admin(self, actor: Actor) -> bool:
        return self.authorize(actor, PermissionGroup.ADMIN)

    def owns_or_assigned(
        self,
        actor: Actor,
        entity: Any,
        scope: str = SCOPE_PARTY,
    ) -> bool:
        """
        True iff the actor may act on ``entity`` under ``scope``.

        ``entity`` is any object exposing ``user_id`` and ``distributor_id``
        (QuoteRequest, GuaranteeSlot, their ORM models).
        """
        if scope not in SCOPES:
            raise ValueError(f"Unknown scope: {scope!r}")
        if self.is_admin(actor):
            return True

        user_id = getattr(entity, "user_id", None)
        distributor_id = getattr(entity, "distributor_id", None)

        if scope == SCOPE_OWNER:
            return user_id == actor.actor_id
        if scope == SCOPE_ASSIGNEE:
            return distributor_id == actor.actor_id
        if scope == SCOPE_CLAIMABLE:
            return distributor_id is None or distributor_id == actor.actor_id

        if self.authorize(actor, PermissionGroup.DISTRIBUTOR):
            return distributor_id == actor.actor_id
        return user_id == actor.actor_id

    def require(
        self,
        actor: Actor,
        required_level: int,
        *,
        action: str,
        entity_type: str,
        entity: Any = None,
        entity_id: Any = None,
        scope: str | None = SCOPE_PARTY,
    ) -> None:
        """
        Raise PermissionDeniedError unless the actor passes both checks.

        ``scope=None`` skips the ownership check (level gate only).
        """
        if entity_id is None and entity is not None:
            entity_id = getattr(entity, "id", None)

        if not self.authorize(actor, required_level):
            reason = (
                f"role level {self.level_of(actor.role)} is below required "
                f"level {int(required_level)}"
            )
            self._deny(actor, action, entity_type, entity_id, reason)

        if scope is not None and entity is not None:
            if not self.owns_or_assigned(actor, entity, scope):
                self._deny(
                    actor, action, entity_type, entity_id,
                    f"actor is not the {_SCOPE_PARTY_NAMES[scope]} of this {entity_type}",
                )

    def _deny(self, actor: Actor, action: str, entity_type: str, entity_id: Any, reason: str):
        logger.info(
            "permission_denied",
            extra={
                "actor_id": str(actor.actor_id),
                "role": actor.role,
                "action": action,
                "entity_type": entity_type,
                "entity_id": str(entity_id) if entity_id is not None else None,
                "reason": reason,
            },
        )
        raise PermissionDeniedError(
            actor_id=str(actor.actor_id),
            role=actor.role,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            reason=reason,
        )


_SCOPE_PARTY_NAMES = {
    SCOPE_PARTY: "owner or assignee",
    SCOPE_OWNER: "owner",
    SCOPE_ASSIGNEE: "assigned distributor",
    SCOPE_CLAIMABLE: "assigned distributor",
}
