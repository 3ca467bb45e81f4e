"""
Roles -- the ordered actor role hierarchy.

Responsibility:
    Single enumeration of actor roles and the table mapping each role to a
    numeric authority level.  Permission groups are expressed as minimum
    levels, so every authorization check is one integer comparison.

Architecture position:
    Kernel > Domain -- pure value objects, zero I/O.

Invariants enforced:
    - Unknown role strings resolve to level 0 (guest).
    - ADMIN level (operator, developer) bypasses ownership scoping.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping
from uuid import UUID


class Role(str, Enum):
    """Actor roles, ascending authority."""

    GUEST = "guest"
    BEGINNER = "beginner"
    ADVERTISER = "advertiser"
    AGENCY = "agency"
    DISTRIBUTOR = "distributor"
    OPERATOR = "operator"
    DEVELOPER = "developer"


class PermissionGroup(int, Enum):
    """Minimum role level for each permission group."""

    PUBLIC = 0
    CAMPAIGN = 10
    REPORTING = 30
    DISTRIBUTOR = 50
    ADMIN = 90


DEFAULT_ROLE_LEVELS: Mapping[str, int] = MappingProxyType({
    Role.GUEST.value: 0,
    Role.BEGINNER.value: 0,
    Role.ADVERTISER.value: 10,
    Role.AGENCY.value: 30,
    Role.DISTRIBUTOR.value: 50,
    Role.OPERATOR.value: 90,
    Role.DEVELOPER.value: 100,
})


@dataclass(frozen=True)
class Actor:
    """The current actor, as resolved by the identity provider.

    ``role`` is kept as the raw string the provider returned; it is mapped
    to a level only through the role table.
    """

    actor_id: UUID
    role: str

    def __post_init__(self) -> None:
        if not isinstance(self.role, str):
            raise TypeError("Actor.role must be a string")
        # Normalize enum members and casing to the plain lower-case value.
        object.__setattr__(
            self, "role", (self.role.value if isinstance(self.role, Role) else self.role).lower()
        )
