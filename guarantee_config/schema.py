"""
EngineConfig schema.

The human-authored engine configuration, parsed from YAML by the loader.
Everything the services need that is not per-campaign: the surcharge
factor, currency precision, the role level table, the refund policy used
when a campaign carries none, and whether outbox notifications are
written at all.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from guarantee_kernel.domain.dtos import RefundSettings
from guarantee_kernel.domain.roles import DEFAULT_ROLE_LEVELS


@dataclass(frozen=True)
class EngineConfig:
    """Runtime engine configuration (frozen)."""

    tax_rate: Decimal = Decimal("1.1")
    currency: str = "KRW"
    currency_decimal_places: int = 0
    default_refund_settings: RefundSettings = field(default_factory=RefundSettings)
    role_levels: Mapping[str, int] = field(default_factory=lambda: DEFAULT_ROLE_LEVELS)
    notifications_enabled: bool = True
    checksum: str = ""

    def __post_init__(self) -> None:
        if self.tax_rate <= 0:
            raise ValueError("tax_rate must be positive")
        if self.currency_decimal_places < 0:
            raise ValueError("currency_decimal_places must not be negative")
        if not isinstance(self.role_levels, MappingProxyType):
            object.__setattr__(self, "role_levels", MappingProxyType(dict(self.role_levels)))
