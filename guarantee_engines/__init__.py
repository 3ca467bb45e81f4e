"""
Module: guarantee_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines used by
    the workflow services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import guarantee_kernel/domain, db/types, exceptions and
    logging_config.  MUST NOT import guarantee_services.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or ``date.today()``.
      Dates are passed in by the services, which read them from a Clock.
    - Decimal-only arithmetic for every monetary amount.
"""

from guarantee_engines.authority import (
    SCOPE_ASSIGNEE,
    SCOPE_CLAIMABLE,
    SCOPE_OWNER,
    SCOPE_PARTY,
    RoleAuthority,
)
from guarantee_engines.proration import DEFAULT_TAX_RATE, ProrationCalculator
from guarantee_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "RoleAuthority",
    "SCOPE_PARTY",
    "SCOPE_OWNER",
    "SCOPE_ASSIGNEE",
    "SCOPE_CLAIMABLE",
    "ProrationCalculator",
    "DEFAULT_TAX_RATE",
    "traced_engine",
    "compute_input_fingerprint",
]
