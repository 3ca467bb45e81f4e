"""Database layer - engine, base classes and money types."""

from guarantee_kernel.db.base import UUID, Base, TrackedBase, UUIDString, VersionedBase
from guarantee_kernel.db.engine import (
    create_tables,
    get_session_factory,
    session_scope,
)
from guarantee_kernel.db.types import Currency, LongText, Money, ShortCode

__all__ = [
    "get_session_factory",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "VersionedBase",
    "UUIDString",
    "UUID",
    "Money",
    "Currency",
    "ShortCode",
    "LongText",
]
