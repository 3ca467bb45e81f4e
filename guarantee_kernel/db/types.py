"""
Module: guarantee_kernel.db.types
Responsibility: Annotated type aliases and rounding helpers for monetary
    columns.  Centralizes precision and rounding so that every model,
    engine and service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    selectors/ and guarantee_engines.  MUST NOT import from any of those.

Invariants enforced:
    - No floats anywhere.  All monetary amounts use Decimal.
    - round_money() and round_up_money() are the ONLY sanctioned rounding
      functions for money.  Contracted totals and earned-to-date amounts
      both go through round_up_money() so they can never under-count.
"""

from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Annotated

from sqlalchemy import Numeric, String

# Monetary amount: 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# ISO 4217 currency code
Currency = Annotated[str, String(3)]

# Short identifier strings (status values, roles)
ShortCode = Annotated[str, String(50)]

# Long text for reasons and memos
LongText = Annotated[str, String(4000)]

DEFAULT_DECIMAL_PLACES = 0
DEFAULT_ROUNDING = ROUND_HALF_UP


def money(value: Decimal | int | str) -> Decimal:
    """Coerce an int/str/Decimal to Decimal.  Floats are rejected."""
    if isinstance(value, float):
        raise TypeError("float is not a valid monetary amount; use Decimal or str")
    if isinstance(value, Decimal):
        return value
    return Decimal(value)


def _quantum(decimal_places: int) -> Decimal:
    return Decimal(1).scaleb(-decimal_places)


def round_money(
    value: Decimal,
    decimal_places: int = DEFAULT_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the smallest currency unit.

    Args:
        value: The Decimal value to round.
        decimal_places: Digits after the decimal point of the currency unit
            (0 for KRW/JPY, 2 for USD).
        rounding: Decimal rounding mode (default ROUND_HALF_UP).
    """
    return value.quantize(_quantum(decimal_places), rounding=rounding)


def round_up_money(value: Decimal, decimal_places: int = DEFAULT_DECIMAL_PLACES) -> Decimal:
    """
    Round a monetary value UP (toward +infinity) to the smallest currency unit.

    Used for every amount derived from the tax surcharge so that totals are
    never under-counted.
    """
    return round_money(value, decimal_places, ROUND_CEILING)
