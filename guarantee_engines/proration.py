"""
Module: guarantee_engines.proration
Responsibility:
    ProrationCalculator -- contracted total, earned-to-date and refundable
    amount of a guarantee slot, plus the campaign refund policy applied on
    top of the prorated figure.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import guarantee_kernel/domain, guarantee_kernel/db/types and
    guarantee_kernel/exceptions.  ``as_of`` and ``now`` are always passed
    in by the caller; the engine never reads the clock.

Invariants enforced:
    - contracted_total and earned_to_date use the SAME factor and the SAME
      round-up function, so earned_to_date <= contracted_total whenever
      elapsed_days <= guarantee_count.
    - Refunds are floored at zero after every cap is applied.
    - The refundable amount never exceeds the unearned remainder minus what
      was already refunded, so approved refunds never sum past the contract.
    - Decimal-only arithmetic; floats are rejected.

Failure modes:
    - RefundNotAllowedError when the campaign policy disables refunds or
      the elapsed days fall outside [min_usage_days, max_refund_days].
    - TypeError on float inputs.

Usage:
    calc = ProrationCalculator()
    calc.contracted_total(daily_amount=Decimal("10000"), guarantee_count=10)
    # Decimal("110000")
    calc.earned_to_date(daily_amount=Decimal("10000"), elapsed_days=3)
    # Decimal("33000")
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from guarantee_kernel.db.types import money, round_up_money
from guarantee_kernel.domain.dtos import RefundQuote, RefundSettings, RefundType
from guarantee_kernel.exceptions import RefundNotAllowedError
from guarantee_kernel.logging_config import get_logger
from guarantee_engines.tracer import traced_engine

logger = get_logger("engines.proration")

DEFAULT_TAX_RATE = Decimal("1.1")
ZERO = Decimal("0")


class ProrationCalculator:
    """
    Pure proration arithmetic.

    Args:
        tax_rate: Multiplicative surcharge applied uniformly (1.1 = 10%).
        decimal_places: Digits of the smallest currency unit (0 for KRW).
    """

    def __init__(self, tax_rate: Decimal = DEFAULT_TAX_RATE, decimal_places: int = 0):
        self.tax_rate = money(tax_rate)
        self.decimal_places = decimal_places

    # -------------------------------------------------------------------------
    # Building blocks
    # -------------------------------------------------------------------------

    @staticmethod
    def elapsed_days(start_date: date | None, as_of: date) -> int:
        """Whole calendar days since ``start_date``; never negative.

        A slot that has not started yet (or has no start date) has 0 days.
        """
        if start_date is None:
            return 0
        if isinstance(as_of, datetime):
            as_of = as_of.date()
        return max(0, (as_of - start_date).days)

    def contracted_total(self, daily_amount: Decimal, guarantee_count: int) -> Decimal:
        """roundUp(daily_amount x guarantee_count x tax_rate)."""
        amount = money(daily_amount) * guarantee_count * self.tax_rate
        return round_up_money(amount, self.decimal_places)

    def earned_to_date(self, daily_amount: Decimal, elapsed_days: int) -> Decimal:
        """roundUp(daily_amount x elapsed_days x tax_rate)."""
        amount = money(daily_amount) * max(0, elapsed_days) * self.tax_rate
        return round_up_money(amount, self.decimal_places)

    def prorated_refund(
        self,
        daily_amount: Decimal,
        guarantee_count: int,
        elapsed_days: int,
        cap: Decimal | None = None,
    ) -> Decimal:
        """max(0, min(contracted - earned, cap))."""
        remainder = self.contracted_total(daily_amount, guarantee_count) - self.earned_to_date(
            daily_amount, elapsed_days
        )
        if cap is not None:
            remainder = min(remainder, money(cap))
        return max(ZERO, remainder)

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    @staticmethod
    def expected_refund_date(settings: RefundSettings, now: datetime) -> date:
        """When an approved refund reaches the buyer, per the policy type.

        immediate: today; delayed: today + delay_days; cutoff_based: today
        if ``now`` is before the cutoff time, else the next day.
        """
        today = now.date()
        if settings.type == RefundType.DELAYED:
            return today + timedelta(days=max(0, settings.delay_days))
        if settings.type == RefundType.CUTOFF_BASED:
            if now.timetz().replace(tzinfo=None) < settings.cutoff_time:
                return today
            return today + timedelta(days=1)
        return today

    @traced_engine(
        "proration",
        "1.0",
        fingerprint_fields=(
            "daily_amount", "guarantee_count", "start_date", "as_of",
            "already_refunded", "settings",
        ),
    )
    def quote(
        self,
        *,
        slot_id: UUID,
        daily_amount: Decimal,
        guarantee_count: int,
        start_date: date | None,
        as_of: date,
        already_refunded: Decimal = ZERO,
        settings: RefundSettings | None = None,
        now: datetime | None = None,
    ) -> RefundQuote:
        """
        Compute the refundable amount of a slot as of ``as_of``.

        Raises:
            RefundNotAllowedError: Policy disables refunds or the usage
                window does not admit one.
        """
        settings = settings or RefundSettings()
        rules = settings.refund_rules

        if not settings.enabled:
            raise RefundNotAllowedError(str(slot_id), "refunds are disabled for this campaign")

        elapsed = self.elapsed_days(start_date, as_of)
        if rules.min_usage_days is not None and elapsed < rules.min_usage_days:
            raise RefundNotAllowedError(
                str(slot_id),
                f"minimum usage of {rules.min_usage_days} days not reached "
                f"({elapsed} elapsed)",
            )
        if rules.max_refund_days is not None and elapsed > rules.max_refund_days:
            raise RefundNotAllowedError(
                str(slot_id),
                f"refund window of {rules.max_refund_days} days has passed "
                f"({elapsed} elapsed)",
            )

        contracted = self.contracted_total(daily_amount, guarantee_count)
        earned = min(self.earned_to_date(daily_amount, elapsed), contracted)

        if rules.partial_refund:
            base = contracted - earned
        else:
            base = contracted
        if rules.max_refund_amount is not None:
            base = min(base, money(rules.max_refund_amount))

        already = money(already_refunded)
        # Earlier refunds came out of the same unearned pool.
        refundable = max(ZERO, base - already)

        return RefundQuote(
            slot_id=slot_id,
            as_of=as_of,
            elapsed_days=elapsed,
            contracted_total=contracted,
            earned_to_date=earned,
            prorated_refund=max(ZERO, base),
            already_refunded=already,
            refundable_amount=refundable,
            expected_refund_date=self.expected_refund_date(settings, now) if now else None,
        )
