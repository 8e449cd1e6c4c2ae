"""Tiered off-ramp fees.

Fees are a percentage of the NGN amount, picked from a tier table. The
table must cover ``[0, inf)`` with contiguous tiers; this is checked when a
FeeSchedule is built so a bad admin edit is rejected up front instead of
failing a payout later.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from offramp.errors import FeeTooSmallError

logger = logging.getLogger(__name__)

NGN_PRECISION = Decimal("0.01")


@dataclass(frozen=True)
class FeeTier:
    """One band of the fee table. ``max_amount`` of None means unbounded."""

    min_amount: Decimal
    max_amount: Optional[Decimal]
    percentage: Decimal
    name: str = ""

    def contains(self, amount: Decimal) -> bool:
        return self.min_amount <= amount and (self.max_amount is None or amount <= self.max_amount)

    def to_dict(self) -> dict:
        return {
            "min_amount": str(self.min_amount),
            "max_amount": str(self.max_amount) if self.max_amount is not None else None,
            "percentage": str(self.percentage),
            "tier_name": self.name,
        }


DEFAULT_TIERS: tuple[FeeTier, ...] = (
    FeeTier(Decimal("0"), Decimal("1000"), Decimal("2.0"), "Tier 1"),
    FeeTier(Decimal("1000"), Decimal("5000"), Decimal("1.5"), "Tier 2"),
    FeeTier(Decimal("5000"), Decimal("20000"), Decimal("1.0"), "Tier 3"),
    FeeTier(Decimal("20000"), None, Decimal("0.5"), "Tier 4"),
)


class FeeSchedule:
    """Validated, ordered list of fee tiers."""

    def __init__(self, tiers: Iterable[FeeTier]):
        self.tiers: tuple[FeeTier, ...] = tuple(sorted(tiers, key=lambda t: t.min_amount))
        self._validate()

    def _validate(self) -> None:
        if not self.tiers:
            raise ValueError("Fee schedule needs at least one tier")

        if self.tiers[0].min_amount != 0:
            raise ValueError(f"First tier must start at 0, got {self.tiers[0].min_amount}")

        for i, tier in enumerate(self.tiers):
            if not (Decimal("0") <= tier.percentage <= Decimal("100")):
                raise ValueError(f"Tier percentage out of range: {tier.percentage}")

            is_last = i == len(self.tiers) - 1
            if tier.max_amount is None:
                if not is_last:
                    raise ValueError("Only the last tier may be unbounded")
                continue

            if is_last:
                raise ValueError("Last tier must be unbounded")
            if tier.max_amount <= tier.min_amount:
                raise ValueError(
                    f"Tier {tier.min_amount}-{tier.max_amount} has an empty range"
                )

            following = self.tiers[i + 1]
            if following.min_amount != tier.max_amount:
                kind = "gap" if following.min_amount > tier.max_amount else "overlap"
                raise ValueError(
                    f"Fee tiers have a {kind} between {tier.max_amount} and {following.min_amount}"
                )

    def tier_for(self, amount: Decimal) -> FeeTier:
        """Return the tier for ``amount``.

        At a shared boundary both neighbours match; the cheaper one is used.
        """
        if amount < 0:
            raise ValueError(f"Amount cannot be negative: {amount}")
        matching = [t for t in self.tiers if t.contains(amount)]
        return min(matching, key=lambda t: t.percentage)

    def to_list(self) -> list[dict]:
        return [t.to_dict() for t in self.tiers]


@dataclass(frozen=True)
class FeeQuote:
    """Fee breakdown for one payout."""

    ngn_amount: Decimal
    fee: Decimal
    payable: Decimal
    percentage: Decimal

    def fee_in_settlement(self, exchange_rate: Decimal) -> Decimal:
        """Fee expressed in settlement-asset units."""
        if exchange_rate <= 0:
            raise ValueError("Exchange rate must be positive")
        return (self.fee / exchange_rate).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)


class FeeCalculator:
    """Computes the fee and payable amount for an NGN value."""

    def __init__(self, schedule: Optional[FeeSchedule] = None):
        self.schedule = schedule or FeeSchedule(DEFAULT_TIERS)

    def compute_fee(self, amount: Decimal) -> Decimal:
        tier = self.schedule.tier_for(amount)
        fee = amount * tier.percentage / Decimal("100")
        return fee.quantize(NGN_PRECISION, rounding=ROUND_HALF_UP)

    def quote(self, amount: Decimal) -> FeeQuote:
        """Compute the fee breakdown.

        Raises:
            FeeTooSmallError: If nothing would be left to pay out
        """
        amount = amount.quantize(NGN_PRECISION, rounding=ROUND_HALF_UP)
        tier = self.schedule.tier_for(amount)
        fee = self.compute_fee(amount)
        payable = amount - fee

        if payable <= 0:
            raise FeeTooSmallError(
                f"Amount too small: NGN {amount} leaves NGN {payable} after a fee of NGN {fee}"
            )

        logger.debug(f"Fee for NGN {amount}: {tier.percentage}% = NGN {fee}, payable NGN {payable}")
        return FeeQuote(ngn_amount=amount, fee=fee, payable=payable, percentage=tier.percentage)
