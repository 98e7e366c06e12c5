from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from ..core.utils import to_cents
from .normalizer import ZERO, normalize


@dataclass(frozen=True)
class LastSold:
    date: datetime
    price: Decimal


@dataclass(frozen=True)
class PricingInfo:
    value: Decimal
    range: tuple[Decimal, Decimal]
    last_sold: LastSold | None

    @property
    def low(self) -> Decimal:
        return self.range[0]

    @property
    def high(self) -> Decimal:
        return self.range[1]


EMPTY_PRICING = PricingInfo(value=ZERO, range=(ZERO, ZERO), last_sold=None)


def _inlier_band(prices: list[Decimal]) -> tuple[Decimal, Decimal]:
    """
    25th/75th percentile by index. Single extreme sales drop out of the
    displayed range but still count toward the mean.
    """
    ordered = sorted(prices)
    n = len(ordered)
    low_idx = min(n - 1, max(0, int(n * 0.25)))
    high_idx = min(n - 1, max(0, int(n * 0.75)))
    return ordered[low_idx], ordered[high_idx]


def calculate_market_value(comps: Iterable[Any]) -> PricingInfo:
    """
    Mean price, inlier range and most recent sale for a comp set.

    `comps` may be raw upstream records or `NormalizedSale`s. An empty (or
    fully malformed) set yields `EMPTY_PRICING` rather than an error. Values
    are rounded to cents only here, at the return boundary.
    """
    sales = normalize(comps)
    if not sales:
        return EMPTY_PRICING

    prices = [s.total_price for s in sales]
    mean = sum(prices, ZERO) / len(prices)
    low, high = _inlier_band(prices)

    value = to_cents(mean)
    # A skewed set can put the mean outside the quartile band; widen the band
    # so the displayed range always brackets the value.
    low = min(to_cents(low), value)
    high = max(to_cents(high), value)

    latest = max(sales, key=lambda s: s.date)
    return PricingInfo(
        value=value,
        range=(low, high),
        last_sold=LastSold(date=latest.date, price=to_cents(latest.total_price)),
    )
