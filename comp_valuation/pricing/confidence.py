import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable

from .normalizer import normalize, parse_date


class Rating(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass(frozen=True)
class ConfidenceRating:
    rating: Rating
    score: int
    factors: list[str] = field(default_factory=list)


# Score caps per factor (sum to 100)
VOLUME_MAX = 40
RELEVANCE_MAX = 30
CONSISTENCY_MAX = 20
RECENCY_MAX = 10

POINTS_PER_COMP = 5
LARGE_SAMPLE = 8
LIMITED_SAMPLE = 2

CLOSE_MATCH = 0.9
LOOSE_MATCH = 0.75

CONSISTENT_DEVIATION = 0.10
VARIABLE_DEVIATION = 0.25

RECENT_WINDOW = timedelta(days=30)
MANY_RECENT = 3

HIGH_THRESHOLD = 80
MEDIUM_THRESHOLD = 50

NO_COMPS = "No comparable sales found"
NO_PRICES = "Price data unavailable in search results"


def rating_for(score: int) -> Rating:
    if score >= HIGH_THRESHOLD:
        return Rating.HIGH
    if score >= MEDIUM_THRESHOLD:
        return Rating.MEDIUM
    return Rating.LOW


def calculate_confidence(comps: Iterable[Any], now: datetime | None = None) -> ConfidenceRating:
    """
    Score how far a comp set can be trusted, 0-100.

    Four capped factors are added: volume (40), match relevance (30), price
    consistency (20) and recency (10). Each factor may contribute a short
    explanation to `factors`. Bad or missing data lowers the score; it never
    raises.
    """
    comps = list(comps or [])
    if not comps:
        return ConfidenceRating(rating=Rating.LOW, score=0, factors=[NO_COMPS])

    sales = normalize(comps)
    if not sales:
        return ConfidenceRating(rating=Rating.LOW, score=0, factors=[NO_PRICES])

    now = parse_date(now) or datetime.now(timezone.utc)
    count = len(sales)
    factors: list[str] = []
    score = 0.0

    # 1. Volume
    score += min(count * POINTS_PER_COMP, VOLUME_MAX)
    if count >= LARGE_SAMPLE:
        factors.append("Large sample size of comparable sales")
    elif count <= LIMITED_SAMPLE:
        factors.append("Limited number of comparable sales")

    # 2. Relevance (missing scores count as 0)
    avg_relevance = sum(s.relevance for s in sales) / count
    score += avg_relevance * RELEVANCE_MAX
    if avg_relevance >= CLOSE_MATCH:
        factors.append("Very close matches to your card")
    elif avg_relevance <= LOOSE_MATCH:
        factors.append("Comparable sales are not exact matches")

    # 3. Consistency: mean relative deviation from the mean price
    prices = [float(s.total_price) for s in sales]
    avg_price = sum(prices) / count
    deviation = sum(abs(p - avg_price) / avg_price for p in prices) / count
    score += max(0.0, (1 - deviation) * CONSISTENCY_MAX)
    if deviation <= CONSISTENT_DEVIATION:
        factors.append("Consistent pricing across sales")
    elif deviation >= VARIABLE_DEVIATION:
        factors.append("High price variability between sales")

    # 4. Recency
    cutoff = now - RECENT_WINDOW
    recent = sum(1 for s in sales if s.date >= cutoff)
    score += (recent / count) * RECENCY_MAX
    if recent == 0:
        factors.append("No recent sales in the last 30 days")
    elif recent >= MANY_RECENT:
        factors.append("Multiple recent sales data points")

    final = min(100, max(0, math.floor(score + 0.5)))
    return ConfidenceRating(rating=rating_for(final), score=final, factors=factors)
