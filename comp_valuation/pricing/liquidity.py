from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType


class Liquidity(str, Enum):
    FIRE = "fire"
    HOT = "hot"
    WARM = "warm"
    COOL = "cool"
    COLD = "cold"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class LiquidityInfo:
    tag: Liquidity
    level: int          # 0-5 bars
    percent: int
    exit_time: str
    label: str


LIQUIDITY_TABLE = MappingProxyType({
    Liquidity.FIRE: LiquidityInfo(Liquidity.FIRE, 5, 85, "1-3 days", "FIRE"),
    Liquidity.HOT: LiquidityInfo(Liquidity.HOT, 4, 70, "3-7 days", "HOT"),
    Liquidity.WARM: LiquidityInfo(Liquidity.WARM, 3, 50, "1-2 weeks", "WARM"),
    Liquidity.COOL: LiquidityInfo(Liquidity.COOL, 2, 30, "2-4 weeks", "COOL"),
    Liquidity.COLD: LiquidityInfo(Liquidity.COLD, 1, 15, "1+ months", "COLD"),
    Liquidity.UNKNOWN: LiquidityInfo(Liquidity.UNKNOWN, 0, 0, "—", "UNKNOWN"),
})

# Minimum total sales for each tag, highest first
SALES_COUNT_TIERS = (
    (50, Liquidity.FIRE),
    (30, Liquidity.HOT),
    (15, Liquidity.WARM),
    (5, Liquidity.COOL),
    (1, Liquidity.COLD),
)


def classify(tag: str | None) -> LiquidityInfo:
    """Look up a liquidity tag; anything unrecognized is `unknown`."""
    try:
        key = Liquidity((tag or "").strip().lower())
    except ValueError:
        key = Liquidity.UNKNOWN
    return LIQUIDITY_TABLE[key]


def liquidity_from_sales_count(count: int) -> Liquidity:
    for minimum, tag in SALES_COUNT_TIERS:
        if count >= minimum:
            return tag
    return Liquidity.UNKNOWN
