import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable

from ..core.config import settings
from ..core.utils import to_cents
from .normalizer import NormalizedSale, normalize, parse_date

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrendPoint:
    date: str           # UTC day, YYYY-MM-DD
    price: Decimal
    timestamp: int      # epoch ms


@dataclass(frozen=True)
class TrendSeries:
    points: tuple[TrendPoint, ...] = ()
    is_using_all_time: bool = False
    tried_fallback: bool = False

    def __len__(self) -> int:
        return len(self.points)


EMPTY_TREND = TrendSeries()


def _point(sale: NormalizedSale) -> TrendPoint:
    return TrendPoint(
        date=sale.date.date().isoformat(),
        price=to_cents(sale.total_price),
        timestamp=sale.timestamp,
    )


def build_trend(raw_sales: Iterable[Any], now: datetime | None = None,
                window_days: int | None = None) -> TrendSeries:
    """
    Chart points for the trailing window ending at `now`.

    When nothing sold inside the window the whole history is returned with
    `is_using_all_time` set. Several sales on the same day produce several
    points; they are not merged.
    """
    now = parse_date(now) or datetime.now(timezone.utc)
    window = timedelta(days=window_days or settings.TREND_WINDOW_DAYS)
    sales = normalize(raw_sales)
    if not sales:
        return EMPTY_TREND

    start = now - window
    recent = [s for s in sales if start < s.date <= now]
    if recent:
        return TrendSeries(points=tuple(_point(s) for s in recent))
    return TrendSeries(points=tuple(_point(s) for s in sales), is_using_all_time=True)


async def build_trend_with_fallback(
    primary_sales: Iterable[Any],
    load_fallback: Callable[[], Awaitable[Iterable[Any]]] | None,
    now: datetime | None = None,
    window_days: int | None = None,
) -> TrendSeries:
    """
    Build from the primary identifier's sales, or, if it has none at all,
    from the fallback (global) identifier's sales.
    """
    series = build_trend(primary_sales, now, window_days)
    if series.points or load_fallback is None:
        return series

    fallback = build_trend(await load_fallback(), now, window_days)
    log.debug("trend built from fallback identifier", extra={"count": len(fallback)})
    return TrendSeries(
        points=fallback.points,
        is_using_all_time=fallback.is_using_all_time,
        tried_fallback=True,
    )
