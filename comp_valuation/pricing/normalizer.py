"""
Turns third-party sale records into `NormalizedSale` values.

Upstream comp sources disagree on field names (``sold_date.date.raw`` vs
``soldDate`` vs ``date``; ``final_price`` vs ``sold_price`` vs ``price``) and
on how money is encoded (numbers, ``"$1,234.50"`` strings, ``{"value": ...}``
objects). Each field is read by an ordered tuple of probes; the first probe
that yields a usable value wins. Records with no usable date, or whose total
price is not positive, are dropped.
"""

import logging
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

log = logging.getLogger(__name__)

ZERO = Decimal("0")

_NON_NUMERIC = re.compile(r"[^0-9.\-]")

# Marketplace listings sometimes carry display dates instead of ISO strings
_DATE_FORMATS = ("%b %d, %Y", "%B %d, %Y", "%m/%d/%Y", "%Y-%m-%d %H:%M:%S")

# Epoch values above this are milliseconds
_EPOCH_MS_THRESHOLD = 10 ** 11


@dataclass(frozen=True)
class NormalizedSale:
    date: datetime
    total_price: Decimal
    relevance: float = 0.0

    @property
    def timestamp(self) -> int:
        """Epoch milliseconds."""
        return int(self.date.timestamp() * 1000)


Probe = Callable[[Mapping], Any]


def path(*keys: str) -> Probe:
    """Probe that walks nested mappings and returns None on any miss."""
    def probe(record: Mapping) -> Any:
        node: Any = record
        for key in keys:
            if not isinstance(node, Mapping):
                return None
            node = node.get(key)
        return node
    probe.__name__ = ".".join(keys)
    return probe


DATE_PROBES: tuple[Probe, ...] = (
    path("sold_date", "date", "raw"),
    path("sold_date"),
    path("soldDate"),
    path("dateSold"),
    path("date"),
)

FINAL_PRICE_PROBE: Probe = path("final_price")
SHIPPING_PROBE: Probe = path("shipping")
FALLBACK_PRICE_PROBES: tuple[Probe, ...] = (
    path("sold_price", "value"),
    path("sold_price"),
    path("price", "value"),
    path("price"),
)
RELEVANCE_PROBE: Probe = path("relevanceScore")


def to_decimal(value: Any) -> Decimal:
    """
    Coerce a price-like value; anything unusable becomes 0.

    Strings keep only digits, ``.`` and ``-`` before parsing, so
    ``"$1,234.50"`` reads as ``1234.50``.
    """
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Mapping):
        return to_decimal(value.get("value"))
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return ZERO
        return Decimal(str(value))
    if isinstance(value, str):
        cleaned = _NON_NUMERIC.sub("", value)
        try:
            parsed = Decimal(cleaned)
        except InvalidOperation:
            return ZERO
        return parsed if parsed.is_finite() else ZERO
    return ZERO


def parse_date(value: Any) -> datetime | None:
    """Parse a date-like value into an aware UTC datetime, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        seconds = value / 1000 if abs(value) > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return parse_date(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            pass
        for fmt in _DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
            except ValueError:
                continue
    return None


def extract_date(record: Mapping) -> datetime | None:
    for probe in DATE_PROBES:
        parsed = parse_date(probe(record))
        if parsed is not None:
            return parsed
    return None


def extract_total_price(record: Mapping) -> Decimal:
    shipping = to_decimal(SHIPPING_PROBE(record))
    final_price = to_decimal(FINAL_PRICE_PROBE(record))
    if final_price > 0:
        return final_price + shipping
    for probe in FALLBACK_PRICE_PROBES:
        base = to_decimal(probe(record))
        if base > 0:
            return base + shipping
    # Shipping alone is not a sale price
    return ZERO


def extract_relevance(record: Mapping) -> float:
    raw = RELEVANCE_PROBE(record)
    if raw is None or isinstance(raw, bool):
        return 0.0
    try:
        score = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(score):
        return 0.0
    return min(1.0, max(0.0, score))


def normalize_record(record: Any) -> NormalizedSale | None:
    if isinstance(record, NormalizedSale):
        return record
    if not isinstance(record, Mapping):
        return None
    sold_at = extract_date(record)
    if sold_at is None:
        return None
    total = extract_total_price(record)
    if total <= 0:
        return None
    return NormalizedSale(date=sold_at, total_price=total, relevance=extract_relevance(record))


def normalize(raw_sales: Iterable[Any] | None) -> list[NormalizedSale]:
    """
    Normalize, drop unusable records and sort ascending by sale time.

    Already-normalized sales pass through untouched, so calculators can be
    handed either shape. The input is never modified.
    """
    if not raw_sales or isinstance(raw_sales, (str, bytes, Mapping)):
        return []
    out: list[NormalizedSale] = []
    dropped = 0
    for record in raw_sales:
        sale = normalize_record(record)
        if sale is None:
            dropped += 1
            continue
        out.append(sale)
    if dropped:
        log.debug("dropped unusable sale records", extra={"count": dropped})
    out.sort(key=lambda s: s.date)
    return out
