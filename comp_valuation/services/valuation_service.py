import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from ..core.config import settings
from ..core.cache import cache as default_cache, TieredCache, Tier, TIERS
from ..core.utils import normalize_asset_id, weak_etag
from ..data.base import AssetIdentity, AssetsClient, CompsClient, RawSale
from ..data.comps_client import comps_client
from ..data.assets_client import assets_client
from ..pricing.normalizer import NormalizedSale, normalize, parse_date
from ..pricing.market_value import PricingInfo, calculate_market_value
from ..pricing.confidence import ConfidenceRating, calculate_confidence
from ..pricing.liquidity import classify, liquidity_from_sales_count
from ..pricing.trend import TrendSeries, build_trend_with_fallback, EMPTY_TREND
from .mutations import OptimisticMutator
from .poller import PollController, PollRegistry

log = logging.getLogger(__name__)

TREND_TIER = Tier.SEMI_STATIC
ASSET_TIER = Tier.DYNAMIC


def _money(value) -> float:
    return float(value)


def pricing_payload(pricing: PricingInfo) -> dict:
    last = pricing.last_sold
    return {
        "value": _money(pricing.value),
        "range": {"low": _money(pricing.low), "high": _money(pricing.high)},
        "last_sold": {"date": last.date.isoformat(), "price": _money(last.price)} if last else None,
    }


def confidence_payload(confidence: ConfidenceRating) -> dict:
    return {
        "rating": confidence.rating.value,
        "score": confidence.score,
        "factors": list(confidence.factors),
    }


def trend_payload(series: TrendSeries) -> dict:
    return {
        "points": [
            {"date": p.date, "price": _money(p.price), "timestamp": p.timestamp}
            for p in series.points
        ],
        "is_using_all_time": series.is_using_all_time,
        "tried_fallback": series.tried_fallback,
    }


def history_payload(sales: list[NormalizedSale]) -> list[dict]:
    # newest first, capped
    newest = sorted(sales, key=lambda s: s.date, reverse=True)[:settings.HISTORY_MAX_POINTS]
    return [
        {"date": s.date.isoformat(), "price": _money(s.total_price), "timestamp": s.timestamp}
        for s in newest
    ]


class ValuationService:
    """
    Orchestrates:
      asset id → comp search → normalize → market value + confidence + liquidity
    and the parallel trend path with its own polling. Results are cached as
    JSON-ready payloads by tier; ETags are derived from the payload.
    """
    def __init__(
        self,
        comps: CompsClient | None = None,
        assets: AssetsClient | None = None,
        cache: TieredCache | None = None,
        polls: PollRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
        poll_delays: list[float] | None = None,
        poll_sleep=None,
    ):
        # Data adapters (mock or HTTP)
        self.comps = comps or comps_client()
        self.assets = assets or assets_client()
        self.cache = cache or default_cache
        self.polls = polls or PollRegistry(ttl=TIERS[TREND_TIER].retention)
        self.mutator = OptimisticMutator(self.cache, tier=ASSET_TIER)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._poll_delays = poll_delays
        self._poll_sleep = poll_sleep

    async def search(self, asset_id: str) -> list[RawSale]:
        """Comp search; transport failures read as "no comps yet"."""
        try:
            return await self.comps.search(asset_id)
        except (httpx.HTTPError, ValueError):
            log.warning("comp search failed", exc_info=True, extra={"asset_id": asset_id})
            return []

    # ----- pricing -----

    def build_snapshot(self, asset_id: str, raw_sales: list[RawSale]) -> dict:
        now = parse_date(self._clock())
        sales = normalize(raw_sales)
        cutoff = now - timedelta(days=settings.TREND_WINDOW_DAYS)
        recent = [s for s in sales if s.date >= cutoff]
        # Price on the trailing window when it has sales, else on everything
        priced_on = recent or sales

        liquidity = classify(liquidity_from_sales_count(len(sales)))
        return {
            "asset_id": asset_id,
            "currency": settings.DEFAULT_CURRENCY,
            **pricing_payload(calculate_market_value(priced_on)),
            "confidence": confidence_payload(calculate_confidence(raw_sales, now=now)),
            "liquidity": {
                "tag": liquidity.tag.value,
                "level": liquidity.level,
                "percent": liquidity.percent,
                "exit_time": liquidity.exit_time,
                "label": liquidity.label,
            },
            "sales_count": len(sales),
            "thirty_day_sales_count": len(recent),
            "pricing_period": "30 days" if recent else "All time",
            "history": history_payload(sales),
        }

    async def market_snapshot(self, asset_id: str, history_points: int | None = None) -> tuple[dict, bool, str]:
        """
        Cached snapshot for one asset as (payload, from_cache, etag). The
        cached entry always carries the newest sales; `history_points` picks
        how many of them the caller gets back, None leaves history out.
        """
        key = normalize_asset_id(asset_id)
        entry = self.cache.peek(Tier.PRICING, key)
        from_cache = entry is not None and not self.cache.is_stale(entry)

        async def load() -> dict:
            return self.build_snapshot(key, await self.search(asset_id))

        cached = await self.cache.read(Tier.PRICING, key, load)
        payload = {k: v for k, v in cached.items() if k != "history"}
        if history_points is not None:
            payload["history"] = cached.get("history", [])[:max(history_points, 0)]
        etag = weak_etag(json.dumps(payload, separators=(',',':'), sort_keys=True).encode("utf-8"))
        return payload, from_cache, etag

    async def market_snapshots(self, asset_ids: list[str], history_points: int | None = None) -> dict[str, tuple[dict, bool, str]]:
        """Snapshots for many assets; each id is cached on its own."""
        ids = list(dict.fromkeys(asset_ids))
        results = await asyncio.gather(*(self.market_snapshot(i, history_points) for i in ids))
        return dict(zip(ids, results))

    async def refresh_snapshot(self, asset_id: str, history_points: int | None = None) -> tuple[dict, bool, str]:
        """Manual refresh: the only way a pricing entry is recomputed early."""
        self.cache.evict(Tier.PRICING, normalize_asset_id(asset_id))
        return await self.market_snapshot(asset_id, history_points)

    # ----- trend -----

    @staticmethod
    def canonical(identity: AssetIdentity) -> AssetIdentity:
        """One spelling per subject, so cache slot and poll controller agree."""
        fallback = identity.fallback_id
        return AssetIdentity(
            normalize_asset_id(identity.asset_id),
            normalize_asset_id(fallback) if fallback else None,
        )

    @staticmethod
    def _trend_key(identity: AssetIdentity) -> tuple:
        identity = ValuationService.canonical(identity)
        return ("trend", identity.asset_id, identity.fallback)

    async def fetch_trend(self, identity: AssetIdentity) -> TrendSeries:
        fallback = identity.fallback

        async def load_fallback():
            return await self.search(fallback)

        return await build_trend_with_fallback(
            await self.search(identity.asset_id),
            load_fallback if fallback else None,
            now=self._clock(),
        )

    def _poller(self, identity: AssetIdentity, key: tuple) -> PollController:
        async def fetch() -> dict:
            return trend_payload(await self.fetch_trend(identity))

        def publish(payload: dict) -> None:
            self.cache.set(TREND_TIER, key, payload)

        kwargs: dict[str, Any] = {}
        if self._poll_sleep is not None:
            kwargs["sleep"] = self._poll_sleep
        return PollController(
            identity,
            fetch,
            has_data=lambda payload: bool(payload and payload["points"]),
            empty=trend_payload(EMPTY_TREND),
            publish=publish,
            delays=self._poll_delays,
            **kwargs,
        )

    async def trend(self, identity: AssetIdentity, consumer=None) -> dict:
        """
        Cached trend payload. An empty result hands the subject to a poll
        controller, which keeps re-fetching in the background and writes any
        data it finds into the same cache slot. `poll_state` tells the caller
        whether asking again later can help.
        """
        identity = self.canonical(identity)
        key = self._trend_key(identity)

        async def load() -> dict:
            return trend_payload(await self.fetch_trend(identity))

        payload = await self.cache.read(TREND_TIER, key, load)
        controller = self.polls.get(identity)
        if not payload["points"] and (controller is None or consumer is not None):
            controller = self.polls.watch(
                identity, lambda: self._poller(identity, key), consumer=consumer, initial=payload,
            )
        state = controller.state.value if controller else "satisfied"
        return {**payload, "poll_state": state}

    def refresh_trend(self, identity: AssetIdentity) -> None:
        identity = self.canonical(identity)
        self.polls.detach(identity)
        self.cache.evict(TREND_TIER, self._trend_key(identity))

    def unwatch_trend(self, consumer) -> bool:
        """Consumer went away; stops its poll unless someone else still watches."""
        return self.polls.unwatch(consumer)

    # ----- assets -----

    async def get_asset(self, asset_id: str) -> dict:
        async def load() -> dict:
            return await self.assets.get(asset_id)

        return await self.cache.read(ASSET_TIER, ("asset", asset_id), load)

    async def update_asset(self, asset_id: str, fields: dict[str, Any]) -> dict:
        key = ("asset", asset_id)
        current = self.cache.get(ASSET_TIER, key) or {"id": asset_id}
        return await self.mutator.mutate(
            key,
            {**current, **fields},
            lambda: self.assets.update(asset_id, fields),
            user_message="Could not update the asset. Your change was not saved.",
        )
