import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Generic, Hashable, TypeVar

import redis
from cachetools import TTLCache

from .config import settings
from .metrics import CACHE_LOOKUPS

log = logging.getLogger(__name__)

T = TypeVar("T")

MINUTE = 60.0
HOUR = 60 * MINUTE

# fetched_at for invalidated entries; stale under every tier
STALE = float("-inf")


class Tier(str, Enum):
    STATIC = "static"
    SEMI_STATIC = "semi-static"
    DYNAMIC = "dynamic"
    REALTIME = "realtime"
    PRICING = "pricing"


@dataclass(frozen=True)
class TierPolicy:
    stale_after: float          # seconds before a re-read hits the loader
    retention: float            # seconds before the entry is dropped entirely
    refresh_interval: float | None = None


# Valuation only changes on asset creation or manual refresh, so the pricing
# tier caches longer than semi-static and never refreshes on a timer.
TIERS = MappingProxyType({
    Tier.STATIC: TierPolicy(stale_after=30 * MINUTE, retention=2 * HOUR),
    Tier.SEMI_STATIC: TierPolicy(stale_after=10 * MINUTE, retention=30 * MINUTE),
    Tier.DYNAMIC: TierPolicy(stale_after=1 * MINUTE, retention=10 * MINUTE),
    Tier.REALTIME: TierPolicy(stale_after=0.0, retention=5 * MINUTE, refresh_interval=30.0),
    Tier.PRICING: TierPolicy(stale_after=15 * MINUTE, retention=1 * HOUR),
})


@dataclass
class CacheEntry(Generic[T]):
    data: T
    fetched_at: float
    tier: Tier


Loader = Callable[[], Awaitable[Any]]


class TieredCache:
    """
    Per-tier TTL stores with staleness checks and request coalescing.

    One live entry per (tier, key). Concurrent reads of a stale or missing key
    share a single in-flight loader task. An optional Redis client mirrors
    entries as JSON so several workers can share warm pricing data; values
    written through it must therefore be JSON-serializable.
    """

    def __init__(self, maxsize: int = 4096, clock: Callable[[], float] = time.time, backend=None):
        self._clock = clock
        self._stores = {
            tier: TTLCache(maxsize=maxsize, ttl=policy.retention, timer=clock)
            for tier, policy in TIERS.items()
        }
        self._inflight: dict[tuple[Tier, Hashable], asyncio.Task] = {}
        self._held: set[tuple[Tier, Hashable]] = set()
        self.backend = backend

    # ----- plain access -----

    def peek(self, tier: Tier, key: Hashable) -> CacheEntry | None:
        entry = self._stores[tier].get(key)
        if entry is None and self.backend is not None:
            entry = self._backend_get(tier, key)
            if entry is not None:
                self._stores[tier][key] = entry
        return entry

    def get(self, tier: Tier, key: Hashable) -> Any | None:
        entry = self.peek(tier, key)
        return entry.data if entry else None

    def set(self, tier: Tier, key: Hashable, data: Any) -> CacheEntry:
        entry = CacheEntry(data=data, fetched_at=self._clock(), tier=tier)
        self._stores[tier][key] = entry
        if self.backend is not None:
            self._backend_set(tier, key, entry)
        return entry

    def restore(self, tier: Tier, key: Hashable, entry: CacheEntry | None) -> None:
        """Put back a previously peeked entry verbatim (or drop the key if there was none)."""
        if entry is None:
            self._drop(tier, key)
            return
        self._stores[tier][key] = entry
        if self.backend is not None:
            self._backend_set(tier, key, entry)

    def is_stale(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.fetched_at >= TIERS[entry.tier].stale_after

    def invalidate(self, tier: Tier, key: Hashable) -> None:
        """
        Mark the entry stale so the next `read` goes to the loader. The data
        stays visible to `get`/`peek` until then.
        """
        self.cancel_inflight(tier, key)
        entry = self.peek(tier, key)
        if entry is not None:
            self.restore(tier, key, CacheEntry(data=entry.data, fetched_at=STALE, tier=tier))
        log.debug("cache invalidated", extra={"tier": tier.value, "key": str(key)})

    def evict(self, tier: Tier, key: Hashable) -> None:
        """Destroy the entry outright."""
        self.cancel_inflight(tier, key)
        self._drop(tier, key)

    def cancel_inflight(self, tier: Tier, key: Hashable) -> bool:
        task = self._inflight.pop((tier, key), None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def hold(self, tier: Tier, key: Hashable) -> None:
        """Serve the current entry as-is and skip loaders until `release`."""
        self._held.add((tier, key))

    def release(self, tier: Tier, key: Hashable) -> None:
        self._held.discard((tier, key))

    def refresh_interval(self, tier: Tier) -> float | None:
        return TIERS[tier].refresh_interval

    # ----- read-through -----

    async def read(self, tier: Tier, key: Hashable, loader: Loader) -> Any:
        entry = self.peek(tier, key)
        if entry is not None and ((tier, key) in self._held or not self.is_stale(entry)):
            CACHE_LOOKUPS.labels(tier=tier.value, result="hit").inc()
            return entry.data
        CACHE_LOOKUPS.labels(tier=tier.value, result="miss").inc()

        task = self._inflight.get((tier, key))
        if task is None:
            task = asyncio.ensure_future(self._load(tier, key, loader))
            self._inflight[(tier, key)] = task
            task.add_done_callback(lambda t, k=(tier, key): self._forget(k, t))

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            # Loader was cancelled by a writer; serve whatever the writer left.
            return self.get(tier, key)

    async def auto_refresh(self, tier: Tier, key: Hashable, loader: Loader,
                           sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        """Re-read on the tier's refresh interval until cancelled."""
        interval = TIERS[tier].refresh_interval
        if interval is None:
            raise ValueError(f"tier {tier.value} does not auto-refresh")
        while True:
            try:
                await self.read(tier, key, loader)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.warning("scheduled refresh failed", exc_info=True,
                            extra={"tier": tier.value, "key": str(key)})
            await sleep(interval)

    async def _load(self, tier: Tier, key: Hashable, loader: Loader) -> Any:
        data = await loader()
        self.set(tier, key, data)
        return data

    def _forget(self, k: tuple[Tier, Hashable], task: asyncio.Task) -> None:
        if self._inflight.get(k) is task:
            del self._inflight[k]

    def _drop(self, tier: Tier, key: Hashable) -> None:
        self._stores[tier].pop(key, None)
        if self.backend is not None:
            self.backend.delete(self._backend_key(tier, key))

    # ----- redis mirror -----

    @staticmethod
    def _backend_key(tier: Tier, key: Hashable) -> str:
        return f"cache:{tier.value}:{key}"

    def _backend_get(self, tier: Tier, key: Hashable) -> CacheEntry | None:
        raw = self.backend.get(self._backend_key(tier, key))
        if not raw:
            return None
        try:
            stored = json.loads(raw)
            return CacheEntry(data=stored["data"], fetched_at=float(stored["fetched_at"]), tier=tier)
        except (ValueError, KeyError, TypeError):
            log.warning("discarding unreadable cache entry", extra={"tier": tier.value, "key": str(key)})
            return None

    def _backend_set(self, tier: Tier, key: Hashable, entry: CacheEntry) -> None:
        payload = json.dumps({"data": entry.data, "fetched_at": entry.fetched_at}, separators=(",", ":"))
        self.backend.setex(self._backend_key(tier, key), int(TIERS[tier].retention), payload)


def _backend():
    if settings.USE_REDIS:
        return redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return None

cache = TieredCache(maxsize=settings.CACHE_MAXSIZE, backend=_backend())
