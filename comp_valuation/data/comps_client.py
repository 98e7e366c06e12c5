from datetime import datetime, timedelta, timezone
from .base import CompsClient, RawSale
from ..core.utils import fnv1a_32, seeded_rand, normalize_asset_id
from ..core.config import settings
import httpx
from typing import Any, List

class MockComps(CompsClient):
    """
    Synthetic sale records for an asset id. Prices are plausible but fake, and
    records rotate through the field layouts real comp sources use so the
    normalizer sees every variant. Ids starting with "new-" return nothing,
    like an asset whose comps have not been indexed yet.
    """
    def __init__(self, limit: int = 12, max_age_days: int = 90):
        self.limit = limit
        self.max_age_days = max_age_days

    async def search(self, asset_id: str) -> List[RawSale]:
        key = normalize_asset_id(asset_id)
        if key.startswith("new-"):
            return []
        seed = fnv1a_32(key)
        now = datetime.now(timezone.utc)
        # Base price for the card, each sale lands within +/-15% of it
        base = 20 + seeded_rand(seed, 1)[0] * 480
        out: List[RawSale] = []
        for i in range(self.limit):
            age_days = seeded_rand(seed + i, 1)[0] * self.max_age_days
            sold_at = now - timedelta(days=age_days)
            price = round(base * (0.85 + seeded_rand(seed + 31 * i, 1)[0] * 0.3), 2)
            shipping = round(seeded_rand(seed + 7 * i, 1)[0] * 6, 2)
            relevance = round(0.6 + seeded_rand(seed + 13 * i, 1)[0] * 0.4, 2)
            layout = i % 3
            if layout == 0:
                # scraped marketplace listing
                out.append({
                    "sold_date": {"date": {"raw": sold_at.isoformat()}},
                    "sold_price": {"value": price},
                    "shipping": shipping,
                    "relevanceScore": relevance,
                })
            elif layout == 1:
                # saved sales history row
                out.append({
                    "sold_date": sold_at.strftime("%Y-%m-%d %H:%M:%S"),
                    "final_price": f"${price:,.2f}",
                    "shipping": str(shipping),
                    "relevanceScore": relevance,
                })
            else:
                # pricing API search result
                out.append({
                    "soldDate": sold_at.isoformat().replace("+00:00", "Z"),
                    "price": {"value": str(price)},
                    "relevanceScore": relevance,
                })
        return out

class HttpComps(CompsClient):
    """
    Client for the comp search service. Accepts a bare list or a list wrapped
    in `sales_history` / `sales`.
    """
    def __init__(self, base_url: str, timeout: float = 15):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def search(self, asset_id: str) -> List[RawSale]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.get(f"{self.base_url}/sales-comp/{asset_id}")
            r.raise_for_status()
            return unwrap_sales(r.json())

def unwrap_sales(payload: Any) -> List[RawSale]:
    if isinstance(payload, dict):
        payload = payload.get("sales_history") or payload.get("sales") or []
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]

def comps_client() -> CompsClient:
    """
    Factory picks mock or http based on env flags.
    """
    if settings.COMPS_PROVIDER == "http" and settings.COMPS_BASE_URL:
        return HttpComps(settings.COMPS_BASE_URL, timeout=settings.HTTP_TIMEOUT_SECONDS)
    return MockComps()
