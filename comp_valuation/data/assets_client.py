from typing import Any, Dict
from .base import AssetsClient
from ..core.config import settings
import httpx

class MockAssets(AssetsClient):
    """
    In-memory asset store. Rejects negative prices so the rollback path can be
    exercised without a real backend.
    """
    def __init__(self):
        self.rows: Dict[str, Dict[str, Any]] = {}

    async def get(self, asset_id: str) -> Dict[str, Any]:
        return dict(self.rows.get(asset_id, {"id": asset_id}))

    async def update(self, asset_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        for name in ("purchasePrice", "listPrice"):
            value = fields.get(name)
            if value is not None and float(value) < 0:
                raise ValueError(f"{name} must not be negative")
        row = {**self.rows.get(asset_id, {"id": asset_id}), **fields}
        self.rows[asset_id] = row
        return dict(row)

class HttpAssets(AssetsClient):
    """
    Client for the inventory service that owns asset rows.
    """
    def __init__(self, base_url: str, timeout: float = 15):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def get(self, asset_id: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.get(f"{self.base_url}/assets/{asset_id}")
            r.raise_for_status()
            return r.json()

    async def update(self, asset_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.patch(f"{self.base_url}/assets/{asset_id}", json=fields)
            r.raise_for_status()
            return r.json()

def assets_client() -> AssetsClient:
    if settings.ASSETS_PROVIDER == "http" and settings.ASSETS_BASE_URL:
        return HttpAssets(settings.ASSETS_BASE_URL, timeout=settings.HTTP_TIMEOUT_SECONDS)
    return MockAssets()
