from typing import Any, Protocol
from dataclasses import dataclass

# ----- Data shapes (thin & explicit) -----

RawSale = dict[str, Any]

@dataclass(frozen=True)
class AssetIdentity:
    asset_id: str                     # the user's own asset
    fallback_id: str | None = None    # canonical/global variant of the same item

    @property
    def fallback(self) -> str | None:
        """Fallback id, unless it is missing or the same as the primary."""
        if self.fallback_id and self.fallback_id != self.asset_id:
            return self.fallback_id
        return None

# ----- Protocols (interfaces) -----

class CompsClient(Protocol):
    async def search(self, asset_id: str) -> list[RawSale]: ...

class AssetsClient(Protocol):
    async def get(self, asset_id: str) -> dict[str, Any]: ...
    async def update(self, asset_id: str, fields: dict[str, Any]) -> dict[str, Any]: ...
