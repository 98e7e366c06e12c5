from typing import Any
from pydantic import BaseModel, ConfigDict, Field, model_validator
from .core.config import settings

class Range(BaseModel):
    low: float
    high: float

class LastSold(BaseModel):
    date: str
    price: float

class Confidence(BaseModel):
    rating: str
    score: int = Field(ge=0, le=100)
    factors: list[str]

class Liquidity(BaseModel):
    tag: str
    level: int = Field(ge=0, le=5)
    percent: int
    exit_time: str
    label: str

class HistoryPoint(BaseModel):
    date: str
    price: float
    timestamp: int

class MarketSnapshotResponse(BaseModel):
    asset_id: str
    currency: str = "USD"
    value: float
    range: Range
    last_sold: LastSold | None = None
    confidence: Confidence
    liquidity: Liquidity
    sales_count: int
    thirty_day_sales_count: int
    pricing_period: str
    history: list[HistoryPoint] | None = None
    cached: bool = False
    etag: str | None = None

class BatchSnapshotRequest(BaseModel):
    asset_ids: list[str] = Field(min_length=1)
    include_history: bool = False
    history_points: int = Field(default=settings.HISTORY_DEFAULT_POINTS, ge=1, le=settings.HISTORY_MAX_POINTS)

class BatchSnapshotResponse(BaseModel):
    snapshots: dict[str, MarketSnapshotResponse]

class TrendPoint(BaseModel):
    date: str
    price: float
    timestamp: int

class TrendResponse(BaseModel):
    points: list[TrendPoint]
    is_using_all_time: bool
    tried_fallback: bool = False
    poll_state: str

class AssetPatch(BaseModel):
    """Writable asset fields; unknown keys are passed through to the store."""
    model_config = ConfigDict(extra="allow")

    purchasePrice: float | None = None
    listPrice: float | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _not_empty(self):
        if not self.fields():
            raise ValueError("at least one field is required")
        return self

    def fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)
