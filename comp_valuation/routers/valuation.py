from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from ..schemas import (
    AssetPatch, BatchSnapshotRequest, BatchSnapshotResponse, Liquidity, MarketSnapshotResponse, TrendResponse,
)
from ..services.valuation_service import ValuationService
from ..core.config import settings
from ..core.errors import MutationError, MutationInFlightError
from ..data.base import AssetIdentity
from ..pricing.liquidity import classify

router = APIRouter()

def service_dep(request: Request) -> ValuationService:
    # Built once in create_app; poll and mutation state must outlive a request.
    return request.app.state.valuation

def _snapshot_response(payload: dict, from_cache: bool, etag: str,
                       response: Response, if_none_match: str | None):
    if if_none_match and if_none_match == etag:
        return Response(status_code=304, headers={"ETag": etag})
    response.headers["ETag"] = etag
    return {**payload, "cached": from_cache, "etag": etag}

def _history_points(include_history: bool, history_points: int) -> int | None:
    return history_points if include_history else None

@router.get("/pricing/{asset_id}", response_model=MarketSnapshotResponse)
async def get_pricing(
    asset_id: str,
    response: Response,
    include_history: bool = Query(default=False),
    history_points: int = Query(default=settings.HISTORY_DEFAULT_POINTS, ge=1, le=settings.HISTORY_MAX_POINTS),
    if_none_match: str | None = Header(default=None, alias="If-None-Match"),
    svc: ValuationService = Depends(service_dep),
):
    payload, from_cache, etag = await svc.market_snapshot(
        asset_id, _history_points(include_history, history_points),
    )
    return _snapshot_response(payload, from_cache, etag, response, if_none_match)

@router.post("/pricing/batch", response_model=BatchSnapshotResponse)
async def batch_pricing(body: BatchSnapshotRequest, svc: ValuationService = Depends(service_dep)):
    if len(body.asset_ids) > settings.BATCH_MAX_IDS:
        raise HTTPException(
            status_code=400,
            detail=f"Maximum {settings.BATCH_MAX_IDS} asset IDs allowed per batch request",
        )
    results = await svc.market_snapshots(
        body.asset_ids, _history_points(body.include_history, body.history_points),
    )
    return {
        "snapshots": {
            asset_id: {**payload, "cached": from_cache, "etag": etag}
            for asset_id, (payload, from_cache, etag) in results.items()
        }
    }

@router.post("/pricing/{asset_id}/refresh", response_model=MarketSnapshotResponse)
async def refresh_pricing(
    asset_id: str,
    response: Response,
    fallback_id: str | None = Query(default=None),
    include_history: bool = Query(default=False),
    history_points: int = Query(default=settings.HISTORY_DEFAULT_POINTS, ge=1, le=settings.HISTORY_MAX_POINTS),
    svc: ValuationService = Depends(service_dep),
):
    svc.refresh_trend(AssetIdentity(asset_id, fallback_id))
    payload, from_cache, etag = await svc.refresh_snapshot(
        asset_id, _history_points(include_history, history_points),
    )
    return _snapshot_response(payload, from_cache, etag, response, None)

@router.get("/trend/{asset_id}", response_model=TrendResponse)
async def get_trend(
    asset_id: str,
    fallback_id: str | None = Query(default=None),
    consumer: str | None = Header(default=None, alias="X-Consumer-Id"),
    svc: ValuationService = Depends(service_dep),
):
    return await svc.trend(AssetIdentity(asset_id, fallback_id), consumer=consumer)

@router.delete("/trend/watchers/{consumer_id}")
async def unwatch_trend(consumer_id: str, svc: ValuationService = Depends(service_dep)):
    # Sent when a view closes; its subject keeps polling if others watch it.
    return {"stopped": svc.unwatch_trend(consumer_id)}

@router.get("/liquidity/{tag}", response_model=Liquidity)
async def get_liquidity(tag: str):
    info = classify(tag)
    return {
        "tag": info.tag.value,
        "level": info.level,
        "percent": info.percent,
        "exit_time": info.exit_time,
        "label": info.label,
    }

@router.get("/assets/{asset_id}")
async def get_asset(asset_id: str, svc: ValuationService = Depends(service_dep)):
    return await svc.get_asset(asset_id)

@router.patch("/assets/{asset_id}")
async def patch_asset(
    asset_id: str,
    body: AssetPatch,
    svc: ValuationService = Depends(service_dep),
):
    try:
        return await svc.update_asset(asset_id, body.fields())
    except MutationInFlightError:
        raise HTTPException(status_code=409, detail="Another update to this asset is still in progress.")
    except MutationError as exc:
        raise HTTPException(status_code=502, detail=exc.user_message)
