from __future__ import annotations

from dataclasses import asdict
from typing import Tuple

import httpx
import structlog
from fastapi import APIRouter, Depends

from forecaster.config import get_settings
from forecaster.core.types import DataHealth, MarketSnapshot
from forecaster.core.windows import HEALTH_HALTED, utc_now
from forecaster.deps import get_snapshot_cache
from forecaster.schemas.common import ok, fail, meta_now
from forecaster.services.market_data import MarketDataError, SnapshotCache

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["market"])


@router.get("/market")
async def market_snapshot(
    cache: SnapshotCache[Tuple[MarketSnapshot, DataHealth]] = Depends(get_snapshot_cache),
):
    try:
        snapshot, health = await cache.get()
    except (MarketDataError, httpx.HTTPError) as exc:
        logger.warning("market.snapshot_failed", error=str(exc))
        return fail(code="MARKET_UNAVAILABLE", message="Failed to fetch market data", status_code=502)
    data = asdict(snapshot)
    data["recent_closes"] = list(snapshot.recent_closes)
    data["news_headlines"] = list(snapshot.news_headlines)
    return ok(
        data={"snapshot": data, "health": asdict(health), "timestamp": utc_now().isoformat()},
        meta=meta_now(symbol=get_settings().SYMBOL),
    )


@router.get("/data-health")
async def data_health(
    cache: SnapshotCache[Tuple[MarketSnapshot, DataHealth]] = Depends(get_snapshot_cache),
):
    """Health grade of the market feed; a failing check reports `halted` instead of erroring."""
    try:
        _, health = await cache.get()
        payload = asdict(health)
    except (MarketDataError, httpx.HTTPError) as exc:
        logger.warning("market.health_check_failed", error=str(exc))
        payload = {"grade": HEALTH_HALTED, "reason": f"Health check failed: {exc}"}
    payload["checked_at"] = utc_now().isoformat()
    return ok(data=payload, meta=meta_now())
