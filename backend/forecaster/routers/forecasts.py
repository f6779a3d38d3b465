from __future__ import annotations
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from forecaster.config import get_settings
from forecaster.db.session import get_db
from forecaster.deps import get_market_source, get_model_clients
from forecaster.schemas.common import ok, fail, meta_now
from forecaster.schemas.forecast import ForecastHistoryOut, ForecastOut
from forecaster.services.forecast_cycle import generate_on_demand_forecast
from forecaster.services.market_data import MarketSource
from forecaster.services.model_clients import ModelClient
from forecaster.services.store import get_forecast, get_forecast_history, get_latest_forecast

router = APIRouter(prefix="/api/forecasts", tags=["forecasts"])


@router.get("")
def list_forecasts(
    limit: int = Query(24, ge=1, le=200, description="Page size"),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Newest-first forecast summaries; an empty store is an empty page, not an error."""
    page = get_forecast_history(db, limit=limit, offset=offset)
    out = ForecastHistoryOut(forecasts=page["forecasts"], total=page["total"], limit=limit, offset=offset)
    return ok(data=out.model_dump(), meta=meta_now(limit=limit, offset=offset))


@router.get("/latest")
def latest_forecast(db: Session = Depends(get_db)):
    forecast = get_latest_forecast(db)
    if forecast is None:
        return fail(code="NOT_FOUND", message="No forecasts yet", status_code=404)
    return ok(data=ForecastOut.model_validate(forecast).model_dump(), meta=meta_now())


@router.post("/generate")
async def generate_forecast(
    market: MarketSource = Depends(get_market_source),
    clients: List[ModelClient] = Depends(get_model_clients),
):
    """
    Run a forecast cycle on demand and return it without persisting.

    A halted or degraded market is reported in `status`, never raised.
    """
    settings = get_settings()
    result = await generate_on_demand_forecast(market, clients, settings)
    return ok(data=result, meta=meta_now(symbol=settings.SYMBOL))


@router.get("/{forecast_id}")
def forecast_by_id(forecast_id: str, db: Session = Depends(get_db)):
    forecast = get_forecast(db, forecast_id)
    if forecast is None:
        return fail(
            code="NOT_FOUND",
            message=f"Forecast not found: {forecast_id}",
            status_code=404,
            meta=meta_now(forecast_id=forecast_id),
        )
    return ok(data=ForecastOut.model_validate(forecast).model_dump(), meta=meta_now())
