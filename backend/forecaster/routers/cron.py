from __future__ import annotations

import secrets
from typing import List, Optional

from fastapi import APIRouter, Depends, Header
from fastapi import status as http
from sqlalchemy.orm import Session

from forecaster.config import get_settings
from forecaster.core.windows import utc_now
from forecaster.db.session import get_db
from forecaster.deps import get_market_source, get_model_clients
from forecaster.schemas.common import ok, fail, meta_now
from forecaster.services.forecast_cycle import create_scheduled_forecast
from forecaster.services.market_data import MarketSource
from forecaster.services.model_clients import ModelClient
from forecaster.services.settlement import settle_expired_windows

router = APIRouter(prefix="/api/cron", tags=["cron"])


def _authorized(authorization: Optional[str]) -> bool:
    secret = get_settings().CRON_SECRET
    if not secret:
        return True
    # compare_digest only accepts ASCII str, so compare raw bytes.
    provided = (authorization or "").encode("utf-8")
    return secrets.compare_digest(provided, f"Bearer {secret}".encode("utf-8"))


@router.api_route("", methods=["GET", "POST"])
async def run_cron(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    market: MarketSource = Depends(get_market_source),
    clients: List[ModelClient] = Depends(get_model_clients),
):
    """External trigger: settle expired windows first, then run the hourly cycle."""
    if not _authorized(authorization):
        return fail(code="UNAUTHORIZED", message="Invalid cron secret", status_code=http.HTTP_401_UNAUTHORIZED)

    settings = get_settings()
    settled = await settle_expired_windows(db, market)
    result = await create_scheduled_forecast(db, market, clients, settings)
    return ok(
        data={**result, "settled": settled, "timestamp": utc_now().isoformat()},
        meta=meta_now(symbol=settings.SYMBOL),
    )
