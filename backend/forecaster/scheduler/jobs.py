from __future__ import annotations

from typing import Any, Dict

import structlog

from forecaster.config import get_settings
from forecaster.db import session as db_session
from forecaster.deps import get_market_source, get_model_clients
from forecaster.services.forecast_cycle import create_scheduled_forecast
from forecaster.services.settlement import settle_expired_windows

logger = structlog.get_logger(__name__)


async def hourly_forecast() -> Dict[str, Any]:
    """Create the forecast for the current UTC hour bucket (no-op when it exists)."""
    db = db_session.SessionLocal()
    try:
        return await create_scheduled_forecast(
            db, get_market_source(), get_model_clients(), get_settings()
        )
    finally:
        db.close()


async def settlement_scan() -> Dict[str, int]:
    """Settle every window whose horizon has elapsed."""
    db = db_session.SessionLocal()
    try:
        return await settle_expired_windows(db, get_market_source())
    finally:
        db.close()
