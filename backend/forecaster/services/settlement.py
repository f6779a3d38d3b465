from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

import httpx
import structlog
from sqlalchemy import and_, exists, or_, select
from sqlalchemy.orm import Session

from forecaster.core.windows import (
    HEALTH_HALTED,
    WINDOWS,
    as_utc,
    predicted_direction,
    realized_direction,
    utc_now,
    window_expiry,
)
from forecaster.models.forecast import Forecast, ForecastWindow, ModelWindowPrediction
from forecaster.models.settlement import ModelSettlement, Settlement
from forecaster.observability.instrument import log_job
from forecaster.observability.metrics import SETTLEMENTS
from forecaster.services.market_data import MarketDataError, MarketSource
from forecaster.services.store import insert_if_absent

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Outcome:
    return_pct: float
    actual: str
    predicted: str
    is_hit: bool


def evaluate(start_price: float, end_price: float, prob_up: float, prob_down: float) -> Outcome:
    """Compare a predicted distribution with the realized move between two prices."""
    return_pct = (end_price - start_price) / start_price * 100
    actual = realized_direction(return_pct)
    predicted = predicted_direction(prob_up, prob_down)
    return Outcome(return_pct=return_pct, actual=actual, predicted=predicted, is_hit=actual == predicted)


def _settled_keys(db: Session, forecast_id: str) -> Tuple[Set[str], Set[Tuple[str, str]]]:
    consensus = set(
        db.execute(select(Settlement.window).where(Settlement.forecast_id == forecast_id)).scalars()
    )
    per_model = {
        (row.window, row.model_name)
        for row in db.execute(
            select(ModelSettlement.window, ModelSettlement.model_name).where(
                ModelSettlement.forecast_id == forecast_id
            )
        )
    }
    return consensus, per_model


def pending_windows(db: Session, forecast: Forecast) -> List[str]:
    """Windows where the consensus or any model still lacks a settlement."""
    consensus_done, model_done = _settled_keys(db, forecast.id)
    predicted = {(p.window, p.model_name) for p in forecast.model_predictions}
    pending = []
    for window in WINDOWS:
        if window not in {w.window for w in forecast.windows}:
            continue
        if window not in consensus_done:
            pending.append(window)
            continue
        if any((w, m) not in model_done for (w, m) in predicted if w == window):
            pending.append(window)
    return pending


def unsettled_forecasts(db: Session) -> List[Forecast]:
    """Non-halted forecasts that still have a consensus or model window without a settlement row."""
    open_consensus = exists().where(
        ForecastWindow.forecast_id == Forecast.id,
        ~exists().where(
            and_(
                Settlement.forecast_id == ForecastWindow.forecast_id,
                Settlement.window == ForecastWindow.window,
            )
        ),
    )
    open_model = exists().where(
        ModelWindowPrediction.forecast_id == Forecast.id,
        ~exists().where(
            and_(
                ModelSettlement.forecast_id == ModelWindowPrediction.forecast_id,
                ModelSettlement.model_name == ModelWindowPrediction.model_name,
                ModelSettlement.window == ModelWindowPrediction.window,
            )
        ),
    )
    return list(
        db.execute(
            select(Forecast)
            .where(Forecast.data_health_grade != HEALTH_HALTED, or_(open_consensus, open_model))
            .order_by(Forecast.created_at)
        ).scalars()
    )


def _settle_window(
    db: Session,
    forecast: Forecast,
    window: ForecastWindow,
    predictions: List[ModelWindowPrediction],
    end_price: float,
    now: datetime,
) -> Dict[str, int]:
    counts = {"consensus": 0, "model": 0}
    start_price = forecast.reference_price
    outcome = evaluate(start_price, end_price, window.prob_up, window.prob_down)
    if insert_if_absent(
        db,
        Settlement,
        {
            "forecast_id": forecast.id,
            "window": window.window,
            "actual_return_pct": outcome.return_pct,
            "actual_direction": outcome.actual,
            "predicted_direction": outcome.predicted,
            "is_hit": outcome.is_hit,
            "settled_at": now,
            "start_price": start_price,
            "end_price": end_price,
        },
    ):
        counts["consensus"] += 1
        SETTLEMENTS.labels(kind="consensus").inc()
        logger.info(
            "settlement.window_settled",
            forecast_id=forecast.id,
            window=window.window,
            actual=outcome.actual,
            predicted=outcome.predicted,
            return_pct=round(outcome.return_pct, 4),
            hit=outcome.is_hit,
        )

    for pred in predictions:
        model_outcome = evaluate(start_price, end_price, pred.prob_up, pred.prob_down)
        if insert_if_absent(
            db,
            ModelSettlement,
            {
                "forecast_id": forecast.id,
                "window": window.window,
                "model_name": pred.model_name,
                "actual_return_pct": model_outcome.return_pct,
                "actual_direction": model_outcome.actual,
                "predicted_direction": model_outcome.predicted,
                "confidence": pred.confidence,
                "is_hit": model_outcome.is_hit,
                "settled_at": now,
                "start_price": start_price,
                "end_price": end_price,
            },
        ):
            counts["model"] += 1
            SETTLEMENTS.labels(kind="model").inc()
    return counts


@log_job("settlement.scan")
async def settle_expired_windows(
    db: Session, market: MarketSource, *, now: Optional[datetime] = None
) -> Dict[str, int]:
    """
    Settle every expired, still-pending window of every non-halted forecast.

    Safe to run concurrently with itself: each row is written with an
    insert-if-absent on its unique key. A failed price lookup leaves the
    window pending for the next pass.
    """
    now = as_utc(now) if now is not None else utc_now()
    summary = {"consensus": 0, "model": 0, "deferred": 0, "failed": 0}

    for forecast in unsettled_forecasts(db):
        by_window = {w.window: w for w in forecast.windows}
        for window_name in pending_windows(db, forecast):
            expiry = window_expiry(forecast.created_at, window_name)
            if now <= expiry:
                summary["deferred"] += 1
                continue
            try:
                end_price = await market.get_price_at(expiry)
            except (MarketDataError, httpx.HTTPError) as exc:
                summary["failed"] += 1
                logger.warning(
                    "settlement.price_unavailable",
                    forecast_id=forecast.id,
                    window=window_name,
                    error=str(exc),
                )
                continue

            predictions = [p for p in forecast.model_predictions if p.window == window_name]
            counts = _settle_window(db, forecast, by_window[window_name], predictions, end_price, now)
            db.commit()
            summary["consensus"] += counts["consensus"]
            summary["model"] += counts["model"]

    return summary
