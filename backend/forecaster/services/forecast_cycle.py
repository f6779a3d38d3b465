"""
Forecast cycle: market snapshot -> prompt -> concurrent model calls -> consensus.

`create_scheduled_forecast` persists one forecast per UTC hour bucket;
`generate_on_demand_forecast` runs the same pipeline without touching storage.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from forecaster.config import Settings
from forecaster.core.types import ConsensusForecast, DataHealth, MarketSnapshot, ModelResult
from forecaster.core.windows import (
    HEALTH_HALTED,
    HEALTH_NORMAL,
    as_utc,
    forecast_bucket_id,
    utc_now,
)
from forecaster.observability.instrument import log_job
from forecaster.observability.metrics import FORECAST_CYCLES
from forecaster.services.aggregator import aggregate
from forecaster.services.market_data import MarketSource
from forecaster.services.model_clients import ModelClient, call_all_models
from forecaster.services.prompt import build_prediction_prompt
from forecaster.services.store import forecast_exists, save_forecast

logger = structlog.get_logger(__name__)


@dataclass
class CycleOutput:
    snapshot: MarketSnapshot
    health: DataHealth
    consensus: Optional[ConsensusForecast] = None
    results: List[ModelResult] = field(default_factory=list)

    @property
    def halted(self) -> bool:
        return self.health.grade == HEALTH_HALTED

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)


async def run_cycle(market: MarketSource, clients: Sequence[ModelClient], settings: Settings) -> CycleOutput:
    """One pass of the pipeline. A halted market skips the model calls entirely."""
    snapshot, health = await market.get_snapshot()
    if health.grade == HEALTH_HALTED:
        logger.warning("forecast.market_halted", reason=health.reason)
        return CycleOutput(snapshot=snapshot, health=health)

    prompt = build_prediction_prompt(snapshot, symbol=settings.SYMBOL)
    results = await call_all_models(clients, prompt, settings.MODEL_TIMEOUT_SECONDS)
    return CycleOutput(snapshot=snapshot, health=health, consensus=aggregate(results), results=results)


@log_job("forecast.scheduled")
async def create_scheduled_forecast(
    db: Session,
    market: MarketSource,
    clients: Sequence[ModelClient],
    settings: Settings,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    created_at = as_utc(now) if now is not None else utc_now()
    forecast_id = forecast_bucket_id(created_at)

    if forecast_exists(db, forecast_id):
        logger.info("forecast.exists", forecast_id=forecast_id)
        FORECAST_CYCLES.labels(status="exists").inc()
        return {"id": forecast_id, "status": "exists"}

    try:
        output = await asyncio.wait_for(
            run_cycle(market, clients, settings), timeout=settings.CYCLE_DEADLINE_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error(
            "forecast.deadline_exceeded",
            forecast_id=forecast_id,
            deadline_s=settings.CYCLE_DEADLINE_SECONDS,
        )
        FORECAST_CYCLES.labels(status="timed_out").inc()
        return {"id": forecast_id, "status": "timed_out"}

    saved = save_forecast(
        db,
        forecast_id,
        created_at,
        output.snapshot,
        output.health,
        output.consensus,
        output.results,
    )
    if not saved:
        # Another writer took the bucket while the models were running.
        FORECAST_CYCLES.labels(status="exists").inc()
        return {"id": forecast_id, "status": "exists"}

    if output.halted:
        FORECAST_CYCLES.labels(status="halted").inc()
        return {"id": forecast_id, "status": "halted", "reason": output.health.reason}

    FORECAST_CYCLES.labels(status="created").inc()
    logger.info(
        "forecast.cycle_completed",
        forecast_id=forecast_id,
        success_count=output.success_count,
        consensus_strength=output.consensus.metrics.consensus_strength if output.consensus else 0,
    )
    return {"id": forecast_id, "status": "created", "success_count": output.success_count}


def _model_outputs(results: Sequence[ModelResult]) -> List[Dict[str, Any]]:
    return [
        {
            "name": r.model_name,
            "windows": {name: w.to_dict() for name, w in r.prediction.windows.items()},
            "reasoning": r.prediction.reasoning,
        }
        for r in results
        if r.success and r.prediction is not None
    ]


async def generate_on_demand_forecast(
    market: MarketSource, clients: Sequence[ModelClient], settings: Settings
) -> Dict[str, Any]:
    """Run a cycle for display only; nothing is persisted or settled."""
    try:
        output = await asyncio.wait_for(
            run_cycle(market, clients, settings), timeout=settings.CYCLE_DEADLINE_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("forecast.on_demand_deadline_exceeded", deadline_s=settings.CYCLE_DEADLINE_SECONDS)
        return {
            "status": "timed_out",
            "reason": f"Forecast cycle exceeded {settings.CYCLE_DEADLINE_SECONDS}s deadline",
        }
    if output.halted or output.consensus is None:
        return {"status": "halted", "reason": output.health.reason}

    consensus = output.consensus
    return {
        "status": "success" if output.health.grade == HEALTH_NORMAL else "degraded",
        "success_count": output.success_count,
        "created_at": utc_now().isoformat(),
        "reference_price": output.snapshot.price,
        "data_health": {"grade": output.health.grade, "reason": output.health.reason},
        "consensus_strength": consensus.metrics.consensus_strength,
        "divergence_summary": list(consensus.metrics.divergence_summary),
        "windows": {name: w.to_dict() for name, w in consensus.windows.items()},
        "model_outputs": _model_outputs(output.results),
        "failures": [
            {"name": r.model_name, "error_reason": r.error_reason} for r in output.results if not r.success
        ],
    }
