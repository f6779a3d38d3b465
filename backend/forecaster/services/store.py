"""
Persistence for forecasts and settlements.

All writes that carry an idempotency key go through `insert_if_absent`, an
`INSERT ... ON CONFLICT DO NOTHING` against the table's unique constraint, so
concurrent writers for the same key never produce duplicates or errors.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import desc, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from forecaster.core.types import (
    ConsensusForecast,
    DataHealth,
    MarketSnapshot,
    ModelResult,
)
from forecaster.core.windows import WINDOWS, as_utc
from forecaster.models.forecast import Forecast, ForecastWindow, ModelRun, ModelWindowPrediction
from forecaster.models.market_snapshot import MarketSnapshotRecord
from forecaster.models.settlement import Settlement


def insert_if_absent(db: Session, model: Any, values: Dict[str, Any]) -> bool:
    """Insert one row unless a unique key already exists. Returns True when inserted."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values).on_conflict_do_nothing()
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values).on_conflict_do_nothing()
    else:
        raise NotImplementedError(f"insert_if_absent does not support dialect {dialect!r}")
    result = db.execute(stmt)
    return result.rowcount == 1


def forecast_exists(db: Session, forecast_id: str) -> bool:
    return db.execute(select(Forecast.id).where(Forecast.id == forecast_id)).first() is not None


def save_forecast(
    db: Session,
    forecast_id: str,
    created_at: datetime,
    snapshot: MarketSnapshot,
    health: DataHealth,
    consensus: Optional[ConsensusForecast],
    results: Sequence[ModelResult],
) -> bool:
    """
    Persist a scheduled forecast with its windows, model runs and snapshot.

    Returns False without writing anything when the bucket is already taken.
    A halted forecast is stored with no windows and zero consensus.
    """
    inserted = insert_if_absent(
        db,
        Forecast,
        {
            "id": forecast_id,
            "created_at": created_at,
            "reference_price": snapshot.price,
            "data_health_grade": health.grade,
            "data_health_reason": health.reason,
            "consensus_strength": consensus.metrics.consensus_strength if consensus else 0,
            "divergence_summary": list(consensus.metrics.divergence_summary) if consensus else [],
        },
    )
    if not inserted:
        db.rollback()
        return False

    if consensus is not None:
        for window in WINDOWS:
            agg = consensus.windows[window]
            payload = agg.to_dict()
            db.add(ForecastWindow(forecast_id=forecast_id, window=window, **payload))

    for result in results:
        db.add(
            ModelRun(
                forecast_id=forecast_id,
                model_name=result.model_name,
                success=result.success,
                error_reason=result.error_reason,
                reasoning=result.prediction.reasoning if result.prediction else None,
                raw_text=result.raw_text,
            )
        )
        if not result.success or result.prediction is None:
            continue
        for window in WINDOWS:
            pred = result.prediction.windows[window]
            db.add(
                ModelWindowPrediction(
                    forecast_id=forecast_id,
                    model_name=result.model_name,
                    window=window,
                    prob_up=pred.prob_up,
                    prob_down=pred.prob_down,
                    prob_flat=pred.prob_flat,
                    prob_move_1pct=pred.prob_move_1pct,
                    prob_move_2pct=pred.prob_move_2pct,
                    expected_range_pct=pred.expected_range_pct,
                    confidence=pred.confidence,
                    main_conclusion=pred.main_conclusion,
                )
            )

    db.add(
        MarketSnapshotRecord(
            forecast_id=forecast_id,
            price=snapshot.price,
            price_change_1h=snapshot.price_change_1h,
            price_change_24h=snapshot.price_change_24h,
            volume_24h=snapshot.volume_24h,
            funding_rate=snapshot.funding_rate,
            open_interest=snapshot.open_interest,
            order_book_imbalance=snapshot.order_book_imbalance,
            realized_vol=snapshot.realized_vol_24h,
            fear_greed=snapshot.fear_greed_value,
            snapshot_time=snapshot.timestamp,
        )
    )
    db.commit()
    return True


# ------------------------------- readers ------------------------------------


def _window_out(w: ForecastWindow) -> Dict[str, Any]:
    return {
        "prob_up": w.prob_up,
        "prob_down": w.prob_down,
        "prob_flat": w.prob_flat,
        "prob_move_1pct": w.prob_move_1pct,
        "prob_move_2pct": w.prob_move_2pct,
        "expected_range_pct": w.expected_range_pct,
        "confidence": w.confidence,
        "main_conclusion": w.main_conclusion,
        "top_factors": list(w.top_factors or []),
        "invalidation_conditions": list(w.invalidation_conditions or []),
    }


def _model_outputs(forecast: Forecast) -> List[Dict[str, Any]]:
    by_model: Dict[str, Dict[str, Any]] = {}
    for run in forecast.model_runs:
        by_model[run.model_name] = {
            "name": run.model_name,
            "success": run.success,
            "error_reason": run.error_reason,
            "reasoning": run.reasoning,
            "windows": {},
        }
    for pred in forecast.model_predictions:
        entry = by_model.setdefault(
            pred.model_name,
            {"name": pred.model_name, "success": True, "error_reason": None, "reasoning": None, "windows": {}},
        )
        entry["windows"][pred.window] = {
            "prob_up": pred.prob_up,
            "prob_down": pred.prob_down,
            "prob_flat": pred.prob_flat,
            "confidence": pred.confidence,
        }
    return list(by_model.values())


def _settlements_out(db: Session, forecast_id: str) -> Dict[str, Dict[str, Any]]:
    rows = db.execute(select(Settlement).where(Settlement.forecast_id == forecast_id)).scalars().all()
    return {
        s.window: {
            "actual_return_pct": s.actual_return_pct,
            "actual_direction": s.actual_direction,
            "predicted_direction": s.predicted_direction,
            "is_hit": bool(s.is_hit),
            "settled_at": as_utc(s.settled_at).isoformat(),
            "start_price": s.start_price,
            "end_price": s.end_price,
        }
        for s in rows
    }


def _snapshot_out(db: Session, forecast_id: str) -> Optional[Dict[str, Any]]:
    snap = db.execute(
        select(MarketSnapshotRecord).where(MarketSnapshotRecord.forecast_id == forecast_id)
    ).scalars().first()
    if snap is None:
        return None
    return {
        "price": snap.price,
        "price_change_1h": snap.price_change_1h,
        "price_change_24h": snap.price_change_24h,
        "volume_24h": snap.volume_24h,
        "funding_rate": snap.funding_rate,
        "open_interest": snap.open_interest,
        "order_book_imbalance": snap.order_book_imbalance,
        "realized_vol": snap.realized_vol,
        "fear_greed": snap.fear_greed,
        "snapshot_time": snap.snapshot_time,
    }


def get_forecast(db: Session, forecast_id: str) -> Optional[Dict[str, Any]]:
    forecast = db.get(Forecast, forecast_id)
    if forecast is None:
        return None
    return {
        "id": forecast.id,
        "created_at": as_utc(forecast.created_at).isoformat(),
        "reference_price": forecast.reference_price,
        "data_health": {
            "grade": forecast.data_health_grade,
            "reason": forecast.data_health_reason,
        },
        "consensus_strength": forecast.consensus_strength,
        "divergence_summary": list(forecast.divergence_summary or []),
        "windows": {w.window: _window_out(w) for w in forecast.windows},
        "model_outputs": _model_outputs(forecast),
        "settlements": _settlements_out(db, forecast.id),
        "market_snapshot": _snapshot_out(db, forecast.id),
    }


def get_latest_forecast(db: Session) -> Optional[Dict[str, Any]]:
    latest_id = db.execute(
        select(Forecast.id).order_by(desc(Forecast.created_at)).limit(1)
    ).scalar()
    if latest_id is None:
        return None
    return get_forecast(db, latest_id)


def get_forecast_history(db: Session, limit: int = 24, offset: int = 0) -> Dict[str, Any]:
    rows = db.execute(
        select(Forecast).order_by(desc(Forecast.created_at)).limit(limit).offset(offset)
    ).scalars().all()
    total = db.execute(select(func.count()).select_from(Forecast)).scalar() or 0
    return {
        "forecasts": [
            {
                "id": f.id,
                "created_at": as_utc(f.created_at).isoformat(),
                "reference_price": f.reference_price,
                "data_health_grade": f.data_health_grade,
                "consensus_strength": f.consensus_strength,
            }
            for f in rows
        ],
        "total": int(total),
    }
