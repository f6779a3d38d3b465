"""Hit-rate rollups over settlement records, for the consensus and for each model."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from forecaster.core.windows import WINDOWS, as_utc, utc_now
from forecaster.models.forecast import ForecastWindow
from forecaster.models.settlement import ModelSettlement, Settlement
from forecaster.utils.numeric import round_half_up

# Used when a settled window has no stored consensus confidence.
DEFAULT_CONFIDENCE = 50

_COLUMNS = ["forecast_id", "window", "is_hit", "confidence", "settled_at", "model_name"]


@dataclass(frozen=True)
class SettlementRecord:
    forecast_id: str
    window: str
    is_hit: bool
    confidence: int
    settled_at: datetime
    model_name: Optional[str] = None


@dataclass(frozen=True)
class AccuracyRollup:
    total: int
    hits: int
    hit_rate: float
    avg_confidence: int

    @classmethod
    def from_counts(cls, total: int, hits: int, confidence_sum: int) -> "AccuracyRollup":
        if total == 0:
            return cls(total=0, hits=0, hit_rate=0.0, avg_confidence=0)
        return cls(
            total=total,
            hits=hits,
            hit_rate=hits / total,
            avg_confidence=round_half_up(confidence_sum / total),
        )


EMPTY = AccuracyRollup.from_counts(0, 0, 0)


def _frame(records: Iterable[SettlementRecord], trailing_days: int, now: datetime) -> pd.DataFrame:
    cutoff = as_utc(now) - timedelta(days=trailing_days)
    rows = [asdict(r) for r in records if as_utc(r.settled_at) >= cutoff]
    frame = pd.DataFrame(rows, columns=_COLUMNS)
    frame["is_hit"] = frame["is_hit"].astype(bool)
    return frame


def _rollups(frame: pd.DataFrame) -> Dict[str, AccuracyRollup]:
    """Per-window rollups; every window is present, empty ones as zeros."""
    out = {window: EMPTY for window in WINDOWS}
    if frame.empty:
        return out
    grouped = frame.groupby("window").agg(
        total=("is_hit", "size"),
        hits=("is_hit", "sum"),
        confidence_sum=("confidence", "sum"),
    )
    for window, row in grouped.iterrows():
        if window not in out:
            continue
        out[window] = AccuracyRollup.from_counts(
            int(row["total"]), int(row["hits"]), int(row["confidence_sum"])
        )
    return out


def _overall(frame: pd.DataFrame) -> AccuracyRollup:
    scoped = frame[frame["window"].isin(WINDOWS)]
    return AccuracyRollup.from_counts(
        int(len(scoped)), int(scoped["is_hit"].sum()), int(scoped["confidence"].sum())
    )


def consensus_accuracy(
    records: Iterable[SettlementRecord], trailing_days: int, now: Optional[datetime] = None
) -> Dict[str, Any]:
    frame = _frame(records, trailing_days, now or utc_now())
    return {
        "period": f"{trailing_days}d",
        "windows": {k: asdict(v) for k, v in _rollups(frame).items()},
        "overall": asdict(_overall(frame)),
        "total_forecasts": len(frame) / len(WINDOWS),
    }


def model_accuracy(
    records: Iterable[SettlementRecord], trailing_days: int, now: Optional[datetime] = None
) -> Dict[str, Any]:
    frame = _frame(records, trailing_days, now or utc_now())
    result: Dict[str, Any] = {}
    for model_name, group in frame.groupby("model_name", sort=True):
        result[str(model_name)] = {
            "overall": asdict(_overall(group)),
            "windows": {k: asdict(v) for k, v in _rollups(group).items()},
        }
    return {"period": f"{trailing_days}d", "models": result}


# ------------------------------ db loaders ----------------------------------


def load_consensus_records(db: Session) -> List[SettlementRecord]:
    """Consensus settlements with the confidence of the window they settled."""
    stmt = select(Settlement, ForecastWindow.confidence).outerjoin(
        ForecastWindow,
        (ForecastWindow.forecast_id == Settlement.forecast_id)
        & (ForecastWindow.window == Settlement.window),
    )
    return [
        SettlementRecord(
            forecast_id=s.forecast_id,
            window=s.window,
            is_hit=bool(s.is_hit),
            confidence=DEFAULT_CONFIDENCE if confidence is None else int(confidence),
            settled_at=s.settled_at,
        )
        for s, confidence in db.execute(stmt)
    ]


def load_model_records(db: Session) -> List[SettlementRecord]:
    rows = db.execute(select(ModelSettlement)).scalars().all()
    return [
        SettlementRecord(
            forecast_id=r.forecast_id,
            window=r.window,
            is_hit=bool(r.is_hit),
            confidence=int(r.confidence),
            settled_at=r.settled_at,
            model_name=r.model_name,
        )
        for r in rows
    ]


def accuracy_stats(db: Session, trailing_days: int = 7, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utc_now()
    consensus = consensus_accuracy(load_consensus_records(db), trailing_days, now)
    models = model_accuracy(load_model_records(db), trailing_days, now)
    return {**consensus, "models": models["models"]}
