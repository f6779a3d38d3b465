# forecaster/schemas/forecast.py
from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class TopFactorOut(BaseModel):
    name: str
    direction: str
    strength: float
    evidence: str = ""


class WindowOut(BaseModel):
    prob_up: float
    prob_down: float
    prob_flat: float
    prob_move_1pct: float
    prob_move_2pct: float
    expected_range_pct: float
    confidence: int
    main_conclusion: str = ""
    top_factors: List[TopFactorOut] = []
    invalidation_conditions: List[str] = []


class DataHealthOut(BaseModel):
    grade: str
    reason: Optional[str] = None


class ForecastSummaryOut(BaseModel):
    id: str
    created_at: str
    reference_price: float
    data_health_grade: str
    consensus_strength: int = Field(..., ge=0, le=100)


class ForecastHistoryOut(BaseModel):
    forecasts: List[ForecastSummaryOut]
    total: int
    limit: int
    offset: int


class ForecastOut(BaseModel):
    id: str
    created_at: str
    reference_price: float
    data_health: DataHealthOut
    consensus_strength: int = Field(..., ge=0, le=100)
    divergence_summary: List[str] = []
    windows: Dict[str, WindowOut] = {}
    model_outputs: List[dict] = []
    settlements: Dict[str, dict] = {}
    market_snapshot: Optional[dict] = None


class AccuracyRollupOut(BaseModel):
    total: int
    hits: int
    hit_rate: float
    avg_confidence: int


class ModelAccuracyOut(BaseModel):
    overall: AccuracyRollupOut
    windows: Dict[str, AccuracyRollupOut]


class StatsOut(BaseModel):
    period: str
    windows: Dict[str, AccuracyRollupOut]
    overall: AccuracyRollupOut
    total_forecasts: float
    models: Dict[str, ModelAccuracyOut] = {}


__all__ = [
    "TopFactorOut",
    "WindowOut",
    "DataHealthOut",
    "ForecastSummaryOut",
    "ForecastHistoryOut",
    "ForecastOut",
    "AccuracyRollupOut",
    "ModelAccuracyOut",
    "StatsOut",
]
