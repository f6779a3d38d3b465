"""
Consensus aggregation over the per-model forecasts of one cycle.

Everything here is a pure function of the ModelResult list: the same input
always yields an identical ConsensusForecast.
"""
from __future__ import annotations

import math
import statistics
from collections import Counter
from typing import Dict, List, Sequence, Tuple

from forecaster.core.types import (
    ConsensusForecast,
    ConsensusMetrics,
    ModelResult,
    TopFactor,
    WindowPrediction,
)
from forecaster.core.windows import (
    DOWN,
    REPRESENTATIVE_WINDOW,
    UP,
    WINDOWS,
    predicted_direction,
)
from forecaster.utils.numeric import round_half_up

MAX_FACTORS = 5
MAX_INVALIDATIONS = 5
MAX_DIVERGENCE_ENTRIES = 3

# Std-dev of raw probability at which distribution consistency reaches zero.
STD_DEV_CEILING = 0.3
DIRECTION_WEIGHT = 0.6
DISTRIBUTION_WEIGHT = 0.4

CONFIDENCE_SPREAD_POINTS = 20
RANGE_RATIO = 1.5
RANGE_GAP_PCT = 0.5

HIGH_VOLATILITY_MOVE_2PCT = 0.4
MODERATE_VOLATILITY_MOVE_1PCT = 0.6

NEUTRAL_WINDOW = WindowPrediction(
    prob_up=0.33,
    prob_down=0.33,
    prob_flat=0.34,
    prob_move_1pct=0.5,
    prob_move_2pct=0.2,
    expected_range_pct=1.0,
    confidence=0,
    main_conclusion="insufficient data",
    top_factors=(),
    invalidation_conditions=(),
)

_DIRECTION_LABELS = {UP: "bullish", DOWN: "bearish"}


def successful(results: Sequence[ModelResult]) -> List[ModelResult]:
    return [r for r in results if r.success and r.prediction is not None]


def describe_outlook(prob_up: float, prob_down: float, prob_move_1pct: float, prob_move_2pct: float) -> str:
    direction = _DIRECTION_LABELS.get(predicted_direction(prob_up, prob_down), "ranging")
    if prob_move_2pct > HIGH_VOLATILITY_MOVE_2PCT:
        volatility = "high volatility"
    elif prob_move_1pct > MODERATE_VOLATILITY_MOVE_1PCT:
        volatility = "moderate volatility"
    else:
        volatility = "limited volatility"
    return f"{direction}, {volatility}"


def merge_factors(predictions: Sequence[WindowPrediction]) -> Tuple[TopFactor, ...]:
    merged: Dict[str, TopFactor] = {}
    for pred in predictions:
        for factor in pred.top_factors:
            existing = merged.get(factor.name)
            if existing is None:
                merged[factor.name] = factor
            elif factor.strength > existing.strength:
                merged[factor.name] = TopFactor(
                    name=existing.name,
                    direction=existing.direction,
                    strength=factor.strength,
                    evidence=existing.evidence,
                )
    ranked = sorted(merged.values(), key=lambda f: f.strength, reverse=True)
    return tuple(ranked[:MAX_FACTORS])


def merge_invalidations(predictions: Sequence[WindowPrediction]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for pred in predictions:
        for condition in pred.invalidation_conditions:
            seen.setdefault(condition, None)
    return tuple(list(seen)[:MAX_INVALIDATIONS])


def aggregate_window(predictions: Sequence[WindowPrediction]) -> WindowPrediction:
    if not predictions:
        return NEUTRAL_WINDOW

    prob_up = statistics.mean(p.prob_up for p in predictions)
    prob_down = statistics.mean(p.prob_down for p in predictions)
    prob_flat = statistics.mean(p.prob_flat for p in predictions)
    total = math.fsum((prob_up, prob_down, prob_flat))
    if total <= 0:
        prob_up, prob_down, prob_flat = NEUTRAL_WINDOW.prob_up, NEUTRAL_WINDOW.prob_down, NEUTRAL_WINDOW.prob_flat
    else:
        prob_up, prob_down, prob_flat = prob_up / total, prob_down / total, prob_flat / total

    prob_move_1pct = float(statistics.mean(p.prob_move_1pct for p in predictions))
    prob_move_2pct = float(statistics.mean(p.prob_move_2pct for p in predictions))
    expected_range_pct = float(statistics.mean(p.expected_range_pct for p in predictions))
    confidence = round_half_up(statistics.mean(p.confidence for p in predictions))

    return WindowPrediction(
        prob_up=float(prob_up),
        prob_down=float(prob_down),
        prob_flat=float(prob_flat),
        prob_move_1pct=prob_move_1pct,
        prob_move_2pct=prob_move_2pct,
        expected_range_pct=expected_range_pct,
        confidence=confidence,
        main_conclusion=describe_outlook(prob_up, prob_down, prob_move_1pct, prob_move_2pct),
        top_factors=merge_factors(predictions),
        invalidation_conditions=merge_invalidations(predictions),
    )


def consensus_strength(results: Sequence[ModelResult]) -> int:
    """0-100 agreement score; 0 when fewer than two models produced a forecast."""
    ok = successful(results)
    if len(ok) < 2:
        return 0

    window_agreement: List[float] = []
    std_devs: List[float] = []
    for window in WINDOWS:
        preds = [r.prediction.windows[window] for r in ok]  # type: ignore[union-attr]
        directions = Counter(predicted_direction(p.prob_up, p.prob_down) for p in preds)
        window_agreement.append(max(directions.values()) / len(preds))
        std_devs.append(statistics.pstdev([p.prob_up for p in preds]))
        std_devs.append(statistics.pstdev([p.prob_down for p in preds]))

    avg_direction = statistics.mean(window_agreement)
    avg_std_dev = statistics.mean(std_devs)
    consistency = max(0.0, 1 - avg_std_dev / STD_DEV_CEILING)

    score = round_half_up(100 * (DIRECTION_WEIGHT * avg_direction + DISTRIBUTION_WEIGHT * consistency))
    return max(0, min(100, score))


def divergence_summary(results: Sequence[ModelResult]) -> Tuple[str, ...]:
    ok = successful(results)
    if len(ok) < 2:
        return ()

    rows = [(r.model_name, r.prediction.windows[REPRESENTATIVE_WINDOW]) for r in ok]  # type: ignore[union-attr]
    entries: List[str] = []

    bulls = [name for name, p in rows if predicted_direction(p.prob_up, p.prob_down) == UP]
    bears = [name for name, p in rows if predicted_direction(p.prob_up, p.prob_down) == DOWN]
    if bulls and bears:
        entries.append(f"{'/'.join(bulls)} lean bullish while {'/'.join(bears)} lean bearish")

    high_name, high = max(rows, key=lambda row: row[1].confidence)
    low_name, low = min(rows, key=lambda row: row[1].confidence)
    if high.confidence - low.confidence > CONFIDENCE_SPREAD_POINTS:
        entries.append(
            f"{high_name} is more confident ({high.confidence}) than {low_name} ({low.confidence})"
        )

    wide_name, wide = max(rows, key=lambda row: row[1].expected_range_pct)
    narrow_name, narrow = min(rows, key=lambda row: row[1].expected_range_pct)
    max_range, min_range = wide.expected_range_pct, narrow.expected_range_pct
    if max_range > min_range * RANGE_RATIO and max_range - min_range > RANGE_GAP_PCT:
        entries.append(
            f"{wide_name} expects a wider range ({max_range:.1f}%) than {narrow_name} ({min_range:.1f}%)"
        )

    return tuple(entries[:MAX_DIVERGENCE_ENTRIES])


def aggregate(results: Sequence[ModelResult]) -> ConsensusForecast:
    ok = successful(results)
    windows = {
        window: aggregate_window([r.prediction.windows[window] for r in ok])  # type: ignore[union-attr]
        for window in WINDOWS
    }
    metrics = ConsensusMetrics(
        consensus_strength=consensus_strength(results),
        divergence_summary=divergence_summary(results),
    )
    return ConsensusForecast(windows=windows, metrics=metrics)
