"""Forecast horizons and the direction rules shared by aggregation and settlement."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

WINDOWS: tuple[str, ...] = ("1h", "4h", "24h")
WINDOW_HOURS: dict[str, int] = {"1h": 1, "4h": 4, "24h": 24}

# Window used as the representative horizon for divergence reporting.
REPRESENTATIVE_WINDOW = "4h"

# A side must lead the other by more than this probability margin to count
# as a directional call.
PROB_MARGIN = 0.1

# Realized moves within +/- this percentage settle as "flat" for every window.
DIRECTION_THRESHOLD_PCT = 0.5

UP = "up"
DOWN = "down"
FLAT = "flat"
DIRECTIONS: tuple[str, ...] = (UP, DOWN, FLAT)

HEALTH_NORMAL = "normal"
HEALTH_DEGRADED = "degraded"
HEALTH_HALTED = "halted"
HEALTH_GRADES: tuple[str, ...] = (HEALTH_NORMAL, HEALTH_DEGRADED, HEALTH_HALTED)


def window_duration(window: str) -> timedelta:
    return timedelta(hours=WINDOW_HOURS[window])


def window_expiry(created_at: datetime, window: str) -> datetime:
    return as_utc(created_at) + window_duration(window)


def predicted_direction(prob_up: float, prob_down: float) -> str:
    if prob_up > prob_down + PROB_MARGIN:
        return UP
    if prob_down > prob_up + PROB_MARGIN:
        return DOWN
    return FLAT


def realized_direction(return_pct: float) -> str:
    if return_pct > DIRECTION_THRESHOLD_PCT:
        return UP
    if return_pct < -DIRECTION_THRESHOLD_PCT:
        return DOWN
    return FLAT


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def forecast_bucket_id(moment: datetime) -> str:
    """Hour bucket key (YYYYMMDDHH, UTC) used as the scheduled forecast id."""
    return as_utc(moment).strftime("%Y%m%d%H")
