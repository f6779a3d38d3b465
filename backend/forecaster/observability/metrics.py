from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Histogram,
    CONTENT_TYPE_LATEST,
    generate_latest,
)

router = APIRouter()

REQUEST_COUNTER = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["path", "method", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "Request latency",
    ["path", "method"],
)
MODEL_CALLS = Counter(
    "model_calls_total",
    "Forecasting model invocations by outcome",
    ["model", "outcome"],
)
SETTLEMENTS = Counter(
    "settlements_total",
    "Settlement rows written",
    ["kind"],
)
FORECAST_CYCLES = Counter(
    "forecast_cycles_total",
    "Scheduled forecast cycles by status",
    ["status"],
)


@router.get("/metrics")
async def metrics_endpoint() -> PlainTextResponse:
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
