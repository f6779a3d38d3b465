import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from forecaster.config import Settings, get_settings
from forecaster.core.types import DataHealth
from forecaster.models.forecast import Forecast, ForecastWindow, ModelRun, ModelWindowPrediction
from forecaster.models.market_snapshot import MarketSnapshotRecord
from forecaster.services.forecast_cycle import (
    create_scheduled_forecast,
    generate_on_demand_forecast,
)
from forecaster.services.store import get_forecast

from _helpers import HALTED, FakeMarket, ScriptedClient, model_json

NOW = datetime(2026, 2, 3, 14, 1, 30, tzinfo=timezone.utc)


def _count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar()


def _run(db, market, clients, now=NOW):
    return asyncio.run(create_scheduled_forecast(db, market, clients, get_settings(), now=now))


def test_scheduled_forecast_is_persisted_under_hour_bucket(db, market, model_clients):
    result = _run(db, market, model_clients)
    assert result == {"id": "2026020314", "status": "created", "success_count": 3}

    stored = get_forecast(db, "2026020314")
    assert stored["reference_price"] == 100_000.0
    assert stored["data_health"] == {"grade": "normal", "reason": None}
    assert set(stored["windows"]) == {"1h", "4h", "24h"}
    assert stored["windows"]["1h"]["prob_up"] == pytest.approx(0.6)
    assert 0 <= stored["consensus_strength"] <= 100
    assert {m["name"] for m in stored["model_outputs"]} == {"Deepseek", "Gemini", "XAI"}
    assert stored["market_snapshot"]["price"] == 100_000.0
    assert _count(db, ModelWindowPrediction) == 9


def test_second_run_in_same_hour_is_a_noop(db, market, model_clients):
    _run(db, market, model_clients)
    again = _run(db, market, model_clients, now=NOW.replace(minute=59))
    assert again == {"id": "2026020314", "status": "exists"}
    assert _count(db, Forecast) == 1
    # the existing bucket short-circuits before any model call
    assert all(len(c.prompts) == 1 for c in model_clients)
    assert market.snapshot_calls == 1


def test_halted_market_skips_models_and_records_reason(db, model_clients):
    market = FakeMarket(health=HALTED)
    result = _run(db, market, model_clients)
    assert result["status"] == "halted"
    assert result["reason"] == "Critical: spot market data unavailable"
    assert all(c.prompts == [] for c in model_clients)

    forecast = db.get(Forecast, "2026020314")
    assert forecast.data_health_grade == "halted"
    assert forecast.data_health_reason == "Critical: spot market data unavailable"
    assert forecast.consensus_strength == 0
    assert _count(db, ForecastWindow) == 0
    assert _count(db, ModelRun) == 0
    assert _count(db, MarketSnapshotRecord) == 1


def test_total_model_failure_persists_neutral_forecast(db, market):
    clients = [
        ScriptedClient("Deepseek", text="no json here"),
        ScriptedClient("Gemini", error=RuntimeError("boom")),
        ScriptedClient("XAI", text="```json\n{broken\n```"),
    ]
    result = _run(db, market, clients)
    assert result["status"] == "created"
    assert result["success_count"] == 0

    stored = get_forecast(db, "2026020314")
    assert stored["consensus_strength"] == 0
    assert stored["divergence_summary"] == []
    w = stored["windows"]["1h"]
    assert (w["prob_up"], w["prob_down"], w["prob_flat"], w["confidence"]) == (0.33, 0.33, 0.34, 0)
    runs = {m["name"]: m for m in stored["model_outputs"]}
    assert runs["Deepseek"]["success"] is False
    assert runs["Deepseek"]["error_reason"] == "Failed to parse response"
    assert _count(db, ModelWindowPrediction) == 0


def test_partial_failure_records_failed_model_run(db, market):
    clients = [
        ScriptedClient("Deepseek", text=model_json(prob_up=0.7, prob_down=0.1, prob_flat=0.2)),
        ScriptedClient("Gemini", text=model_json(prob_up=0.5, prob_down=0.3, prob_flat=0.2)),
        ScriptedClient("XAI", text="sorry"),
    ]
    result = _run(db, market, clients)
    assert result["success_count"] == 2
    stored = get_forecast(db, "2026020314")
    failed = [m for m in stored["model_outputs"] if not m["success"]]
    assert [m["name"] for m in failed] == ["XAI"]
    assert stored["windows"]["4h"]["prob_up"] == pytest.approx(0.6)


def test_on_demand_forecast_is_not_persisted(db, market, model_clients):
    out = asyncio.run(generate_on_demand_forecast(market, model_clients, get_settings()))
    assert out["status"] == "success"
    assert out["success_count"] == 3
    assert set(out["windows"]) == {"1h", "4h", "24h"}
    assert len(out["model_outputs"]) == 3
    assert _count(db, Forecast) == 0


def test_on_demand_surfaces_halted_and_degraded(db, model_clients):
    halted = asyncio.run(generate_on_demand_forecast(FakeMarket(health=HALTED), model_clients, get_settings()))
    assert halted == {"status": "halted", "reason": "Critical: spot market data unavailable"}

    degraded_market = FakeMarket(health=DataHealth(grade="degraded", reason="Warning: futures data unavailable"))
    degraded = asyncio.run(generate_on_demand_forecast(degraded_market, model_clients, get_settings()))
    assert degraded["status"] == "degraded"
    assert degraded["data_health"]["reason"] == "Warning: futures data unavailable"


def _tight_deadline() -> Settings:
    return get_settings().model_copy(update={"MODEL_TIMEOUT_SECONDS": 0.05, "CYCLE_DEADLINE_SECONDS": 0.1})


def test_scheduled_deadline_persists_nothing_and_frees_the_bucket(db, model_clients):
    stalled = FakeMarket(snapshot_delay=0.5)
    result = asyncio.run(create_scheduled_forecast(db, stalled, model_clients, _tight_deadline(), now=NOW))
    assert result == {"id": "2026020314", "status": "timed_out"}
    assert _count(db, Forecast) == 0
    assert _count(db, MarketSnapshotRecord) == 0

    retry = _run(db, FakeMarket(), model_clients, now=NOW.replace(minute=20))
    assert retry["status"] == "created"
    assert _count(db, Forecast) == 1


def test_on_demand_deadline_is_reported_not_raised(db, model_clients):
    stalled = FakeMarket(snapshot_delay=0.5)
    out = asyncio.run(generate_on_demand_forecast(stalled, model_clients, _tight_deadline()))
    assert out["status"] == "timed_out"
    assert "0.1s" in out["reason"]
    assert _count(db, Forecast) == 0
