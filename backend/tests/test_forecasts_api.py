import asyncio
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from forecaster.config import get_settings
from forecaster.services.aggregator import aggregate
from forecaster.services.settlement import settle_expired_windows
from forecaster.services.store import save_forecast

from _helpers import HALTED, NORMAL, FakeMarket, is_enveloped, make_snapshot, success, unwrap


def _seed(db, hours_ago: int, forecast_id: str):
    created = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0) - timedelta(hours=hours_ago)
    results = [success("Deepseek"), success("Gemini", prob_up=0.2, prob_down=0.6, prob_flat=0.2)]
    save_forecast(db, forecast_id, created, make_snapshot(), NORMAL, aggregate(results), results)
    return created


def test_history_empty_is_an_empty_page(client: TestClient):
    r = client.get("/api/forecasts")
    assert r.status_code == 200
    body = r.json()
    assert is_enveloped(body) and body["ok"] is True
    assert unwrap(body) == {"forecasts": [], "total": 0, "limit": 24, "offset": 0}


def test_history_is_newest_first_and_paginated(client: TestClient, db):
    _seed(db, 3, "a")
    _seed(db, 2, "b")
    _seed(db, 1, "c")
    page = unwrap(client.get("/api/forecasts", params={"limit": 2}).json())
    assert [f["id"] for f in page["forecasts"]] == ["c", "b"]
    assert page["total"] == 3
    page = unwrap(client.get("/api/forecasts", params={"limit": 2, "offset": 2}).json())
    assert [f["id"] for f in page["forecasts"]] == ["a"]


def test_latest_returns_404_envelope_when_empty(client: TestClient):
    r = client.get("/api/forecasts/latest")
    assert r.status_code == 404
    body = r.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "NOT_FOUND"


def test_latest_and_by_id_return_full_forecast(client: TestClient, db):
    _seed(db, 2, "older")
    _seed(db, 1, "newer")
    latest = unwrap(client.get("/api/forecasts/latest").json())
    assert latest["id"] == "newer"
    assert set(latest["windows"]) == {"1h", "4h", "24h"}
    assert len(latest["model_outputs"]) == 2
    assert "Deepseek lean bullish while Gemini lean bearish" in latest["divergence_summary"]

    by_id = unwrap(client.get("/api/forecasts/older").json())
    assert by_id["id"] == "older"


def test_unknown_id_is_not_found(client: TestClient):
    r = client.get("/api/forecasts/1999010100")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "NOT_FOUND"


def test_forecast_includes_settlements_once_settled(client: TestClient, db):
    _seed(db, 2, "settled")
    asyncio.run(settle_expired_windows(db, FakeMarket(default_price=101_000.0)))
    data = unwrap(client.get("/api/forecasts/settled").json())
    assert set(data["settlements"]) == {"1h"}
    assert data["settlements"]["1h"]["actual_direction"] == "up"


def test_generate_returns_unsaved_forecast(client: TestClient):
    r = client.post("/api/forecasts/generate")
    assert r.status_code == 200
    data = unwrap(r.json())
    assert data["status"] == "success"
    assert data["success_count"] == 3
    assert unwrap(client.get("/api/forecasts").json())["total"] == 0


def test_generate_reports_halted_market(client: TestClient, market):
    market.health = HALTED
    data = unwrap(client.post("/api/forecasts/generate").json())
    assert data == {"status": "halted", "reason": "Critical: spot market data unavailable"}


def test_generate_reports_deadline_instead_of_500(client: TestClient, market, monkeypatch):
    tight = get_settings().model_copy(update={"MODEL_TIMEOUT_SECONDS": 0.05, "CYCLE_DEADLINE_SECONDS": 0.1})
    monkeypatch.setattr("forecaster.routers.forecasts.get_settings", lambda: tight)
    market.snapshot_delay = 0.5

    r = client.post("/api/forecasts/generate")
    assert r.status_code == 200
    assert unwrap(r.json())["status"] == "timed_out"


def test_stats_shape(client: TestClient, db):
    _seed(db, 30, "2026")
    asyncio.run(settle_expired_windows(db, FakeMarket(default_price=101_000.0)))
    data = unwrap(client.get("/api/stats", params={"days": 7}).json())
    assert data["period"] == "7d"
    assert data["windows"]["24h"]["total"] == 1
    assert data["overall"]["total"] == 3
    assert set(data["models"]) == {"Deepseek", "Gemini"}


def test_cron_settles_then_forecasts(client: TestClient):
    r = client.post("/api/cron")
    assert r.status_code == 200
    data = unwrap(r.json())
    assert data["status"] == "created"
    assert data["settled"]["consensus"] == 0
    assert unwrap(client.get("/api/forecasts").json())["total"] == 1


def test_cron_requires_secret_when_configured(client: TestClient, monkeypatch):
    secured = get_settings().model_copy(update={"CRON_SECRET": "s3cret"})
    monkeypatch.setattr("forecaster.routers.cron.get_settings", lambda: secured)

    assert client.post("/api/cron").status_code == 401
    assert client.post("/api/cron", headers={"Authorization": "Bearer wrong"}).status_code == 401
    ok = client.post("/api/cron", headers={"Authorization": "Bearer s3cret"})
    assert ok.status_code == 200


def test_cron_rejects_non_ascii_authorization(client: TestClient, monkeypatch):
    secured = get_settings().model_copy(update={"CRON_SECRET": "s3cret"})
    monkeypatch.setattr("forecaster.routers.cron.get_settings", lambda: secured)

    r = client.post("/api/cron", headers={"Authorization": "Bearer s\u00e9cret".encode("utf-8")})
    assert r.status_code == 401


def test_market_and_data_health(client: TestClient):
    market = unwrap(client.get("/api/market").json())
    assert market["snapshot"]["price"] == 100_000.0
    assert market["health"]["grade"] == "normal"

    health = unwrap(client.get("/api/data-health").json())
    assert health["grade"] == "normal"
    assert "checked_at" in health
