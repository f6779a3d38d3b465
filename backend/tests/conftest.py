import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure backend/ is importable as the top-level "forecaster" package even when pytest runs from repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Ensure the application runs in test/sqlite mode *before* importing any app modules
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("CRON_SECRET", "")
for _key in ("DEEPSEEK_API_KEY", "GEMINI_API_KEY", "XAI_API_KEY"):
    os.environ.pop(_key, None)

import forecaster.db.session as db_session  # noqa: E402
from forecaster.db.base import Base  # noqa: E402
from forecaster.db.session import get_db  # noqa: E402
from forecaster.deps import get_market_source, get_model_clients, get_snapshot_cache  # noqa: E402
from forecaster.main import app  # noqa: E402
from forecaster.services.market_data import SnapshotCache  # noqa: E402

from _helpers import FakeMarket, ScriptedClient, model_json  # noqa: E402

ENGINE = db_session.ENGINE
SessionTesting = db_session.SessionLocal


@pytest.fixture(scope="function")
def reset_db():
    Base.metadata.drop_all(bind=ENGINE)
    Base.metadata.create_all(bind=ENGINE)
    yield
    Base.metadata.drop_all(bind=ENGINE)


@pytest.fixture(scope="function")
def db(reset_db):
    session = SessionTesting()

    def _override_get_db():
        try:
            yield session
        finally:
            pass

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def market():
    return FakeMarket()


@pytest.fixture
def model_clients():
    return [
        ScriptedClient("Deepseek", text=model_json(prob_up=0.6, prob_down=0.2, prob_flat=0.2, confidence=70)),
        ScriptedClient("Gemini", text=model_json(prob_up=0.5, prob_down=0.3, prob_flat=0.2, confidence=60)),
        ScriptedClient("XAI", text=model_json(prob_up=0.7, prob_down=0.1, prob_flat=0.2, confidence=80)),
    ]


@pytest.fixture(scope="function")
def client(db, market, model_clients):
    app.dependency_overrides[get_market_source] = lambda: market
    app.dependency_overrides[get_model_clients] = lambda: model_clients
    app.dependency_overrides[get_snapshot_cache] = lambda: SnapshotCache(market.get_snapshot, ttl_seconds=5)
    try:
        with TestClient(app) as c:
            yield c
    finally:
        for dep in (get_market_source, get_model_clients, get_snapshot_cache):
            app.dependency_overrides.pop(dep, None)
