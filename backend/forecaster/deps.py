# forecaster/deps.py
"""FastAPI dependency providers for external collaborators; tests override these."""
from __future__ import annotations

from functools import lru_cache
from typing import List, Tuple

from forecaster.config import get_settings
from forecaster.core.types import DataHealth, MarketSnapshot
from forecaster.services.market_data import BinanceMarketData, MarketSource, SnapshotCache
from forecaster.services.model_clients import ModelClient, build_model_clients


@lru_cache
def get_market_source() -> MarketSource:
    return BinanceMarketData.from_settings(get_settings())


@lru_cache
def get_model_clients() -> List[ModelClient]:
    return build_model_clients(get_settings())


@lru_cache
def get_snapshot_cache() -> SnapshotCache[Tuple[MarketSnapshot, DataHealth]]:
    market = get_market_source()
    return SnapshotCache(market.get_snapshot, ttl_seconds=get_settings().MARKET_CACHE_TTL_SECONDS)
