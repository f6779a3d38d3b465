import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from forecaster.services.market_data import (
    BinanceMarketData,
    MarketDataError,
    SnapshotCache,
    news_headlines,
    order_book_imbalance,
    realized_volatility,
    summarize_liquidations,
    summarize_trades,
)

CLOSES = [100_000.0 + 50 * i for i in range(25)]


def _routes(fail_spot=False, fail_futures=False, fail_fng=False):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/api/v3") and fail_spot:
            return httpx.Response(500, text="spot down")
        if path.startswith("/fapi") and fail_futures:
            return httpx.Response(451, text="region blocked")
        if path == "/api/v3/ticker/24hr":
            return httpx.Response(
                200,
                json={
                    "lastPrice": "101300.5",
                    "priceChangePercent": "1.25",
                    "volume": "15000",
                    "highPrice": "102000",
                    "lowPrice": "99000",
                },
            )
        if path == "/api/v3/klines":
            if request.url.params.get("interval") == "1m":
                return httpx.Response(200, json=[[0, "1", "1", "1", "100600.0", "1"]])
            return httpx.Response(200, json=[[0, "0", "0", "0", str(c), "0"] for c in CLOSES])
        if path == "/api/v3/depth":
            return httpx.Response(200, json={"bids": [["100", "3"]], "asks": [["100", "1"]]})
        if path == "/fapi/v1/fundingRate":
            return httpx.Response(200, json=[{"fundingRate": "0.0001"}])
        if path == "/fapi/v1/openInterest":
            return httpx.Response(200, json={"openInterest": "85000.5"})
        if path == "/fng/":
            if fail_fng:
                return httpx.Response(503)
            return httpx.Response(200, json={"data": [{"value": "62", "value_classification": "Greed"}]})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def _source(**kwargs):
    return BinanceMarketData(
        spot_url="https://spot.test",
        futures_url="https://futures.test",
        fear_greed_url="https://fng.test/fng/?limit=1",
        transport=_routes(**kwargs),
    )


def test_snapshot_with_all_feeds_is_normal():
    snapshot, health = asyncio.run(_source().get_snapshot())
    assert health.grade == "normal"
    assert health.reason is None
    assert snapshot.price == 101_300.5
    assert snapshot.funding_rate == 0.0001
    assert snapshot.open_interest == 85_000.5
    assert snapshot.order_book_imbalance == pytest.approx(50.0)
    assert snapshot.fear_greed_value == 62
    assert snapshot.price_change_1h == pytest.approx((101_300.5 - CLOSES[-2]) / CLOSES[-2] * 100)
    assert snapshot.realized_vol_24h > 0


def test_futures_failure_degrades():
    snapshot, health = asyncio.run(_source(fail_futures=True).get_snapshot())
    assert health.grade == "degraded"
    assert health.futures_data_ok is False
    assert snapshot.funding_rate is None
    assert snapshot.price == 101_300.5


def test_spot_failure_halts():
    _, health = asyncio.run(_source(fail_spot=True).get_snapshot())
    assert health.grade == "halted"
    assert health.reason == "Critical: spot market data unavailable"


def test_fear_greed_failure_is_not_a_health_problem():
    snapshot, health = asyncio.run(_source(fail_fng=True).get_snapshot())
    assert health.grade == "normal"
    assert snapshot.fear_greed_value is None


def test_price_at_uses_minute_kline_close():
    price = asyncio.run(_source().get_price_at(datetime(2026, 1, 1, 11, 0, tzinfo=timezone.utc)))
    assert price == 100_600.0


def test_price_at_raises_on_upstream_error():
    with pytest.raises(MarketDataError):
        asyncio.run(_source(fail_spot=True).get_price_at(datetime(2026, 1, 1, tzinfo=timezone.utc)))


def test_realized_volatility_of_flat_series_is_zero():
    assert realized_volatility([100.0] * 10) == 0.0
    assert realized_volatility([100.0]) == 0.0


def test_order_book_imbalance_bounds():
    assert order_book_imbalance([["1", "1"]], []) == 100.0
    assert order_book_imbalance([], []) == 0.0


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_snapshot_cache_serves_fresh_value_until_ttl():
    calls = []

    async def loader():
        calls.append(1)
        return len(calls)

    clock = _Clock()
    cache = SnapshotCache(loader, ttl_seconds=5, clock=clock)

    assert asyncio.run(cache.get()) == 1
    clock.now = 4.9
    assert asyncio.run(cache.get()) == 1
    clock.now = 5.0
    assert cache.is_fresh() is False
    assert asyncio.run(cache.get()) == 2

    cache.invalidate()
    assert asyncio.run(cache.get()) == 3


TRADES = [
    {"qty": "0.5", "isBuyerMaker": False},
    {"qty": "1.5", "isBuyerMaker": False},
    {"qty": "1.0", "isBuyerMaker": True},
]
FORCE_ORDERS = [
    {"side": "SELL", "price": "100000", "origQty": "0.2"},
    {"side": "SELL", "price": "99000", "origQty": "0.1"},
    {"side": "BUY", "price": "101000", "origQty": "0.5"},
]
GECKO = {
    "market_data": {
        "market_cap": {"usd": 2.0e12},
        "market_cap_rank": 1,
        "circulating_supply": 19_800_000,
        "price_change_percentage_7d": 3.5,
        "price_change_percentage_30d": -4.25,
        "ath": {"usd": 109_000},
        "ath_change_percentage": {"usd": -7.1},
    }
}
NEWS = {"Data": [{"title": f"Headline {i}"} for i in range(10)] + [{"title": "  "}]}


def _context_routes(fail_gecko=False, fail_context=False):
    base = _routes()

    def handler(request: httpx.Request) -> httpx.Response:
        host, path = request.url.host, request.url.path
        if host == "gecko.test":
            if fail_gecko or fail_context:
                return httpx.Response(429, text="rate limited")
            return httpx.Response(200, json=GECKO)
        if host == "coincap.test":
            if fail_context:
                return httpx.Response(503)
            if path.endswith("/history"):
                daily = [{"priceUsd": str(90_000 + 100 * i)} for i in range(30)]
                return httpx.Response(200, json={"data": daily})
            return httpx.Response(
                200,
                json={"data": {"priceUsd": "100000", "marketCapUsd": "1.98e12", "rank": "1", "supply": "19800000"}},
            )
        if host == "news.test":
            return httpx.Response(500) if fail_context else httpx.Response(200, json=NEWS)
        if path == "/api/v3/trades":
            return httpx.Response(500) if fail_context else httpx.Response(200, json=TRADES)
        if path == "/fapi/v1/allForceOrders":
            return httpx.Response(401) if fail_context else httpx.Response(200, json=FORCE_ORDERS)
        return base.handler(request)

    return httpx.MockTransport(handler)


def _context_source(**kwargs):
    return BinanceMarketData(
        spot_url="https://spot.test",
        futures_url="https://futures.test",
        fear_greed_url="https://fng.test/fng/?limit=1",
        coingecko_url="https://gecko.test/api/v3/coins/bitcoin",
        coincap_url="https://coincap.test/v2/assets/bitcoin",
        news_url="https://news.test/data/v2/news/",
        transport=_context_routes(**kwargs),
    )


def test_snapshot_includes_market_context():
    snapshot, health = asyncio.run(_context_source().get_snapshot())
    assert health.grade == "normal"

    flow = snapshot.trade_flow
    assert (flow.trade_count, flow.buy_count, flow.sell_count) == (3, 2, 1)
    assert flow.buy_volume == pytest.approx(2.0)
    assert flow.buy_sell_ratio == pytest.approx(2.0)

    liqs = snapshot.liquidations
    assert (liqs.long_count, liqs.short_count) == (2, 1)
    assert liqs.long_value == pytest.approx(29_900.0)
    assert liqs.short_value == pytest.approx(50_500.0)

    gm = snapshot.global_market
    assert gm.source == "coingecko"
    assert gm.market_cap_rank == 1
    assert gm.ath == 109_000.0
    assert gm.price_change_30d == -4.25

    assert snapshot.news_headlines == tuple(f"Headline {i}" for i in range(8))


def test_coincap_backs_up_coingecko():
    snapshot, _ = asyncio.run(_context_source(fail_gecko=True).get_snapshot())
    gm = snapshot.global_market
    assert gm.source == "coincap"
    assert gm.ath is None
    assert gm.price_change_7d == pytest.approx((100_000 - 92_300) / 92_300 * 100)


def test_context_failures_fail_soft():
    snapshot, health = asyncio.run(_context_source(fail_context=True).get_snapshot())
    assert health.grade == "normal"
    assert snapshot.price == 101_300.5
    assert snapshot.trade_flow is None
    assert snapshot.liquidations is None
    assert snapshot.global_market is None
    assert snapshot.news_headlines == ()


def test_context_summaries_of_empty_feeds():
    assert summarize_trades([]) is None
    assert summarize_liquidations([]) is None
    assert news_headlines([{"title": ""}, "junk", {"body": "no title"}]) == ()
