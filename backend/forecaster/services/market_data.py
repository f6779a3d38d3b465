"""
Market data from Binance spot/futures REST plus optional context feeds
(fear & greed, recent trades, liquidations, CoinGecko/CoinCap, news).

`get_snapshot` never raises: failures are folded into the DataHealth grade
(spot failure -> halted, futures failure or slow fetch -> degraded).
Context feeds fail soft and never change the grade.
`get_price_at` raises MarketDataError, which settlement treats as retryable.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, List, Optional, Protocol, Tuple, TypeVar

import httpx
import numpy as np
import structlog

from forecaster.config import Settings
from forecaster.core.types import DataHealth, GlobalMarket, LiquidationSummary, MarketSnapshot, TradeFlow
from forecaster.core.windows import HEALTH_DEGRADED, HEALTH_HALTED, HEALTH_NORMAL, as_utc
from forecaster.utils.numeric import coerce_float, coerce_int

logger = structlog.get_logger(__name__)

HOURS_PER_YEAR = 24 * 365
MAX_HEADLINES = 8

T = TypeVar("T")


class MarketDataError(Exception):
    """A market data request failed or returned nothing usable."""


class MarketSource(Protocol):
    async def get_snapshot(self) -> Tuple[MarketSnapshot, DataHealth]: ...

    async def get_price_at(self, moment: datetime) -> float: ...


def realized_volatility(closes: List[float]) -> float:
    """Annualized volatility (%) of hourly log returns."""
    if len(closes) < 2:
        return 0.0
    prices = np.asarray(closes, dtype=float)
    returns = np.diff(np.log(prices))
    return float(np.std(returns) * np.sqrt(HOURS_PER_YEAR) * 100)


async def _gather_strict(*aws: Awaitable[Any]) -> List[Any]:
    """Gather without leaving siblings running; re-raise the first failure."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)


def order_book_imbalance(bids: List[List[str]], asks: List[List[str]]) -> float:
    bid_total = sum(float(price) * float(qty) for price, qty in bids)
    ask_total = sum(float(price) * float(qty) for price, qty in asks)
    total = bid_total + ask_total
    return (bid_total - ask_total) / total * 100 if total > 0 else 0.0


def summarize_trades(rows: List[dict]) -> Optional[TradeFlow]:
    """Split recent trades into taker buys and taker sells (buyer-maker means the seller hit the bid)."""
    if not rows:
        return None
    buys = [float(t["qty"]) for t in rows if not t["isBuyerMaker"]]
    sells = [float(t["qty"]) for t in rows if t["isBuyerMaker"]]
    return TradeFlow(
        trade_count=len(rows),
        buy_volume=sum(buys),
        sell_volume=sum(sells),
        buy_count=len(buys),
        sell_count=len(sells),
    )


def summarize_liquidations(rows: List[dict]) -> Optional[LiquidationSummary]:
    # A SELL force order closes a long; a BUY closes a short.
    if not rows:
        return None
    longs = [float(r["price"]) * float(r["origQty"]) for r in rows if r["side"] == "SELL"]
    shorts = [float(r["price"]) * float(r["origQty"]) for r in rows if r["side"] == "BUY"]
    return LiquidationSummary(
        count=len(rows),
        long_count=len(longs),
        long_value=sum(longs),
        short_count=len(shorts),
        short_value=sum(shorts),
    )


def news_headlines(items: List[dict], limit: int = MAX_HEADLINES) -> Tuple[str, ...]:
    titles = (str(item.get("title") or "").strip() for item in items if isinstance(item, dict))
    return tuple(t for t in titles if t)[:limit]


class BinanceMarketData:
    def __init__(
        self,
        symbol: str = "BTCUSDT",
        spot_url: str = "https://api.binance.com",
        futures_url: str = "https://fapi.binance.com",
        fear_greed_url: Optional[str] = "https://api.alternative.me/fng/?limit=1",
        coingecko_url: Optional[str] = None,
        coincap_url: Optional[str] = None,
        news_url: Optional[str] = None,
        *,
        trades_limit: int = 50,
        timeout: float = 10.0,
        latency_degraded_ms: int = 10000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.symbol = symbol
        self.spot_url = spot_url.rstrip("/")
        self.futures_url = futures_url.rstrip("/")
        self.fear_greed_url = fear_greed_url
        self.coingecko_url = coingecko_url
        self.coincap_url = coincap_url
        self.news_url = news_url
        self.trades_limit = trades_limit
        self.timeout = timeout
        self.latency_degraded_ms = latency_degraded_ms
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "BinanceMarketData":
        return cls(
            symbol=settings.SYMBOL,
            spot_url=settings.BINANCE_API_URL,
            futures_url=settings.BINANCE_FUTURES_API_URL,
            fear_greed_url=settings.FEAR_GREED_URL,
            coingecko_url=settings.COINGECKO_URL or None,
            coincap_url=settings.COINCAP_URL or None,
            news_url=settings.NEWS_URL or None,
            trades_limit=settings.RECENT_TRADES_LIMIT,
            timeout=settings.MARKET_TIMEOUT_SECONDS,
            latency_degraded_ms=settings.MARKET_LATENCY_DEGRADED_MS,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            headers={"Accept": "application/json"},
        )

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: Optional[dict] = None) -> Any:
        try:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise MarketDataError(f"GET {url} failed: {exc!r}") from exc

    async def _spot(self, client: httpx.AsyncClient) -> dict:
        ticker, klines, depth = await _gather_strict(
            self._get_json(client, f"{self.spot_url}/api/v3/ticker/24hr", {"symbol": self.symbol}),
            self._get_json(
                client,
                f"{self.spot_url}/api/v3/klines",
                {"symbol": self.symbol, "interval": "1h", "limit": 25},
            ),
            self._get_json(client, f"{self.spot_url}/api/v3/depth", {"symbol": self.symbol, "limit": 20}),
        )
        try:
            return {
                "price": float(ticker["lastPrice"]),
                "price_change_24h": float(ticker["priceChangePercent"]),
                "volume_24h": float(ticker["volume"]),
                "high_24h": float(ticker["highPrice"]),
                "low_24h": float(ticker["lowPrice"]),
                "closes": [float(k[4]) for k in klines],
                "imbalance": order_book_imbalance(depth.get("bids", []), depth.get("asks", [])),
            }
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            raise MarketDataError(f"malformed spot payload: {exc!r}") from exc

    async def _futures(self, client: httpx.AsyncClient) -> Tuple[Optional[float], Optional[float]]:
        funding, interest = await _gather_strict(
            self._get_json(
                client, f"{self.futures_url}/fapi/v1/fundingRate", {"symbol": self.symbol, "limit": 1}
            ),
            self._get_json(client, f"{self.futures_url}/fapi/v1/openInterest", {"symbol": self.symbol}),
        )
        try:
            funding_rate = float(funding[0]["fundingRate"]) if funding else None
            open_interest = float(interest["openInterest"])
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise MarketDataError(f"malformed futures payload: {exc!r}") from exc
        return funding_rate, open_interest

    async def _fear_greed(self, client: httpx.AsyncClient) -> Tuple[Optional[int], Optional[str]]:
        if not self.fear_greed_url:
            return None, None
        try:
            body = await self._get_json(client, self.fear_greed_url)
            entry = body["data"][0]
            return int(entry["value"]), str(entry["value_classification"])
        except (MarketDataError, KeyError, IndexError, TypeError, ValueError) as exc:
            logger.warning("market.fear_greed_unavailable", error=str(exc))
            return None, None

    async def _trade_flow(self, client: httpx.AsyncClient) -> Optional[TradeFlow]:
        try:
            rows = await self._get_json(
                client,
                f"{self.spot_url}/api/v3/trades",
                {"symbol": self.symbol, "limit": self.trades_limit},
            )
            return summarize_trades(rows)
        except (MarketDataError, KeyError, TypeError, ValueError) as exc:
            logger.warning("market.trades_unavailable", error=str(exc))
            return None

    async def _liquidations(self, client: httpx.AsyncClient) -> Optional[LiquidationSummary]:
        try:
            rows = await self._get_json(
                client,
                f"{self.futures_url}/fapi/v1/allForceOrders",
                {"symbol": self.symbol, "limit": 20},
            )
            return summarize_liquidations(rows)
        except (MarketDataError, KeyError, TypeError, ValueError) as exc:
            logger.warning("market.liquidations_unavailable", error=str(exc))
            return None

    async def _coingecko(self, client: httpx.AsyncClient) -> GlobalMarket:
        body = await self._get_json(
            client,
            self.coingecko_url,
            {"localization": "false", "tickers": "false", "community_data": "false", "developer_data": "false"},
        )
        data = body["market_data"]
        return GlobalMarket(
            market_cap=float(data["market_cap"]["usd"]),
            market_cap_rank=coerce_int(data.get("market_cap_rank")),
            circulating_supply=coerce_float(data.get("circulating_supply")),
            price_change_7d=float(data.get("price_change_percentage_7d") or 0.0),
            price_change_30d=float(data.get("price_change_percentage_30d") or 0.0),
            ath=coerce_float((data.get("ath") or {}).get("usd")),
            ath_change_pct=coerce_float((data.get("ath_change_percentage") or {}).get("usd")),
            source="coingecko",
        )

    async def _coincap(self, client: httpx.AsyncClient) -> GlobalMarket:
        asset, history = await _gather_strict(
            self._get_json(client, self.coincap_url),
            self._get_json(client, f"{self.coincap_url}/history", {"interval": "d1"}),
        )
        current = float(asset["data"]["priceUsd"])
        daily = [float(p["priceUsd"]) for p in history["data"]]

        def change_since(days: int) -> float:
            if len(daily) < days or not daily[-days]:
                return 0.0
            return (current - daily[-days]) / daily[-days] * 100

        return GlobalMarket(
            market_cap=float(asset["data"]["marketCapUsd"]),
            market_cap_rank=coerce_int(asset["data"].get("rank")),
            circulating_supply=coerce_float(asset["data"].get("supply")),
            price_change_7d=change_since(7),
            price_change_30d=change_since(30),
            source="coincap",
        )

    async def _global_market(self, client: httpx.AsyncClient) -> Optional[GlobalMarket]:
        """CoinGecko first, CoinCap as fallback; None when both are unavailable."""
        for name, url, fetch in (
            ("coingecko", self.coingecko_url, self._coingecko),
            ("coincap", self.coincap_url, self._coincap),
        ):
            if not url:
                continue
            try:
                return await fetch(client)
            except (MarketDataError, AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
                logger.warning("market.global_unavailable", source=name, error=str(exc))
        return None

    async def _news(self, client: httpx.AsyncClient) -> Tuple[str, ...]:
        if not self.news_url:
            return ()
        try:
            body = await self._get_json(client, self.news_url)
            return news_headlines(body.get("Data") or [])
        except (MarketDataError, AttributeError, TypeError) as exc:
            logger.warning("market.news_unavailable", error=str(exc))
            return ()

    async def get_snapshot(self) -> Tuple[MarketSnapshot, DataHealth]:
        start = time.perf_counter()
        spot_ok, futures_ok = True, True
        reason: Optional[str] = None

        async with self._client() as client:
            spot, futures, fng, trades, liquidations, global_market, headlines = await asyncio.gather(
                self._spot(client),
                self._futures(client),
                self._fear_greed(client),
                self._trade_flow(client),
                self._liquidations(client),
                self._global_market(client),
                self._news(client),
                return_exceptions=True,
            )

        if isinstance(spot, MarketDataError):
            logger.warning("market.spot_unavailable", error=str(spot))
            spot_ok = False
            spot = {"price": 0.0, "price_change_24h": 0.0, "volume_24h": 0.0,
                    "high_24h": 0.0, "low_24h": 0.0, "closes": [], "imbalance": None}
        elif isinstance(spot, BaseException):
            raise spot
        if isinstance(futures, MarketDataError):
            logger.warning("market.futures_unavailable", error=str(futures))
            futures_ok = False
            futures = (None, None)
        elif isinstance(futures, BaseException):
            raise futures
        for context in (fng, trades, liquidations, global_market, headlines):
            if isinstance(context, BaseException):
                raise context

        latency_ms = int((time.perf_counter() - start) * 1000)
        if not spot_ok:
            grade, reason = HEALTH_HALTED, "Critical: spot market data unavailable"
        elif not futures_ok:
            grade, reason = HEALTH_DEGRADED, "Warning: futures data unavailable, using spot data only"
        elif latency_ms > self.latency_degraded_ms:
            grade, reason = HEALTH_DEGRADED, f"Warning: high latency ({latency_ms}ms)"
        else:
            grade = HEALTH_NORMAL

        closes: List[float] = spot["closes"]
        price = spot["price"]
        change_1h = 0.0
        if len(closes) >= 2 and closes[-2]:
            change_1h = (price - closes[-2]) / closes[-2] * 100

        snapshot = MarketSnapshot(
            price=price,
            price_change_1h=change_1h,
            price_change_24h=spot["price_change_24h"],
            volume_24h=spot["volume_24h"],
            high_24h=spot["high_24h"],
            low_24h=spot["low_24h"],
            funding_rate=futures[0],
            open_interest=futures[1],
            realized_vol_1h=realized_volatility(closes[-6:]),
            realized_vol_24h=realized_volatility(closes),
            order_book_imbalance=spot["imbalance"],
            timestamp=datetime.now(timezone.utc).isoformat(),
            fear_greed_value=fng[0],
            fear_greed_label=fng[1],
            recent_closes=tuple(closes),
            trade_flow=trades,
            liquidations=liquidations,
            global_market=global_market,
            news_headlines=headlines,
        )
        health = DataHealth(
            grade=grade,
            reason=reason,
            spot_data_ok=spot_ok,
            futures_data_ok=futures_ok,
            latency_ms=latency_ms,
        )
        return snapshot, health

    async def get_price_at(self, moment: datetime) -> float:
        """Close of the 1m kline that opens at `moment`."""
        start_ms = int(as_utc(moment).timestamp() * 1000)
        async with self._client() as client:
            rows = await self._get_json(
                client,
                f"{self.spot_url}/api/v3/klines",
                {
                    "symbol": self.symbol,
                    "interval": "1m",
                    "startTime": start_ms,
                    "endTime": start_ms + 60_000,
                    "limit": 1,
                },
            )
        if not rows:
            raise MarketDataError(f"no kline at {as_utc(moment).isoformat()}")
        try:
            return float(rows[0][4])
        except (IndexError, TypeError, ValueError) as exc:
            raise MarketDataError(f"malformed kline payload: {exc!r}") from exc


class SnapshotCache(Generic[T]):
    """
    Caller-owned TTL cache around an async loader.

    The clock is injectable so staleness can be tested without sleeping.
    """

    def __init__(
        self,
        loader: Callable[[], Awaitable[T]],
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: Optional[T] = None
        self._loaded_at: Optional[float] = None

    def is_fresh(self) -> bool:
        return self._loaded_at is not None and self._clock() - self._loaded_at < self._ttl

    async def get(self) -> T:
        if self._value is not None and self.is_fresh():
            return self._value
        value = await self._loader()
        self._value = value
        self._loaded_at = self._clock()
        return value

    def invalidate(self) -> None:
        self._value = None
        self._loaded_at = None
