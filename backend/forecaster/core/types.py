from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class TopFactor:
    name: str
    direction: str  # up / down / neutral
    strength: float
    evidence: str = ""


@dataclass(frozen=True)
class WindowPrediction:
    """One horizon of a forecast. Also the shape of an aggregated window."""

    prob_up: float
    prob_down: float
    prob_flat: float
    prob_move_1pct: float
    prob_move_2pct: float
    expected_range_pct: float
    confidence: int
    main_conclusion: str = ""
    top_factors: Tuple[TopFactor, ...] = ()
    invalidation_conditions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["top_factors"] = [asdict(f) for f in self.top_factors]
        out["invalidation_conditions"] = list(self.invalidation_conditions)
        return out


@dataclass(frozen=True)
class ParsedForecast:
    windows: Dict[str, WindowPrediction]
    reasoning: str = ""


@dataclass(frozen=True)
class ModelResult:
    """Outcome of one model invocation: either a parsed forecast or a failure reason."""

    model_name: str
    success: bool
    prediction: Optional[ParsedForecast] = None
    raw_text: str = ""
    error_reason: Optional[str] = None

    @classmethod
    def succeeded(cls, model_name: str, prediction: ParsedForecast, raw_text: str) -> "ModelResult":
        return cls(model_name=model_name, success=True, prediction=prediction, raw_text=raw_text)

    @classmethod
    def failed(cls, model_name: str, reason: str, raw_text: str = "") -> "ModelResult":
        return cls(model_name=model_name, success=False, raw_text=raw_text, error_reason=reason)


@dataclass(frozen=True)
class ConsensusMetrics:
    consensus_strength: int
    divergence_summary: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConsensusForecast:
    windows: Dict[str, WindowPrediction]
    metrics: ConsensusMetrics


@dataclass(frozen=True)
class DataHealth:
    grade: str
    reason: Optional[str] = None
    spot_data_ok: bool = True
    futures_data_ok: bool = True
    latency_ms: int = 0


@dataclass(frozen=True)
class TradeFlow:
    """Taker buy/sell split over the most recent spot trades."""

    trade_count: int
    buy_volume: float
    sell_volume: float
    buy_count: int
    sell_count: int

    @property
    def buy_sell_ratio(self) -> float:
        return self.buy_volume / (self.sell_volume or 1)

    @property
    def avg_trade_size(self) -> float:
        return (self.buy_volume + self.sell_volume) / self.trade_count if self.trade_count else 0.0


@dataclass(frozen=True)
class LiquidationSummary:
    count: int
    long_count: int
    long_value: float
    short_count: int
    short_value: float


@dataclass(frozen=True)
class GlobalMarket:
    market_cap: float
    market_cap_rank: Optional[int]
    circulating_supply: Optional[float]
    price_change_7d: float
    price_change_30d: float
    ath: Optional[float] = None
    ath_change_pct: Optional[float] = None
    source: str = "coingecko"


@dataclass(frozen=True)
class MarketSnapshot:
    price: float
    price_change_1h: float
    price_change_24h: float
    volume_24h: float
    high_24h: float
    low_24h: float
    funding_rate: Optional[float]
    open_interest: Optional[float]
    realized_vol_1h: float
    realized_vol_24h: float
    order_book_imbalance: Optional[float]
    timestamp: str
    fear_greed_value: Optional[int] = None
    fear_greed_label: Optional[str] = None
    recent_closes: Tuple[float, ...] = field(default=())
    # Optional context; any of these may be missing without affecting health.
    trade_flow: Optional[TradeFlow] = None
    liquidations: Optional[LiquidationSummary] = None
    global_market: Optional[GlobalMarket] = None
    news_headlines: Tuple[str, ...] = ()
