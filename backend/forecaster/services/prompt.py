from __future__ import annotations

from forecaster.core.types import MarketSnapshot

SYSTEM_PROMPT = (
    "You are a professional cryptocurrency market analyst who makes short-term, "
    "data-driven forecasts. Answer strictly in the requested JSON format."
)

_RESPONSE_FORMAT = """```json
{
  "windows": {
    "1h": {
      "prob_up": <0.0-1.0, probability of a move above +0.5%>,
      "prob_down": <0.0-1.0, probability of a move below -0.5%>,
      "prob_flat": <0.0-1.0, probability of staying within +/-0.5%>,
      "prob_move_1pct": <0.0-1.0, probability of a move of at least 1% either way>,
      "prob_move_2pct": <0.0-1.0, probability of a move of at least 2% either way>,
      "expected_range_pct": <expected high-low range in percent>,
      "confidence": <0-100>,
      "main_conclusion": "<one sentence>",
      "top_factors": [
        {"name": "<factor>", "direction": "<up/down/neutral>", "strength": <0-100>, "evidence": "<data point>"}
      ],
      "invalidation": ["<verifiable condition>"]
    },
    "4h": { <same fields as 1h> },
    "24h": { <same fields as 1h> }
  },
  "reasoning": "<overall reasoning in 2-3 sentences>"
}
```"""

_RULES = """1. prob_up + prob_down + prob_flat must equal 1.0 for every window
2. Lower the confidence when data quality or market direction is unclear
3. top_factors must contain at least 2 factors, each backed by a concrete number
4. invalidation conditions must be concrete and verifiable
5. Output only the JSON, nothing else"""


def _fmt_optional(value: float | None, fmt: str, suffix: str = "") -> str:
    if value is None:
        return "unavailable"
    return f"{value:{fmt}}{suffix}"


def _trend(change_1h: float) -> str:
    if change_1h > 0.5:
        return "uptrend"
    if change_1h < -0.5:
        return "downtrend"
    return "sideways"


def _momentum(closes: tuple[float, ...]) -> float:
    recent = closes[-6:]
    if len(recent) < 3 or recent[0] == 0:
        return 0.0
    return (recent[-1] - recent[0]) / recent[0] * 100


def build_prediction_prompt(snapshot: MarketSnapshot, symbol: str = "BTCUSDT") -> str:
    range_24h = (snapshot.high_24h - snapshot.low_24h) / snapshot.price * 100 if snapshot.price else 0.0
    funding = _fmt_optional(
        snapshot.funding_rate * 100 if snapshot.funding_rate is not None else None, ".4f", "%"
    )
    open_interest = _fmt_optional(
        snapshot.open_interest / 1000 if snapshot.open_interest is not None else None, ".1f", "K"
    )

    lines = [
        f"Based on the market data below, forecast {symbol} for the next 1h, 4h and 24h.",
        "",
        f"## Market data ({snapshot.timestamp})",
        "",
        "### Price",
        f"- Last price: {snapshot.price:,.2f}",
        f"- 1h change: {snapshot.price_change_1h:.2f}%",
        f"- 24h change: {snapshot.price_change_24h:.2f}%",
        f"- 24h range: {snapshot.low_24h:,.2f} - {snapshot.high_24h:,.2f} ({range_24h:.2f}%)",
        "",
        "### Volume and volatility",
        f"- 24h volume: {snapshot.volume_24h:,.0f}",
        f"- Realized volatility 1h (annualized): {snapshot.realized_vol_1h:.1f}%",
        f"- Realized volatility 24h (annualized): {snapshot.realized_vol_24h:.1f}%",
        "",
        "### Derivatives",
        f"- Funding rate: {funding}",
        f"- Open interest: {open_interest}",
        f"- Order book imbalance: {_fmt_optional(snapshot.order_book_imbalance, '.2f', '%')} (positive = bids stronger)",
        "",
        "### Technicals",
        f"- Short-term trend: {_trend(snapshot.price_change_1h)}",
        f"- 6h momentum: {_momentum(snapshot.recent_closes):.2f}%",
    ]
    flow = snapshot.trade_flow
    if flow is not None:
        lines += [
            "",
            f"### Recent trades ({flow.trade_count})",
            f"- Taker buys: {flow.buy_volume:.3f} ({flow.buy_count} trades)",
            f"- Taker sells: {flow.sell_volume:.3f} ({flow.sell_count} trades)",
            f"- Buy/sell ratio: {flow.buy_sell_ratio:.2f}",
            f"- Average trade size: {flow.avg_trade_size:.4f}",
        ]
    liqs = snapshot.liquidations
    if liqs is not None:
        lines += [
            "",
            f"### Recent liquidations ({liqs.count})",
            f"- Longs liquidated: {liqs.long_count}, ${liqs.long_value / 1000:,.1f}K",
            f"- Shorts liquidated: {liqs.short_count}, ${liqs.short_value / 1000:,.1f}K",
        ]
    if snapshot.fear_greed_value is not None:
        lines += [
            "",
            "### Fear & Greed index",
            f"- Current: {snapshot.fear_greed_value}/100 ({snapshot.fear_greed_label})",
        ]
    gm = snapshot.global_market
    if gm is not None:
        rank = f" (#{gm.market_cap_rank})" if gm.market_cap_rank is not None else ""
        lines += ["", "### Market overview", f"- Market cap: ${gm.market_cap / 1e12:.2f}T{rank}"]
        if gm.ath is not None:
            lines.append(f"- All-time high: {gm.ath:,.0f} ({_fmt_optional(gm.ath_change_pct, '.1f', '%')} from ATH)")
        lines += [
            f"- 7d change: {gm.price_change_7d:.2f}%",
            f"- 30d change: {gm.price_change_30d:.2f}%",
        ]
        if gm.circulating_supply is not None:
            lines.append(f"- Circulating supply: {gm.circulating_supply / 1e6:.2f}M")
    if snapshot.news_headlines:
        lines += ["", "### Latest headlines"]
        lines += [f"- {title}" for title in snapshot.news_headlines]
    lines += [
        "",
        "## Output format",
        "",
        "Reply with exactly this JSON structure:",
        "",
        _RESPONSE_FORMAT,
        "",
        "## Rules",
        _RULES,
    ]
    return "\n".join(lines)
