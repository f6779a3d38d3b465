"""
Model response parsing.

Turns free-form model text into a `ParsedForecast` or None. Everything past
this boundary works with typed, renormalized records; raw text is never
inspected again.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Tuple

import structlog

from forecaster.core.types import ParsedForecast, TopFactor, WindowPrediction
from forecaster.core.windows import WINDOWS
from forecaster.utils.numeric import coerce_float, coerce_int

logger = structlog.get_logger(__name__)

PROB_SUM_TOLERANCE = 0.01

_JSON_FENCE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```\s*(.*?)\s*```", re.DOTALL)
_CONTROL_CHARS = re.compile(r"[\u0000-\u001F\u007F-\u009F]")


class ParseError(ValueError):
    """Raised internally when a response is structurally unusable."""


def extract_json_text(text: str) -> Optional[str]:
    """Pick the JSON payload out of a fenced block or surrounding prose."""
    if not text:
        return None
    for pattern in (_JSON_FENCE, _ANY_FENCE):
        match = pattern.search(text)
        if match and "{" in match.group(1):
            return match.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def renormalize(prob_up: float, prob_down: float, prob_flat: float) -> Tuple[float, float, float]:
    total = prob_up + prob_down + prob_flat
    if total <= 0:
        raise ParseError("direction probabilities sum to zero")
    return prob_up / total, prob_down / total, prob_flat / total


def _parse_factors(raw: Any) -> Tuple[TopFactor, ...]:
    if not isinstance(raw, list):
        return ()
    factors: List[TopFactor] = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        factors.append(
            TopFactor(
                name=str(item["name"]),
                direction=str(item.get("direction") or "neutral").lower(),
                strength=coerce_float(item.get("strength")) or 0.0,
                evidence=str(item.get("evidence") or ""),
            )
        )
    return tuple(factors)


def _parse_invalidations(raw: Any) -> Tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    return tuple(str(item) for item in raw if item not in (None, ""))


def _parse_window(name: str, raw: Any) -> WindowPrediction:
    if not isinstance(raw, dict):
        raise ParseError(f"window {name} is not an object")

    probs = [coerce_float(raw.get(key)) for key in ("prob_up", "prob_down", "prob_flat")]
    if any(p is None for p in probs):
        raise ParseError(f"window {name} is missing direction probabilities")
    prob_up, prob_down, prob_flat = probs  # type: ignore[misc]

    if abs(prob_up + prob_down + prob_flat - 1.0) > PROB_SUM_TOLERANCE:
        prob_up, prob_down, prob_flat = renormalize(prob_up, prob_down, prob_flat)

    invalidation = raw.get("invalidation")
    if invalidation is None:
        invalidation = raw.get("invalidation_conditions")

    return WindowPrediction(
        prob_up=prob_up,
        prob_down=prob_down,
        prob_flat=prob_flat,
        prob_move_1pct=coerce_float(raw.get("prob_move_1pct")) or 0.0,
        prob_move_2pct=coerce_float(raw.get("prob_move_2pct")) or 0.0,
        expected_range_pct=coerce_float(raw.get("expected_range_pct")) or 0.0,
        confidence=coerce_int(raw.get("confidence")) or 0,
        main_conclusion=str(raw.get("main_conclusion") or ""),
        top_factors=_parse_factors(raw.get("top_factors")),
        invalidation_conditions=_parse_invalidations(invalidation),
    )


def _parse(text: str) -> ParsedForecast:
    payload = extract_json_text(text)
    if payload is None:
        raise ParseError("no JSON object found")

    cleaned = _CONTROL_CHARS.sub("", payload).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ParseError(f"invalid JSON: {exc.msg}") from exc

    if not isinstance(data, dict):
        raise ParseError("top-level JSON is not an object")
    raw_windows = data.get("windows")
    if not isinstance(raw_windows, dict):
        raise ParseError("missing windows object")
    missing = [w for w in WINDOWS if w not in raw_windows]
    if missing:
        raise ParseError(f"missing windows: {', '.join(missing)}")

    windows: Dict[str, WindowPrediction] = {
        w: _parse_window(w, raw_windows[w]) for w in WINDOWS
    }
    return ParsedForecast(windows=windows, reasoning=str(data.get("reasoning") or ""))


def parse_model_response(text: str, *, model_name: str | None = None) -> Optional[ParsedForecast]:
    """Return the validated forecast, or None (with a logged reason) if unusable."""
    try:
        return _parse(text)
    except ParseError as exc:
        logger.warning("parser.rejected", model=model_name, reason=str(exc))
        return None
