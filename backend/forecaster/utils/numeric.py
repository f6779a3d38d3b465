# forecaster/utils/numeric.py
from __future__ import annotations

import math
from typing import Optional, Union

Number = Union[int, float]


def coerce_float(value) -> Optional[float]:
    """
    Best-effort float conversion that returns None when the value cannot be parsed
    or is not finite.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def coerce_int(value) -> Optional[int]:
    """
    Best-effort integer conversion with support for numeric strings/floats.
    Floats are rounded half-up rather than truncated.
    """
    number = coerce_float(value)
    if number is None:
        return None
    return round_half_up(number)


def round_half_up(value: Number) -> int:
    return int(math.floor(value + 0.5))


def safe_divide(numerator, denominator) -> Optional[float]:
    """
    Divide while guarding against None/zero/invalid values.
    """
    if numerator is None or denominator in (None, 0):
        return None
    try:
        return float(numerator) / float(denominator)
    except (TypeError, ValueError, ZeroDivisionError):
        return None


__all__ = ["coerce_float", "coerce_int", "round_half_up", "safe_divide"]
