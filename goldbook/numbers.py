from __future__ import annotations

import math
from typing import Any

# Six decimal places: grams of gold and cents of currency both fit comfortably.
_SCALE = 1_000_000
EPSILON = 1e-6


def is_positive_finite(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def is_non_negative_finite(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value >= 0


def round_to(value: float, decimals: int = 2) -> float:
    factor = 10**decimals
    return round((value + math.copysign(1e-12, value)) * factor) / factor


def safe_add(a: float, b: float) -> float:
    return (round(a * _SCALE) + round(b * _SCALE)) / _SCALE


def safe_subtract(a: float, b: float) -> float:
    return (round(a * _SCALE) - round(b * _SCALE)) / _SCALE


def safe_multiply(a: float, b: float) -> float:
    return round_to(a * b, 6)


def safe_divide(a: float, b: float) -> float | None:
    # A zero divisor has no meaningful quotient; callers treat None as "unavailable".
    if b == 0:
        return None
    return round_to(a / b, 6)


def safe_sum(values) -> float:
    total = 0.0
    for v in values:
        total = safe_add(total, v)
    return total


def nearly_equal(a: float, b: float, eps: float = EPSILON) -> bool:
    return abs(a - b) < eps
