"""
Shared text and number normalization helpers.
"""

import math
import re
from typing import Any, Optional

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, collapse runs of non-alphanumerics to one space, trim."""
    if not value:
        return ""
    return _NON_ALNUM.sub(" ", str(value).lower()).strip()


def normalize_name_key(value: Optional[str]) -> str:
    return normalize_text(value)


def to_number(value: Any) -> Optional[float]:
    """Coerce ints, floats and numeric strings; anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        match = re.match(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?", trimmed)
        if not match:
            return None
        parsed = float(match.group(0))
        return parsed if math.isfinite(parsed) else None
    return None


def round_half_up(value: float, digits: int = 2) -> float:
    """Round like ``Math.round(value * 10**digits) / 10**digits``."""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
