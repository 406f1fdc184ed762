"""
Great-circle distance for technician/job matching.

``haversine_miles`` is pure and does no validation: callers run raw
record values through ``parse_coordinates`` first and skip anything it
rejects.
"""
from __future__ import annotations

import math
from typing import Any

__all__ = [
    "EARTH_RADIUS_MILES",
    "haversine_miles",
    "parse_coordinates",
]


# Mean Earth radius in statute miles (fixed, not configurable)
EARTH_RADIUS_MILES = 3959.0


# ---------------------------------------------------------------------------
# Haversine distance
# ---------------------------------------------------------------------------

def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in statute miles."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlng / 2) ** 2
    )
    # Rounding can push ``a`` a hair above 1.0 for antipodal points
    a = min(1.0, a)
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


# ---------------------------------------------------------------------------
# Caller-side validation
# ---------------------------------------------------------------------------

def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def parse_coordinates(lat: Any, lng: Any) -> tuple[float, float] | None:
    """Return a ``(lat, lng)`` float pair, or ``None`` if unusable.

    Stored coordinates arrive as numbers or numeric strings.  Missing,
    non-numeric, NaN/inf and out-of-range values are all rejected.
    """
    flat = _to_float(lat)
    flng = _to_float(lng)
    if flat is None or flng is None:
        return None
    if not (-90.0 <= flat <= 90.0) or not (-180.0 <= flng <= 180.0):
        return None
    return flat, flng
