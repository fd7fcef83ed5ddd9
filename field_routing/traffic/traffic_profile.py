"""Traffic profile helpers for offline travel-time adjustments."""

from __future__ import annotations

from typing import List, Dict

from ..util.time_utils import in_window


def static_factor(start_min_of_day: int, static_profile: List[Dict]) -> float:
    """Return traffic factor from static profile bins.

    Accepts bins as plain dicts or Pydantic models with attributes 'window' and 'factor'.
    """
    for b in static_profile:
        window = b["window"] if isinstance(b, dict) else getattr(b, "window", None)
        factor = b.get("factor", 1.0) if isinstance(b, dict) else getattr(b, "factor", 1.0)
        if window and in_window(start_min_of_day, window):
            return float(factor)
    return 1.0


def factor_for_departure(depart_minute: float, config) -> float:
    """Speed factor for a leg leaving at ``depart_minute`` (minutes since midnight)."""
    profile = getattr(config.traffic, "static_profile", [])
    return static_factor(int(depart_minute) % (24 * 60), profile)
