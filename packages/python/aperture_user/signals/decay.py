import math
from datetime import datetime

from aperture_core.types import BuildParams


# absolute day difference
def _days(a: datetime, b: datetime) -> float:
    return abs((b - a).total_seconds()) / 86400.0


# exponential decay with a half life, never below floor
def half_life_decay(ts: datetime, now: datetime, half_life_days: float, floor: float) -> float:
    if half_life_days <= 0:
        return 1.0
    return max(floor, math.pow(0.5, _days(ts, now) / half_life_days))


# straight line from 1.0 (today) down to floor at window_days
def linear_decay(ts: datetime, now: datetime, window_days: float, floor: float) -> float:
    if window_days <= 0:
        return 1.0
    frac = min(1.0, _days(ts, now) / window_days)
    return max(floor, 1.0 - (1.0 - floor) * frac)


def recency_factor(ts: datetime | None, now: datetime, params: BuildParams) -> float:
    """Multiplier in [floor, 1]; items with no play date are treated as fresh."""
    if ts is None:
        return 1.0
    if params.decay_mode == "linear":
        return linear_decay(ts, now, params.linear_window_days, params.recency_floor)
    return half_life_decay(ts, now, params.half_life_days, params.recency_floor)
