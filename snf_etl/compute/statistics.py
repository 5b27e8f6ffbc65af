"""
Numeric helpers for KPI time series: OLS trend / forecast, Pearson
correlation, trailing-twelve-month summary stats.

All helpers accept plain sequences and return small dataclasses; none raise
on short or degenerate input.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

# |slope| below this share of |mean| per step counts as flat
TREND_THRESHOLD = 0.01
T12M_WINDOW = 12

CORRELATION_BANDS = [
    (0.7, "strong"),
    (0.4, "moderate"),
    (0.2, "weak"),
]
CORRELATION_DIRECTION_CUTOFF = 0.1


@dataclass
class LinearTrend:
    slope: float
    intercept: float
    direction: str  # "up" | "down" | "stable"
    n: int
    change_percent: float = 0.0  # last vs first, % of |first|
    volatility: float = 0.0      # coefficient of variation, %

    def forecast(self, steps_ahead: int = 1) -> float:
        """Value of the fitted line *steps_ahead* positions past the last point."""
        return self.intercept + self.slope * (self.n - 1 + steps_ahead)


@dataclass
class Correlation:
    r: float
    strength: str   # "strong" | "moderate" | "weak" | "none"
    direction: str  # "positive" | "negative" | "none"
    data_points: int


@dataclass
class Extreme:
    value: float
    period_id: Optional[str]
    index: int


@dataclass
class T12MStats:
    current: float
    average: float
    min: Extreme
    max: Extreme
    std_dev: float
    trend: LinearTrend
    performance: str  # "improving" | "declining" | "stable"
    mom_change: Optional[float]
    yoy_change: Optional[float]


def linear_trend(values: Sequence[float], threshold: float = TREND_THRESHOLD) -> LinearTrend:
    """Least-squares line over (0, v0), (1, v1), ... from the closed-form sums."""
    y = np.asarray(values, dtype=float)
    n = len(y)
    if n == 0:
        return LinearTrend(slope=0.0, intercept=0.0, direction="stable", n=0)
    if n == 1:
        return LinearTrend(slope=0.0, intercept=float(y[0]), direction="stable", n=1)

    x = np.arange(n, dtype=float)
    sum_x, sum_y = x.sum(), y.sum()
    sum_xy, sum_x2 = (x * y).sum(), (x * x).sum()
    denom = n * sum_x2 - sum_x * sum_x
    slope = float((n * sum_xy - sum_x * sum_y) / denom) if denom else 0.0
    intercept = float((sum_y - slope * sum_x) / n)

    mean = float(y.mean())
    first, last = float(y[0]), float(y[-1])
    change_percent = (last - first) / abs(first) * 100 if first else 0.0
    volatility = float(y.std()) / abs(mean) * 100 if mean else 0.0

    cutoff = abs(mean) * threshold
    if abs(slope) <= cutoff:
        direction = "stable"
    else:
        direction = "up" if slope > 0 else "down"
    return LinearTrend(
        slope=slope,
        intercept=intercept,
        direction=direction,
        n=n,
        change_percent=round(change_percent, 1),
        volatility=round(volatility, 1),
    )


def correlation_strength(r: float) -> str:
    magnitude = abs(r)
    for floor, label in CORRELATION_BANDS:
        if magnitude >= floor:
            return label
    return "none"


def _no_correlation(points: int) -> Correlation:
    return Correlation(r=math.nan, strength="none", direction="none", data_points=points)


def pearson_correlation(x: Sequence[Optional[float]], y: Sequence[Optional[float]]) -> Correlation:
    """
    Pearson r over the positions where both series have a value.

    Fewer than two pairs, or a constant series, gives r = NaN with strength
    and direction "none".
    """
    pairs = [
        (float(a), float(b)) for a, b in zip(x, y)
        if a is not None and b is not None and not (math.isnan(a) or math.isnan(b))
    ]
    n = len(pairs)
    if n < 2:
        return _no_correlation(n)

    xs = np.array([p[0] for p in pairs])
    ys = np.array([p[1] for p in pairs])
    dx, dy = xs - xs.mean(), ys - ys.mean()
    denom = math.sqrt(float((dx * dx).sum()) * float((dy * dy).sum()))
    if denom == 0:
        return _no_correlation(n)

    r = max(-1.0, min(1.0, float((dx * dy).sum()) / denom))
    if r > CORRELATION_DIRECTION_CUTOFF:
        direction = "positive"
    elif r < -CORRELATION_DIRECTION_CUTOFF:
        direction = "negative"
    else:
        direction = "none"
    return Correlation(r=round(r, 3), strength=correlation_strength(r), direction=direction, data_points=n)


def performance_direction(trend: LinearTrend, higher_is_better: bool = True) -> str:
    if trend.direction == "stable":
        return "stable"
    rising = trend.direction == "up"
    return "improving" if rising == higher_is_better else "declining"


def t12m_stats(
    points: Sequence[tuple[Optional[str], float]],
    higher_is_better: bool = True,
) -> Optional[T12MStats]:
    """
    Summary of the trailing 12 (period_id, value) points, oldest first.

    None when there are no points.
    """
    window = list(points)[-T12M_WINDOW:]
    if not window:
        return None

    periods = [p for p, _ in window]
    values = np.array([v for _, v in window], dtype=float)
    lo, hi = int(values.argmin()), int(values.argmax())
    trend = linear_trend(values)

    return T12MStats(
        current=float(values[-1]),
        average=float(values.mean()),
        min=Extreme(float(values[lo]), periods[lo], lo),
        max=Extreme(float(values[hi]), periods[hi], hi),
        std_dev=float(values.std()) if len(values) > 1 else 0.0,
        trend=trend,
        performance=performance_direction(trend, higher_is_better),
        mom_change=float(values[-1] - values[-2]) if len(values) >= 2 else None,
        yoy_change=float(values[-1] - values[0]) if len(values) >= T12M_WINDOW else None,
    )
