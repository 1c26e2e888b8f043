"""
Trend and noise estimation over a series of glucose readings.

Uses least-squares regression over the trailing 15 minutes to determine
the rate of change, then maps it to standard CGM trend arrows.
"""

import math
from typing import List, Optional, Sequence, Tuple

from .constants import (
    MIN_READINGS_FOR_TREND,
    MS_PER_MINUTE,
    REGRESSION_EPSILON,
    TREND_WINDOW_MS,
    NoiseThreshold,
    TrendThreshold,
)
from .models import GlucoseQuality, GlucoseReading, TrendArrow


def _window(readings: Sequence[GlucoseReading], now_ms: Optional[int]) -> List[GlucoseReading]:
    """
    Readings in the trailing trend window, Unreliable ones removed.

    The window ends at ``now_ms`` or, when not given, at the newest reading.
    """
    if not readings:
        return []
    end = now_ms if now_ms is not None else max(r.timestamp_ms for r in readings)
    cutoff = end - TREND_WINDOW_MS
    return sorted(
        (
            r for r in readings
            if cutoff <= r.timestamp_ms <= end and r.quality != GlucoseQuality.UNRELIABLE
        ),
        key=lambda r: r.timestamp_ms,
    )


def _fit(readings: Sequence[GlucoseReading]) -> Optional[Tuple[float, float, List[Tuple[float, float]]]]:
    """
    Ordinary least-squares fit of glucose against minutes since the first reading.

    Returns:
        ``(slope, intercept, points)``, or None when the x values are degenerate
    """
    first = readings[0].timestamp_ms
    points = [((r.timestamp_ms - first) / MS_PER_MINUTE, r.glucose_mg_dl) for r in readings]

    n = len(points)
    sum_x = sum(x for x, _ in points)
    sum_y = sum(y for _, y in points)
    sum_xy = sum(x * y for x, y in points)
    sum_x2 = sum(x * x for x, _ in points)

    denominator = n * sum_x2 - sum_x * sum_x
    if abs(denominator) < REGRESSION_EPSILON:
        return None

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n
    return slope, intercept, points


def rate_to_trend(rate_per_minute: float) -> TrendArrow:
    """
    Map a rate of change to a trend arrow.

    Args:
        rate_per_minute: Glucose change in mg/dL per minute

    Returns:
        Corresponding TrendArrow; the +/-0.5 band around zero is Flat
    """
    if rate_per_minute >= TrendThreshold.DOUBLE:
        return TrendArrow.DOUBLE_UP
    elif rate_per_minute >= TrendThreshold.SINGLE:
        return TrendArrow.SINGLE_UP
    elif rate_per_minute >= TrendThreshold.FORTY_FIVE:
        return TrendArrow.FORTY_FIVE_UP
    elif rate_per_minute >= -TrendThreshold.FLAT:
        return TrendArrow.FLAT
    elif rate_per_minute >= -TrendThreshold.FORTY_FIVE:
        return TrendArrow.FORTY_FIVE_DOWN
    elif rate_per_minute >= -TrendThreshold.SINGLE:
        return TrendArrow.SINGLE_DOWN
    else:
        return TrendArrow.DOUBLE_DOWN


def rate_of_change(readings: Sequence[GlucoseReading], now_ms: Optional[int] = None) -> Optional[float]:
    """Regression slope in mg/dL per minute, or None with fewer than 3 usable readings."""
    recent = _window(readings, now_ms)
    if len(recent) < MIN_READINGS_FOR_TREND:
        return None

    fit = _fit(recent)
    return fit[0] if fit is not None else 0.0


def classify_trend(readings: Sequence[GlucoseReading], now_ms: Optional[int] = None) -> TrendArrow:
    """
    Calculate the trend arrow for a series of readings.

    Args:
        readings: Glucose readings, ideally ordered by time
        now_ms: End of the 15-minute window; defaults to the newest reading

    Returns:
        TrendArrow, or ``TrendArrow.NONE`` when fewer than 3 readings
        remain after windowing and dropping Unreliable ones
    """
    if len(readings) < MIN_READINGS_FOR_TREND:
        return TrendArrow.NONE

    rate = rate_of_change(readings, now_ms)
    if rate is None:
        return TrendArrow.NONE
    return rate_to_trend(rate)


def residual_noise(readings: Sequence[GlucoseReading], now_ms: Optional[int] = None) -> float:
    """Standard deviation of residuals around the regression line (n-2 denominator)."""
    recent = _window(readings, now_ms)
    if len(recent) < MIN_READINGS_FOR_TREND:
        return 0.0

    fit = _fit(recent)
    if fit is None:
        return 0.0

    slope, intercept, points = fit
    squared = sum((y - (slope * x + intercept)) ** 2 for x, y in points)
    return math.sqrt(squared / (len(points) - 2))


def classify_noise(readings: Sequence[GlucoseReading], now_ms: Optional[int] = None) -> GlucoseQuality:
    """
    Classify signal noise from the scatter around the trend line.

    Returns:
        GOOD up to 5 mg/dL, DEGRADED up to 15 mg/dL, UNRELIABLE above.
        GOOD by definition when fewer than 3 usable readings exist.
    """
    noise = residual_noise(readings, now_ms)
    if noise > NoiseThreshold.HIGH:
        return GlucoseQuality.UNRELIABLE
    elif noise > NoiseThreshold.LOW:
        return GlucoseQuality.DEGRADED
    return GlucoseQuality.GOOD


def annotate_trends(readings: Sequence[GlucoseReading]) -> List[GlucoseReading]:
    """
    Return copies of ``readings`` sorted by time, each carrying the trend
    computed over the readings up to and including itself.
    """
    ordered = sorted(readings, key=lambda r: r.timestamp_ms)
    return [
        reading.with_trend(classify_trend(ordered[:i + 1], now_ms=reading.timestamp_ms))
        for i, reading in enumerate(ordered)
    ]
