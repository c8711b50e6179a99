"""
Funnel Hub — Variation Calculator
===================================

Period-over-period arithmetic for dashboard badges.

    percent_variation(15, 10)     -> 50.0
    percent_variation(0, 0)       -> None   (no meaningful comparison)
    points_variation(42, 45)      -> -3     (percentage points)
    classify_trend(2.1)           -> "up"
    format_variation(0.4)         -> "+0.4%"
"""
from __future__ import annotations

import math
from typing import Optional

from models.funnel_models import Trend, VariationSummary

PLACEHOLDER = "—"
DEFAULT_TREND_THRESHOLD = 2.0


def percent_variation(current: float, previous: float) -> Optional[float]:
    """
    Percentage change from ``previous`` to ``current``.

    Growth from zero is reported as 100% when there is something now and as
    None when both sides are zero.
    """
    if previous == 0:
        return 100.0 if current > 0 else None
    return (current - previous) / previous * 100


def points_variation(current_rate: float, previous_rate: float) -> float:
    """Percentage-point delta between two rates (42% vs 45% -> -3pp)."""
    return current_rate - previous_rate


def classify_trend(
    variation: Optional[float],
    threshold: float = DEFAULT_TREND_THRESHOLD,
) -> Trend:
    if variation is None:
        return "stable"
    if variation > threshold:
        return "up"
    if variation < -threshold:
        return "down"
    return "stable"


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def format_variation(variation: Optional[float], is_points: bool = False) -> str:
    """Signed display string; one decimal place below magnitude 1."""
    if variation is None:
        return PLACEHOLDER

    sign = "+" if variation > 0 else ""
    suffix = "pp" if is_points else "%"

    if variation != 0 and abs(variation) < 1:
        formatted = f"{variation:.1f}"
    else:
        formatted = str(round_half_up(variation))

    return f"{sign}{formatted}{suffix}"


def conversion_rate(from_count: int, to_count: int) -> Optional[float]:
    """Share of ``from_count`` that reached the next stage, None when nothing entered."""
    if from_count == 0:
        return None
    return to_count / from_count * 100


def describe_variation(
    current: Optional[float],
    previous: Optional[float],
    is_points: bool = False,
    threshold: float = DEFAULT_TREND_THRESHOLD,
) -> VariationSummary:
    """Value, display string and trend for a current/previous pair."""
    if current is None or previous is None:
        value = None
    elif is_points:
        value = points_variation(current, previous)
    else:
        value = percent_variation(current, previous)

    return VariationSummary(
        value=value,
        formatted=format_variation(value, is_points),
        trend=classify_trend(value, threshold),
        is_points=is_points,
    )
