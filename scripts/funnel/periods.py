"""
Funnel Hub — Period Resolver
==============================

Turns a named preset ("thisMonth", "last7Days", ...) into a concrete inclusive
date window and derives the matching comparison window for a comparison
preset (auto, previousMonth, previousQuarter, sameLastYear, custom, off).

All calendar arithmetic is relative to an injected clock so every preset can
be pinned in tests:

    from datetime import datetime
    from scripts.funnel.periods import resolve_primary_range, resolve_comparison_range

    clock = lambda: datetime(2025, 2, 5, 9, 30)
    primary = resolve_primary_range("last7Days", clock=clock)
    previous = resolve_comparison_range(primary, "last7Days", ComparisonConfig())
"""
from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Tuple, Union

from models.funnel_models import ComparisonConfig, ComparisonPreset, DateRange, PeriodPreset

Clock = Callable[[], datetime]

PresetLike = Union[PeriodPreset, str]
ComparisonLike = Union[ComparisonPreset, str]

ROLLING_WINDOWS = {
    PeriodPreset.LAST_7_DAYS: 7,
    PeriodPreset.LAST_14_DAYS: 14,
    PeriodPreset.LAST_30_DAYS: 30,
    PeriodPreset.LAST_90_DAYS: 90,
}


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------

def _today(clock: Optional[Clock]) -> date:
    return (clock or datetime.now)().date()


def _days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def shift_months(day: date, months: int) -> date:
    """Move a date by whole months, clamping to the last day of the target month."""
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    return date(year, month, min(day.day, _days_in_month(year, month)))


def shift_years(day: date, years: int) -> date:
    return shift_months(day, years * 12)


def month_bounds(day: date) -> DateRange:
    return DateRange(
        start=day.replace(day=1),
        end=day.replace(day=_days_in_month(day.year, day.month)),
    )


def quarter_bounds(day: date) -> DateRange:
    first_month = 3 * ((day.month - 1) // 3) + 1
    start = date(day.year, first_month, 1)
    return DateRange(start=start, end=month_bounds(shift_months(start, 2)).end)


def year_bounds(year: int) -> DateRange:
    return DateRange(start=date(year, 1, 1), end=date(year, 12, 31))


def _shift_days(window: DateRange, days: int) -> DateRange:
    delta = timedelta(days=days)
    return DateRange(start=window.start + delta, end=window.end + delta)


def preceding_window(window: DateRange) -> DateRange:
    """Window of identical duration ending the day before ``window`` starts."""
    return _shift_days(window, -window.days)


# ---------------------------------------------------------------------------
# Primary range
# ---------------------------------------------------------------------------

def resolve_primary_range(
    preset: PresetLike,
    clock: Optional[Clock] = None,
    custom_range: Optional[DateRange] = None,
) -> DateRange:
    """
    Resolve a period preset to an inclusive date window.

    Args:
        preset: PeriodPreset (or its string value).
        clock: Zero-argument callable returning the current datetime.
        custom_range: Window returned verbatim for the ``custom`` preset.

    Raises:
        ValueError: unknown preset, or ``custom`` without a range.
    """
    preset = PeriodPreset(preset)
    today = _today(clock)

    if preset is PeriodPreset.CUSTOM:
        if custom_range is None:
            raise ValueError("custom preset requires an explicit date range")
        return custom_range

    if preset is PeriodPreset.TODAY:
        return DateRange(start=today, end=today)

    if preset is PeriodPreset.YESTERDAY:
        yesterday = today - timedelta(days=1)
        return DateRange(start=yesterday, end=yesterday)

    if preset is PeriodPreset.THIS_WEEK:
        # Sunday-start week
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        return DateRange(start=start, end=start + timedelta(days=6))

    if preset in ROLLING_WINDOWS:
        days = ROLLING_WINDOWS[preset]
        return DateRange(start=today - timedelta(days=days - 1), end=today)

    if preset is PeriodPreset.THIS_MONTH:
        return month_bounds(today)

    if preset is PeriodPreset.LAST_MONTH:
        return month_bounds(shift_months(today.replace(day=1), -1))

    if preset is PeriodPreset.THIS_YEAR:
        return year_bounds(today.year)

    # LAST_YEAR
    return year_bounds(today.year - 1)


# ---------------------------------------------------------------------------
# Comparison range
# ---------------------------------------------------------------------------

def auto_comparison_range(primary: DateRange, primary_preset: PresetLike) -> DateRange:
    """Mirror of the primary window one unit earlier. Never raises."""
    try:
        preset = PeriodPreset(primary_preset)
    except ValueError:
        return preceding_window(primary)

    if preset in (PeriodPreset.TODAY, PeriodPreset.YESTERDAY):
        return _shift_days(primary, -1)

    if preset is PeriodPreset.THIS_WEEK:
        return _shift_days(primary, -7)

    if preset in ROLLING_WINDOWS:
        return preceding_window(primary)

    if preset is PeriodPreset.THIS_MONTH:
        # Same day-of-month span in the previous month
        return DateRange(
            start=shift_months(primary.start, -1).replace(day=1),
            end=shift_months(primary.end, -1),
        )

    if preset is PeriodPreset.LAST_MONTH:
        return month_bounds(shift_months(primary.start, -1))

    if preset is PeriodPreset.THIS_YEAR:
        return DateRange(
            start=shift_years(primary.start, -1),
            end=shift_years(primary.end, -1),
        )

    return preceding_window(primary)


def resolve_comparison_range(
    primary: DateRange,
    primary_preset: PresetLike,
    config: ComparisonConfig,
) -> Optional[DateRange]:
    """
    Derive the comparison window for ``primary``.

    Returns None when comparison is disabled, turned off, or a custom
    comparison has no range yet.
    """
    if not config.enabled or config.preset is ComparisonPreset.OFF:
        return None

    preset = config.preset

    if preset is ComparisonPreset.AUTO:
        return auto_comparison_range(primary, primary_preset)

    if preset is ComparisonPreset.PREVIOUS_MONTH:
        return month_bounds(shift_months(primary.start, -1))

    if preset is ComparisonPreset.PREVIOUS_QUARTER:
        return quarter_bounds(shift_months(primary.start, -3))

    if preset is ComparisonPreset.SAME_LAST_YEAR:
        return DateRange(
            start=shift_years(primary.start, -1),
            end=shift_years(primary.end, -1),
        )

    # CUSTOM
    return config.custom_range


def resolve_periods(
    preset: PresetLike,
    config: ComparisonConfig,
    clock: Optional[Clock] = None,
    custom_range: Optional[DateRange] = None,
) -> Tuple[DateRange, Optional[DateRange]]:
    """Primary window plus its comparison window in one call."""
    primary = resolve_primary_range(preset, clock=clock, custom_range=custom_range)
    return primary, resolve_comparison_range(primary, preset, config)


# ---------------------------------------------------------------------------
# Display labels (pt-BR, as shown on the dashboard)
# ---------------------------------------------------------------------------

_AUTO_LABELS = {
    PeriodPreset.TODAY: ("vs ontem", "Ontem"),
    PeriodPreset.YESTERDAY: ("vs anteontem", "Anteontem"),
    PeriodPreset.THIS_WEEK: ("vs semana passada", "Semana passada"),
    PeriodPreset.LAST_7_DAYS: ("vs 7 dias anteriores", "7 dias anteriores"),
    PeriodPreset.LAST_14_DAYS: ("vs 14 dias anteriores", "14 dias anteriores"),
    PeriodPreset.LAST_30_DAYS: ("vs 30 dias anteriores", "30 dias anteriores"),
    PeriodPreset.LAST_90_DAYS: ("vs 90 dias anteriores", "90 dias anteriores"),
    PeriodPreset.THIS_MONTH: ("vs mês passado", "Mês passado"),
    PeriodPreset.LAST_MONTH: ("vs mês anterior", "Mês retrasado"),
    PeriodPreset.THIS_YEAR: ("vs ano passado", "Ano passado"),
}
_FALLBACK_AUTO = ("vs período anterior", "Mesmo intervalo anterior")

_FIXED_LABELS = {
    ComparisonPreset.PREVIOUS_MONTH: "vs mês passado",
    ComparisonPreset.PREVIOUS_QUARTER: "vs trimestre passado",
    ComparisonPreset.SAME_LAST_YEAR: "vs mesmo período ano anterior",
}


def _auto_labels(primary_preset: PresetLike) -> Tuple[str, str]:
    try:
        return _AUTO_LABELS.get(PeriodPreset(primary_preset), _FALLBACK_AUTO)
    except ValueError:
        return _FALLBACK_AUTO


def comparison_label(
    primary_preset: PresetLike,
    comparison_preset: ComparisonLike,
    comparison_range: Optional[DateRange] = None,
) -> str:
    """Badge label such as "vs mês passado" or "vs 01/01 - 15/01"."""
    preset = ComparisonPreset(comparison_preset)

    if preset is ComparisonPreset.OFF:
        return ""
    if preset is ComparisonPreset.AUTO:
        return _auto_labels(primary_preset)[0]
    if preset is ComparisonPreset.CUSTOM:
        if comparison_range is not None:
            return (
                f"vs {comparison_range.start:%d/%m} - {comparison_range.end:%d/%m}"
            )
        return "vs período personalizado"
    return _FIXED_LABELS[preset]


def auto_comparison_description(primary_preset: PresetLike) -> str:
    """Description of what "auto" compares against, for the selector."""
    return _auto_labels(primary_preset)[1]
