"""
Funnel Hub — Funnel Router
============================
Sales-funnel views computed from CRM proxy data.

Endpoints:
  GET  /api/funnel/periods/resolve                 - Primary + comparison window for a preset
  GET  /api/funnel/variation                       - Variation / trend for a value pair
  GET  /api/funnel/{pipeline_id}                   - Stages, conversions, targets, comparison, lost reasons
  GET  /api/funnel/{pipeline_id}/breakdown/{level} - Ranked campaign / source / sector breakdown
  GET  /api/funnel/{pipeline_id}/sql-calls         - Call outcomes in the SQL stage
  GET  /api/funnel/{pipeline_id}/stages/{stage_id}/deals - Deals behind a stage value
  POST /api/funnel/{pipeline_id}/refresh           - Forced refetch of every loaded feed
"""
from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional, Tuple

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import ValidationError

from models.funnel_models import ComparisonConfig, ComparisonPreset, DateRange, PeriodPreset, ViewMode
from scripts.funnel.aggregator import (
    DISPLAY_ORDER,
    STAGE_TOTAL,
    BreakdownLevel,
    TopNPolicy,
    breakdown_entries,
    breakdown_total,
    compare_funnels,
    rank_breakdown,
    stages_with_data,
)
from scripts.funnel.lost_reasons import lost_reasons_for_stages
from scripts.funnel.orchestrator import FunnelOrchestrator
from scripts.funnel.periods import (
    auto_comparison_description,
    comparison_label,
    resolve_comparison_range,
    resolve_primary_range,
)
from scripts.funnel.targets import target_vs_actual
from scripts.funnel.variation import conversion_rate, describe_variation, round_half_up
from scripts.lib.config import get_settings
from scripts.lib.logger import setup_logger

logger = setup_logger("funnel_router")

router = APIRouter(prefix="/api/funnel", tags=["funnel"])

# breakdown level -> tracking feed that carries it
LEVEL_KIND = {
    BreakdownLevel.CAMPAIGN: "campaign",
    BreakdownLevel.ADSET: "campaign",
    BreakdownLevel.CREATIVE: "campaign",
    BreakdownLevel.SOURCE: "source",
    BreakdownLevel.SECTOR: "sector",
}

SQL_CALL_OUTCOMES = ("agendada", "sim", "noshow", "reagendada")


# ─── Helpers ──────────────────────────────────────────────────

def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _range_or_none(start: Optional[date], end: Optional[date]) -> Optional[DateRange]:
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise ValueError("Both start and end are required for a custom range")
    return DateRange(start=start, end=end)


def _resolve_windows(
    preset: PeriodPreset,
    start: Optional[date],
    end: Optional[date],
    comparison: ComparisonPreset,
    comparison_start: Optional[date],
    comparison_end: Optional[date],
) -> Tuple[DateRange, ComparisonConfig]:
    """Validate query parameters into a primary window and comparison config (422 on misuse)."""
    try:
        window = resolve_primary_range(preset, custom_range=_range_or_none(start, end))
        config = ComparisonConfig(
            enabled=comparison is not ComparisonPreset.OFF,
            preset=comparison,
            custom_range=_range_or_none(comparison_start, comparison_end),
        )
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    return window, config


def get_orchestrator(request: Request, pipeline_id: int) -> FunnelOrchestrator:
    """Per-pipeline orchestrator held on app.state, created on first use."""
    settings = get_settings()
    if settings.pipelines and settings.pipeline(pipeline_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown pipeline {pipeline_id}")

    source = getattr(request.app.state, "proxy", None)
    if source is None:
        raise HTTPException(status_code=503, detail="CRM proxy not configured")

    orchestrators = request.app.state.orchestrators
    if pipeline_id not in orchestrators:
        orchestrators[pipeline_id] = FunnelOrchestrator(
            source, pipeline_id, debounce=settings.debounce_seconds,
        )
    return orchestrators[pipeline_id]


# ─── Periods & variation ──────────────────────────────────────

@router.get("/periods/resolve")
async def resolve_periods(
    preset: PeriodPreset = Query(PeriodPreset.THIS_MONTH, description="Primary period preset"),
    start: Optional[date] = Query(None, description="Custom range start"),
    end: Optional[date] = Query(None, description="Custom range end"),
    comparison: ComparisonPreset = Query(ComparisonPreset.AUTO, description="Comparison preset"),
    comparison_start: Optional[date] = Query(None),
    comparison_end: Optional[date] = Query(None),
):
    """Concrete primary and comparison windows plus the badge label."""
    window, config = _resolve_windows(
        preset, start, end, comparison, comparison_start, comparison_end,
    )
    previous = resolve_comparison_range(window, preset, config)
    return {
        "preset": preset.value,
        "primary": window.model_dump(mode="json"),
        "comparison": previous.model_dump(mode="json") if previous else None,
        "comparison_preset": comparison.value,
        "label": comparison_label(preset, comparison, previous),
        "auto_description": auto_comparison_description(preset),
    }


@router.get("/variation")
async def variation(
    current: float = Query(..., description="Current value"),
    previous: float = Query(..., description="Previous value"),
    is_points: bool = Query(False, description="Percentage-point delta between two rates"),
):
    """Variation, display string and trend for one value pair."""
    settings = get_settings()
    return describe_variation(
        current, previous, is_points=is_points, threshold=settings.trend_threshold,
    ).model_dump()


# ─── Funnel view ──────────────────────────────────────────────

@router.get("/{pipeline_id}")
async def funnel_view(
    request: Request,
    pipeline_id: int,
    preset: PeriodPreset = Query(PeriodPreset.THIS_MONTH),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    comparison: ComparisonPreset = Query(ComparisonPreset.AUTO),
    comparison_start: Optional[date] = Query(None),
    comparison_end: Optional[date] = Query(None),
    view_mode: ViewMode = Query(ViewMode.PERIOD, description="period or snapshot"),
    lost_stage: Optional[List[int]] = Query(None, description="Only deals lost in these stages"),
):
    """Stage values, conversions, targets and variations against the comparison window."""
    window, config = _resolve_windows(
        preset, start, end, comparison, comparison_start, comparison_end,
    )
    if view_mode is ViewMode.SNAPSHOT:
        # Open-deal counts ignore the window, so two windows always match
        config = ComparisonConfig(enabled=False)

    orchestrator = get_orchestrator(request, pipeline_id)
    result = await orchestrator.load_period(window, preset, config)

    current = result.current.data
    if current is None:
        if result.error:
            raise HTTPException(status_code=502, detail=result.error)
        raise HTTPException(status_code=404, detail="No funnel data for this window")

    settings = get_settings()
    previous = result.previous.data if result.previous is not None else None
    try:
        view = compare_funnels(
            current, previous, view_mode, threshold=settings.trend_threshold,
        )
        targets = target_vs_actual(current, view_mode, settings.benchmarks)
    except (TypeError, ValueError) as e:
        logger.error("Failed to build funnel view for pipeline %d: %s", pipeline_id, e)
        raise HTTPException(status_code=500, detail="Failed to build funnel view")

    pipeline = settings.pipeline(pipeline_id)
    label_preset = config.preset if config.enabled else ComparisonPreset.OFF
    return {
        "pipeline_id": pipeline_id,
        "pipeline_name": pipeline.name if pipeline else None,
        "pipedrive_url": settings.pipedrive_url(pipeline_id),
        "window": result.window.model_dump(mode="json"),
        "comparison_window": (
            result.comparison_window.model_dump(mode="json")
            if result.comparison_window else None
        ),
        "comparison_label": comparison_label(preset, label_preset, result.comparison_window),
        "view": view.model_dump(mode="json"),
        "targets": targets.model_dump(mode="json"),
        "lost_reasons": lost_reasons_for_stages(
            current.lost_reasons, lost_stage, limit=settings.lost_reason_limit,
        ).model_dump(),
        "last_updated": _timestamp(result.current.last_updated),
        "error": result.error,
    }


@router.get("/{pipeline_id}/breakdown/{level}")
async def funnel_breakdown(
    request: Request,
    pipeline_id: int,
    level: BreakdownLevel,
    snapshot: bool = Query(False, description="Open deals now instead of the window"),
    stage: str = Query(STAGE_TOTAL, description="'total' or a stage id"),
    preset: PeriodPreset = Query(PeriodPreset.THIS_MONTH),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=100, description="Top-N override"),
):
    """Ranked top-N breakdown for a stage filter."""
    if stage != STAGE_TOTAL and not stage.isdigit():
        raise HTTPException(status_code=422, detail="stage must be 'total' or a stage id")

    window = None
    if not snapshot:
        window, _ = _resolve_windows(preset, start, end, ComparisonPreset.OFF, None, None)

    orchestrator = get_orchestrator(request, pipeline_id)
    result = await orchestrator.load_breakdown(LEVEL_KIND[level], window)

    payload = result.data
    if payload is None:
        if result.error:
            raise HTTPException(status_code=502, detail=result.error)
        raise HTTPException(status_code=404, detail="No breakdown data")

    settings = get_settings()
    entries = breakdown_entries(payload, level)
    policy = TopNPolicy(limit=limit or settings.top_n)
    items = rank_breakdown(entries, stage, policy, order=DISPLAY_ORDER.get(level))

    return {
        "pipeline_id": pipeline_id,
        "level": level.value,
        "snapshot": snapshot,
        "window": window.model_dump(mode="json") if window else None,
        "stage": stage,
        "items": [item.model_dump() for item in items],
        "total": breakdown_total(entries),
        "stages": [
            s.model_dump() for s in stages_with_data(payload.all_stages, entries)
        ],
        "fields_configured": getattr(payload, "has_fields_configured", True),
        "last_updated": _timestamp(result.last_updated),
        "error": result.error,
    }


# ─── Drill-downs ──────────────────────────────────────────────

@router.get("/{pipeline_id}/sql-calls")
async def sql_call_metrics(
    request: Request,
    pipeline_id: int,
    view_mode: ViewMode = Query(ViewMode.PERIOD, description="period or snapshot"),
):
    """Call outcomes (scheduled, held, no-show, rescheduled) of deals in the SQL stage."""
    orchestrator = get_orchestrator(request, pipeline_id)
    result = await orchestrator.load_sql_calls(view_mode)

    metrics = result.data
    if metrics is None:
        if result.error:
            raise HTTPException(status_code=502, detail=result.error)
        raise HTTPException(status_code=404, detail="No SQL call metrics")

    shares = {}
    for outcome in SQL_CALL_OUTCOMES:
        rate = conversion_rate(metrics.total, getattr(metrics, outcome))
        shares[outcome] = round_half_up(rate) if rate is not None else 0

    return {
        "pipeline_id": pipeline_id,
        "view_mode": view_mode.value,
        "metrics": metrics.model_dump(),
        "shares": shares,
        "last_updated": _timestamp(result.last_updated),
        "error": result.error,
    }


@router.get("/{pipeline_id}/stages/{stage_id}/deals")
async def stage_deals(
    request: Request,
    pipeline_id: int,
    stage_id: int,
    view_mode: ViewMode = Query(ViewMode.SNAPSHOT, description="period or snapshot"),
    preset: PeriodPreset = Query(PeriodPreset.THIS_MONTH),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
):
    """Deals behind one stage value: open now (snapshot) or arrived in the window (period)."""
    window = None
    if view_mode is ViewMode.PERIOD:
        window, _ = _resolve_windows(preset, start, end, ComparisonPreset.OFF, None, None)

    orchestrator = get_orchestrator(request, pipeline_id)
    result = await orchestrator.load_stage_deals(stage_id, view_mode, window)

    if result.data is None and result.error:
        raise HTTPException(status_code=502, detail=result.error)

    settings = get_settings()
    deals = result.data or []
    return {
        "pipeline_id": pipeline_id,
        "stage_id": stage_id,
        "view_mode": view_mode.value,
        "window": window.model_dump(mode="json") if window else None,
        "count": len(deals),
        "deals": [
            {**deal.model_dump(), "url": settings.deal_url(deal.id)} for deal in deals
        ],
        "last_updated": _timestamp(result.last_updated),
        "error": result.error,
    }


@router.post("/{pipeline_id}/refresh")
async def refresh_funnel(request: Request, pipeline_id: int):
    """Forced refetch of every feed the pipeline has loaded so far."""
    orchestrator = get_orchestrator(request, pipeline_id)
    await orchestrator.refetch(force=True)

    if orchestrator.primary.state.data is None and orchestrator.error:
        raise HTTPException(status_code=502, detail=orchestrator.error)

    return {
        "pipeline_id": pipeline_id,
        "status": orchestrator.primary.state.status.value,
        "last_updated": _timestamp(orchestrator.last_updated),
        "error": orchestrator.error,
    }
