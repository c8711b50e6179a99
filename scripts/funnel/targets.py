"""
Funnel Hub — Target vs Actual
===============================

Checks the Lead → MQL → SQL → Oportunidade step rates of a pipeline against
sector benchmarks ("Serviços Complexos" by default).

Stages are matched by name, since pipelines number their stages differently:
"Leads", "SQL (call agendada)" and "Oportunidade - proposta" all resolve to a
canonical key. Step rates follow the view mode: arrivals during the window in
period mode (with the window's lead count at the top), open deals per stage in
snapshot mode.
"""
from __future__ import annotations

from typing import Dict, Mapping, Optional, Sequence

from models.funnel_models import (
    FunnelData,
    StageBenchmark,
    StageInfo,
    StageStatus,
    TargetMetric,
    TargetVsActual,
    ViewMode,
)
from scripts.funnel.aggregator import stage_values
from scripts.funnel.variation import PLACEHOLDER, conversion_rate

BENCHMARK_LABEL = "Serviços Complexos"

# BR 2025 inside-sales ranges for high-ticket consulting, in percent
DEFAULT_BENCHMARKS: Dict[str, StageBenchmark] = {
    "lead_to_mql": StageBenchmark(min=10, avg=15, max=20),
    "mql_to_sql": StageBenchmark(min=20, avg=30, max=35),
    "sql_to_opp": StageBenchmark(min=20, avg=30, max=40),
}

# key, label, from stage key, to stage key
TARGET_STEPS = (
    ("lead_to_mql", "Lead → MQL", "lead", "mql"),
    ("mql_to_sql", "MQL → SQL", "mql", "sql"),
    ("sql_to_opp", "SQL → Oportunidade", "sql", "oportunidade"),
)

_STAGE_LABELS = {"lead": "Lead", "mql": "MQL", "sql": "SQL", "oportunidade": "Oportunidade"}


def normalize_stage_key(name: str) -> str:
    """Canonical key for a stage name; unknown names come back lower-cased."""
    normalized = name.lower().strip()
    if normalized in ("lead", "leads"):
        return "lead"
    if normalized == "mql":
        return "mql"
    if normalized.startswith("sql") or "sql (" in normalized:
        return "sql"
    if "oportunidade" in normalized or normalized == "opportunity":
        return "oportunidade"
    if "contrato" in normalized or normalized == "contract":
        return "contrato"
    return normalized


def find_stage_id(stages: Sequence[StageInfo], key: str) -> Optional[int]:
    """First stage whose name normalises to ``key``."""
    for stage in stages:
        if normalize_stage_key(stage.name) == key:
            return stage.id
    return None


def stage_status(actual: Optional[float], benchmark: StageBenchmark) -> StageStatus:
    if actual is None:
        return StageStatus.NO_DATA
    if actual >= benchmark.avg:
        return StageStatus.OK
    if actual >= benchmark.min:
        return StageStatus.WARNING
    return StageStatus.CRITICAL


def _format_rate(rate: Optional[float]) -> str:
    if rate is None:
        return PLACEHOLDER
    return f"{rate:.1f}%"


def step_volumes(funnel: FunnelData, view_mode: ViewMode) -> Dict[str, int]:
    """Deal counts at lead / mql / sql / oportunidade for the view mode."""
    view_mode = ViewMode(view_mode)
    stages = funnel.ordered_stages()
    values = stage_values(funnel, view_mode)

    volumes = {}
    for key in _STAGE_LABELS:
        stage_id = find_stage_id(stages, key)
        volumes[key] = values.get(stage_id) if stage_id is not None else 0

    if view_mode is ViewMode.PERIOD:
        volumes["lead"] = funnel.leads_count
    return volumes


def target_vs_actual(
    funnel: FunnelData,
    view_mode: ViewMode,
    benchmarks: Optional[Mapping[str, StageBenchmark]] = None,
    benchmark_label: str = BENCHMARK_LABEL,
) -> TargetVsActual:
    """
    Step rates against their benchmarks.

    A step whose starting stage holds no deals (or is missing from the
    pipeline) reports ``actual=None`` and status ``no_data``.
    """
    view_mode = ViewMode(view_mode)
    targets = {**DEFAULT_BENCHMARKS, **(benchmarks or {})}
    volumes = step_volumes(funnel, view_mode)

    metrics = []
    for key, label, from_key, to_key in TARGET_STEPS:
        target = targets[key]
        actual = conversion_rate(volumes[from_key], volumes[to_key])
        metrics.append(
            TargetMetric(
                key=key,
                label=label,
                from_stage=_STAGE_LABELS[from_key],
                to_stage=_STAGE_LABELS[to_key],
                actual=actual,
                formatted=_format_rate(actual),
                target=target,
                status=stage_status(actual, target),
                gap_points=actual - target.avg if actual is not None else None,
            )
        )

    return TargetVsActual(
        view_mode=view_mode,
        benchmark_label=benchmark_label,
        volumes=volumes,
        metrics=metrics,
    )
