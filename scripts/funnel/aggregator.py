"""
Funnel Hub — Funnel Aggregator
================================

Turns the raw per-stage and per-breakdown counts returned by the CRM proxy
into display-ready funnel data:

- stage-transition conversion rates (consecutive stages by order_nr)
- ranked top-N breakdowns by campaign / ad set / creative / source / sector
- per-stage values and period-over-period comparison rows

Stage metrics depend on the view mode. In ``period`` mode a stage's value is
the number of deals that arrived in it during the window
(``PeriodStageArrivals``); in ``snapshot`` mode it is the number of open
deals sitting in it right now (``SnapshotStageCounts``). The two are distinct
types and functions that take one refuse the other.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from models.funnel_models import (
    LEAD_SOURCE_ORDER,
    NOT_INFORMED,
    BreakdownEntry,
    BreakdownItem,
    CampaignTrackingData,
    FunnelComparison,
    FunnelData,
    LeadSourceData,
    PeriodStageArrivals,
    SectorDistributionData,
    SnapshotStageCounts,
    StageInfo,
    StageRow,
    TransitionRow,
    ViewMode,
)
from scripts.funnel.variation import DEFAULT_TREND_THRESHOLD, describe_variation, round_half_up

StageCounts = Union[SnapshotStageCounts, PeriodStageArrivals]

STAGE_TOTAL = "total"


# ---------------------------------------------------------------------------
# Stage ordering and conversion lookup
# ---------------------------------------------------------------------------

_PARENTHETICAL = re.compile(r"\(.*$")
_WORD_SEPARATOR = re.compile(r"[\s\-–—|/:]+")


def stage_slug(name: str) -> str:
    """
    Name-derived key for a stage: lower-cased, parenthetical suffix and
    trailing descriptors dropped.

        "MQL (qualificado)"          -> "mql"
        "Oportunidade em negociação" -> "oportunidade"
    """
    text = _PARENTHETICAL.sub("", name.lower()).strip()
    words = [w for w in _WORD_SEPARATOR.split(text) if w]
    return words[0] if words else ""


def id_key(from_stage: StageInfo, to_stage: StageInfo) -> str:
    return f"{from_stage.id}_{to_stage.id}"


def name_key(from_stage: StageInfo, to_stage: StageInfo) -> str:
    return f"{stage_slug(from_stage.name)}_to_{stage_slug(to_stage.name)}"


@dataclass(frozen=True)
class ResolvedById:
    key: str
    rate: float


@dataclass(frozen=True)
class ResolvedByName:
    key: str
    rate: float


@dataclass(frozen=True)
class Unresolved:
    """Neither key present: no movement recorded, reported as 0%."""
    id_key: str
    name_key: str
    rate: float = 0.0


ConversionLookup = Union[ResolvedById, ResolvedByName, Unresolved]


def resolve_conversion(
    conversions: Mapping[str, float],
    from_stage: StageInfo,
    to_stage: StageInfo,
) -> ConversionLookup:
    """Look up a transition rate by numeric-id key, then by name-slug key."""
    by_id = id_key(from_stage, to_stage)
    if conversions.get(by_id) is not None:
        return ResolvedById(key=by_id, rate=float(conversions[by_id]))

    by_name = name_key(from_stage, to_stage)
    if conversions.get(by_name) is not None:
        return ResolvedByName(key=by_name, rate=float(conversions[by_name]))

    return Unresolved(id_key=by_id, name_key=by_name)


def sort_stages(stages: Sequence[StageInfo]) -> List[StageInfo]:
    return sorted(stages, key=lambda s: s.order_nr)


def stage_pairs(stages: Sequence[StageInfo]) -> List[Tuple[StageInfo, StageInfo]]:
    """Consecutive (from, to) pairs in order_nr order."""
    ordered = sort_stages(stages)
    return list(zip(ordered, ordered[1:]))


# ---------------------------------------------------------------------------
# View-mode stage values
# ---------------------------------------------------------------------------

def stage_values(funnel: FunnelData, view_mode: ViewMode) -> StageCounts:
    """Per-stage values for the view mode; never mixes the two maps."""
    if ViewMode(view_mode) is ViewMode.SNAPSHOT:
        return funnel.snapshot_counts()
    return funnel.period_arrivals()


def _require_counts(counts: StageCounts, view_mode: ViewMode) -> StageCounts:
    view_mode = ViewMode(view_mode)
    expected = (
        SnapshotStageCounts if view_mode is ViewMode.SNAPSHOT
        else PeriodStageArrivals
    )
    if not isinstance(counts, expected):
        raise TypeError(
            f"{view_mode.value} view needs {expected.__name__}, "
            f"got {type(counts).__name__}"
        )
    return counts


def leads_value(funnel: FunnelData, view_mode: ViewMode) -> int:
    """Top-of-funnel count: window leads in period mode, first-stage deals in snapshot."""
    if ViewMode(view_mode) is ViewMode.PERIOD:
        return funnel.leads_count
    stages = funnel.ordered_stages()
    if not stages:
        return 0
    return funnel.snapshot_counts().get(stages[0].id)


def computed_conversions(
    stages: Sequence[StageInfo],
    counts: StageCounts,
    view_mode: ViewMode,
) -> Dict[str, float]:
    """
    Rates derived from stage values, keyed "{fromId}_{toId}".

    Transitions whose source stage has no deals are left out so the caller
    can fall back to the proxy's own figures.
    """
    counts = _require_counts(counts, view_mode)
    rates: Dict[str, float] = {}
    for from_stage, to_stage in stage_pairs(stages):
        entered = counts.get(from_stage.id)
        if entered > 0:
            rates[id_key(from_stage, to_stage)] = round_half_up(
                counts.get(to_stage.id) / entered * 100
            )
    return rates


@dataclass(frozen=True)
class Transition:
    from_stage: StageInfo
    to_stage: StageInfo
    rate: float
    resolved_by: str

    @property
    def key(self) -> str:
        return id_key(self.from_stage, self.to_stage)


def _lookup_tag(lookup: ConversionLookup) -> str:
    if isinstance(lookup, ResolvedById):
        return "id"
    if isinstance(lookup, ResolvedByName):
        return "name"
    return "unresolved"


def funnel_transitions(funnel: FunnelData, view_mode: ViewMode) -> List[Transition]:
    """
    Conversion rate for every consecutive stage pair.

    Rates come from the view mode's stage values when the source stage has
    deals. Otherwise period mode falls back to the proxy's conversion map
    (id key, then name key, then 0); snapshot mode reports 0 since that map
    describes movement within the window.
    """
    view_mode = ViewMode(view_mode)
    stages = funnel.ordered_stages()
    computed = computed_conversions(stages, stage_values(funnel, view_mode), view_mode)

    transitions: List[Transition] = []
    for from_stage, to_stage in stage_pairs(stages):
        key = id_key(from_stage, to_stage)
        if key in computed:
            transitions.append(Transition(from_stage, to_stage, computed[key], "computed"))
            continue

        if view_mode is ViewMode.PERIOD:
            lookup = resolve_conversion(funnel.conversions, from_stage, to_stage)
            transitions.append(
                Transition(from_stage, to_stage, lookup.rate, _lookup_tag(lookup))
            )
        else:
            transitions.append(Transition(from_stage, to_stage, 0.0, "unresolved"))
    return transitions


# ---------------------------------------------------------------------------
# Breakdown ranking
# ---------------------------------------------------------------------------

class BreakdownLevel(str, Enum):
    CAMPAIGN = "campaign"
    ADSET = "adset"
    CREATIVE = "creative"
    SOURCE = "source"
    SECTOR = "sector"


@dataclass(frozen=True)
class TopNPolicy:
    """How many ranked entries to keep. The long tail is dropped, not folded into "other"."""
    limit: Optional[int] = 10

    def apply(self, ranked: List) -> List:
        if self.limit is None:
            return ranked
        return ranked[: self.limit]


DEFAULT_TOP_N = TopNPolicy()

# Levels shown in a fixed order rather than by size
DISPLAY_ORDER: Dict[BreakdownLevel, Sequence[str]] = {
    BreakdownLevel.SOURCE: LEAD_SOURCE_ORDER,
}

BreakdownPayload = Union[CampaignTrackingData, LeadSourceData, SectorDistributionData]


def breakdown_entries(
    payload: Optional[BreakdownPayload],
    level: BreakdownLevel,
) -> Dict[str, BreakdownEntry]:
    """The entry map of ``payload`` for ``level`` (empty when the payload lacks it)."""
    if payload is None:
        return {}
    level = BreakdownLevel(level)
    attribute = {
        BreakdownLevel.CAMPAIGN: "by_campaign",
        BreakdownLevel.ADSET: "by_adset",
        BreakdownLevel.CREATIVE: "by_creative",
        BreakdownLevel.SOURCE: "by_source",
        BreakdownLevel.SECTOR: "by_sector",
    }[level]
    return getattr(payload, attribute, None) or {}


def _entry_count(entry: BreakdownEntry, stage: Union[str, int]) -> int:
    if stage == STAGE_TOTAL:
        return entry.total
    return entry.by_stage.get(int(stage), 0)


def rank_breakdown(
    entries: Mapping[str, BreakdownEntry],
    stage: Union[str, int] = STAGE_TOTAL,
    policy: TopNPolicy = DEFAULT_TOP_N,
    order: Optional[Sequence[str]] = None,
) -> List[BreakdownItem]:
    """
    Top entries for a stage filter ("total" or a stage id), largest first.

    ``order`` pins known names to a fixed display order (lead sources); names
    outside it follow, largest first. Percentages are shares of the kept
    entries' combined count.
    """
    counted = [
        (name, entry, _entry_count(entry, stage))
        for name, entry in entries.items()
    ]
    counted = [row for row in counted if row[2] > 0]
    if order:
        position = {name: index for index, name in enumerate(order)}
        counted.sort(key=lambda row: (position.get(row[0], len(position)), -row[2]))
    else:
        counted.sort(key=lambda row: row[2], reverse=True)
    kept = policy.apply(counted)

    kept_total = sum(count for _, _, count in kept)
    return [
        BreakdownItem(
            name=name or NOT_INFORMED,
            count=count,
            percentage=(count / kept_total * 100) if kept_total > 0 else 0.0,
            by_source=dict(entry.by_source),
        )
        for name, entry, count in kept
    ]


def breakdown_total(entries: Mapping[str, BreakdownEntry]) -> int:
    return sum(entry.total for entry in entries.values())


def stages_with_data(
    all_stages: Sequence[StageInfo],
    *entry_maps: Mapping[str, BreakdownEntry],
) -> List[StageInfo]:
    """Stages that hold at least one deal in any of the breakdowns."""
    seen = set()
    for entries in entry_maps:
        for entry in entries.values():
            seen.update(sid for sid, count in entry.by_stage.items() if count > 0)
    return [stage for stage in all_stages if stage.id in seen]


# ---------------------------------------------------------------------------
# Period-over-period comparison
# ---------------------------------------------------------------------------

def compare_funnels(
    current: FunnelData,
    previous: Optional[FunnelData],
    view_mode: ViewMode,
    threshold: float = DEFAULT_TREND_THRESHOLD,
) -> FunnelComparison:
    """
    Stage and transition rows with variations against ``previous``.

    Stage values get percent variations, conversion rates get
    percentage-point variations. Without a previous funnel every variation
    is None.
    """
    view_mode = ViewMode(view_mode)
    values = stage_values(current, view_mode)
    previous_values = stage_values(previous, view_mode) if previous else None

    stage_rows = []
    for stage in current.ordered_stages():
        value = values.get(stage.id)
        prior = previous_values.get(stage.id) if previous_values is not None else None
        stage_rows.append(
            StageRow(
                stage_id=stage.id,
                name=stage.name,
                value=value,
                previous=prior,
                variation=describe_variation(value, prior, threshold=threshold),
            )
        )

    previous_rates: Dict[str, float] = {}
    if previous is not None:
        previous_rates = {t.key: t.rate for t in funnel_transitions(previous, view_mode)}

    transition_rows = []
    for transition in funnel_transitions(current, view_mode):
        prior_rate = previous_rates.get(transition.key)
        transition_rows.append(
            TransitionRow(
                key=transition.key,
                from_stage=transition.from_stage.name,
                to_stage=transition.to_stage.name,
                rate=transition.rate,
                resolved_by=transition.resolved_by,
                previous_rate=prior_rate,
                variation=describe_variation(
                    transition.rate, prior_rate, is_points=True, threshold=threshold,
                ),
            )
        )

    leads = leads_value(current, view_mode)
    previous_leads = leads_value(previous, view_mode) if previous else None

    return FunnelComparison(
        view_mode=view_mode,
        stages=stage_rows,
        transitions=transition_rows,
        leads_count=leads,
        previous_leads_count=previous_leads,
        leads_variation=describe_variation(leads, previous_leads, threshold=threshold),
    )
