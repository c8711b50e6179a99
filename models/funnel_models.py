"""
Funnel Hub — Funnel Pydantic Models
=====================================

Date ranges, presets, CRM proxy payloads (funnel data, campaign / lead-source
/ sector breakdowns, SQL call metrics, stage deals) and the computed views
returned by the funnel API.
"""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, RootModel, model_validator

NOT_INFORMED = "Não informado"

# Display order of lead-source buckets produced by the proxy
LEAD_SOURCE_ORDER = ["Lead Nativo", "Landing Page", "Base Sétima"]

Trend = Literal["up", "down", "stable"]


# ─── Enumerations ───────────────────────────────────────────

class PeriodPreset(str, Enum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    THIS_WEEK = "thisWeek"
    LAST_7_DAYS = "last7Days"
    LAST_14_DAYS = "last14Days"
    LAST_30_DAYS = "last30Days"
    LAST_90_DAYS = "last90Days"
    THIS_MONTH = "thisMonth"
    LAST_MONTH = "lastMonth"
    THIS_YEAR = "thisYear"
    LAST_YEAR = "lastYear"
    CUSTOM = "custom"


class ComparisonPreset(str, Enum):
    AUTO = "auto"
    PREVIOUS_MONTH = "previousMonth"
    PREVIOUS_QUARTER = "previousQuarter"
    SAME_LAST_YEAR = "sameLastYear"
    CUSTOM = "custom"
    OFF = "off"


class ViewMode(str, Enum):
    """period: arrivals during the window. snapshot: deals sitting in a stage now."""
    PERIOD = "period"
    SNAPSHOT = "snapshot"


class ProxyAction(str, Enum):
    GET_FUNNEL_DATA = "get_funnel_data"
    GET_CAMPAIGN_TRACKING = "get_campaign_tracking"
    GET_CAMPAIGN_TRACKING_SNAPSHOT = "get_campaign_tracking_snapshot"
    GET_LEAD_SOURCE_TRACKING = "get_lead_source_tracking"
    GET_LEAD_SOURCE_TRACKING_SNAPSHOT = "get_lead_source_tracking_snapshot"
    GET_SECTOR_TRACKING = "get_sector_tracking"
    GET_SECTOR_TRACKING_SNAPSHOT = "get_sector_tracking_snapshot"
    GET_SQL_CALL_METRICS = "get_sql_call_metrics"
    GET_STAGE_DEALS = "get_stage_deals"


# ─── Periods ────────────────────────────────────────────────

class DateRange(BaseModel):
    """Inclusive [start, end] window at day granularity."""
    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")
        return self

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def to_params(self) -> Dict[str, str]:
        return {
            "start_date": self.start.isoformat(),
            "end_date": self.end.isoformat(),
        }


class ComparisonConfig(BaseModel):
    enabled: bool = True
    preset: ComparisonPreset = ComparisonPreset.AUTO
    custom_range: Optional[DateRange] = None


# ─── Stage counts ───────────────────────────────────────────

class _StageCountMap(RootModel):
    root: Dict[int, int] = Field(default_factory=dict)

    def get(self, stage_id: int) -> int:
        return self.root.get(stage_id, 0) or 0

    def __len__(self) -> int:
        return len(self.root)


class SnapshotStageCounts(_StageCountMap):
    """Open deals currently sitting in each stage (ignores the date window)."""


class PeriodStageArrivals(_StageCountMap):
    """Deals that reached each stage within the requested window."""


# ─── CRM payloads ───────────────────────────────────────────

class StageInfo(BaseModel):
    id: int
    name: str
    order_nr: int = 0


class LostReasons(BaseModel):
    total: Dict[str, int] = Field(default_factory=dict)
    by_stage: Dict[int, Dict[str, int]] = Field(default_factory=dict)


class FunnelData(BaseModel):
    """Payload of the get_funnel_data action."""
    stages: List[StageInfo] = Field(default_factory=list)
    all_stages: List[StageInfo] = Field(default_factory=list)
    conversions: Dict[str, float] = Field(default_factory=dict)
    leads_count: int = 0
    stage_counts: Dict[int, int] = Field(default_factory=dict)
    stage_arrivals: Dict[int, int] = Field(default_factory=dict)
    lost_reasons: LostReasons = Field(default_factory=LostReasons)
    fetched_at: Optional[datetime] = None

    def ordered_stages(self) -> List[StageInfo]:
        """Every pipeline stage, ascending by order_nr."""
        stages = self.all_stages or self.stages
        return sorted(stages, key=lambda s: s.order_nr)

    def snapshot_counts(self) -> SnapshotStageCounts:
        return SnapshotStageCounts(dict(self.stage_counts))

    def period_arrivals(self) -> PeriodStageArrivals:
        return PeriodStageArrivals(dict(self.stage_arrivals))


class BreakdownEntry(BaseModel):
    total: int = 0
    by_stage: Dict[int, int] = Field(default_factory=dict)
    by_source: Dict[str, int] = Field(default_factory=dict)


class TrackingFieldKeys(BaseModel):
    campaign: Optional[str] = None
    adset: Optional[str] = None
    creative: Optional[str] = None
    call_realizada: Optional[str] = None


class CampaignTrackingData(BaseModel):
    by_campaign: Dict[str, BreakdownEntry] = Field(default_factory=dict)
    by_adset: Dict[str, BreakdownEntry] = Field(default_factory=dict)
    by_creative: Dict[str, BreakdownEntry] = Field(default_factory=dict)
    field_keys: TrackingFieldKeys = Field(default_factory=TrackingFieldKeys)
    all_stages: List[StageInfo] = Field(default_factory=list)
    fetched_at: Optional[datetime] = None

    @property
    def has_fields_configured(self) -> bool:
        keys = self.field_keys
        return bool(keys.campaign or keys.adset or keys.creative)


class LeadSourceData(BaseModel):
    by_source: Dict[str, BreakdownEntry] = Field(default_factory=dict)
    all_stages: List[StageInfo] = Field(default_factory=list)
    fetched_at: Optional[datetime] = None


class SectorDistributionData(BaseModel):
    by_sector: Dict[str, BreakdownEntry] = Field(default_factory=dict)
    field_key: Optional[str] = None
    all_stages: List[StageInfo] = Field(default_factory=list)
    fetched_at: Optional[datetime] = None


class SQLCallMetrics(BaseModel):
    agendada: int = 0
    sim: int = 0
    noshow: int = 0
    reagendada: int = 0
    total: int = 0


class StageDeal(BaseModel):
    id: int
    title: str = ""
    person_name: Optional[str] = None
    org_name: Optional[str] = None
    add_time: Optional[str] = None
    value: float = 0
    lead_source: Optional[str] = None
    campaign: Optional[str] = None
    adset: Optional[str] = None
    creative: Optional[str] = None
    call_realizada: Optional[str] = None


# ─── Proxy envelope ─────────────────────────────────────────

class ProxyRequest(BaseModel):
    action: ProxyAction
    pipeline_id: int
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    force: bool = False
    view_mode: Optional[ViewMode] = None
    stage_id: Optional[int] = None

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ProxyResponse(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None


# ─── Computed views ─────────────────────────────────────────

class BreakdownItem(BaseModel):
    """One ranked row of a campaign / source / sector breakdown."""
    name: str
    count: int
    percentage: float
    by_source: Dict[str, int] = Field(default_factory=dict)


class LostReasonItem(BaseModel):
    reason: str
    count: int


class LostReasonSummary(BaseModel):
    items: List[LostReasonItem] = Field(default_factory=list)
    total_lost: int = 0


class VariationSummary(BaseModel):
    value: Optional[float] = None
    formatted: str = "—"
    trend: Trend = "stable"
    is_points: bool = False


class StageRow(BaseModel):
    stage_id: int
    name: str
    value: int
    previous: Optional[int] = None
    variation: VariationSummary = Field(default_factory=VariationSummary)


class TransitionRow(BaseModel):
    key: str
    from_stage: str
    to_stage: str
    rate: float
    resolved_by: Literal["id", "name", "computed", "unresolved"]
    previous_rate: Optional[float] = None
    variation: VariationSummary = Field(
        default_factory=lambda: VariationSummary(is_points=True)
    )


class FunnelComparison(BaseModel):
    view_mode: ViewMode
    stages: List[StageRow] = Field(default_factory=list)
    transitions: List[TransitionRow] = Field(default_factory=list)
    leads_count: int = 0
    previous_leads_count: Optional[int] = None
    leads_variation: VariationSummary = Field(default_factory=VariationSummary)


# ─── Target vs actual ───────────────────────────────────────

class StageStatus(str, Enum):
    OK = "ok"              # at or above the benchmark average
    WARNING = "warning"    # inside the acceptable range, below average
    CRITICAL = "critical"  # below the range
    NO_DATA = "no_data"


class StageBenchmark(BaseModel):
    """Expected conversion range for one funnel step, in percent."""
    min: float = Field(..., ge=0)
    avg: float = Field(..., ge=0)
    max: float = Field(..., ge=0)

    @model_validator(mode="after")
    def _check_order(self) -> "StageBenchmark":
        if not self.min <= self.avg <= self.max:
            raise ValueError(f"expected min <= avg <= max, got {self.min}/{self.avg}/{self.max}")
        return self


class TargetMetric(BaseModel):
    key: str
    label: str
    from_stage: str
    to_stage: str
    actual: Optional[float] = None
    formatted: str = "—"
    target: StageBenchmark
    status: StageStatus = StageStatus.NO_DATA
    gap_points: Optional[float] = None


class TargetVsActual(BaseModel):
    view_mode: ViewMode
    benchmark_label: str = ""
    volumes: Dict[str, int] = Field(default_factory=dict)
    metrics: List[TargetMetric] = Field(default_factory=list)
