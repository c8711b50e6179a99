"""Tests for the funnel aggregator."""

import pytest

from models.funnel_models import (
    LEAD_SOURCE_ORDER,
    NOT_INFORMED,
    BreakdownEntry,
    CampaignTrackingData,
    FunnelData,
    PeriodStageArrivals,
    SnapshotStageCounts,
    StageInfo,
    ViewMode,
)
from scripts.funnel.aggregator import (
    BreakdownLevel,
    ResolvedById,
    ResolvedByName,
    TopNPolicy,
    Unresolved,
    breakdown_entries,
    breakdown_total,
    compare_funnels,
    computed_conversions,
    funnel_transitions,
    leads_value,
    rank_breakdown,
    resolve_conversion,
    stage_slug,
    stage_values,
    stages_with_data,
)

LEAD = StageInfo(id=1, name="Lead", order_nr=1)
MQL = StageInfo(id=2, name="MQL (qualificado)", order_nr=2)
SQL = StageInfo(id=3, name="SQL", order_nr=3)


def make_funnel(**kwargs):
    data = {
        "stages": [SQL, LEAD, MQL],
        "leads_count": 100,
    }
    data.update(kwargs)
    return FunnelData(**data)


class TestStageSlug:
    @pytest.mark.parametrize("name, slug", [
        ("Lead", "lead"),
        ("MQL (qualificado)", "mql"),
        ("Oportunidade em negociação", "oportunidade"),
        ("SQL - Reunião", "sql"),
        ("", ""),
    ])
    def test_slug(self, name, slug):
        assert stage_slug(name) == slug


class TestConversionLookup:
    def test_name_slug_fallback(self):
        lookup = resolve_conversion({"lead_to_mql": 40}, LEAD, MQL)
        assert isinstance(lookup, ResolvedByName)
        assert lookup.key == "lead_to_mql"
        assert lookup.rate == 40

    def test_id_key_wins(self):
        lookup = resolve_conversion({"1_2": 30, "lead_to_mql": 40}, LEAD, MQL)
        assert isinstance(lookup, ResolvedById)
        assert lookup.rate == 30

    def test_unresolved_is_zero(self):
        lookup = resolve_conversion({}, LEAD, MQL)
        assert isinstance(lookup, Unresolved)
        assert lookup.rate == 0.0
        assert lookup.id_key == "1_2"
        assert lookup.name_key == "lead_to_mql"


class TestStageValues:
    def test_view_mode_selects_distinct_types(self):
        funnel = make_funnel(stage_counts={1: 7}, stage_arrivals={1: 50})
        snapshot = stage_values(funnel, ViewMode.SNAPSHOT)
        period = stage_values(funnel, "period")
        assert isinstance(snapshot, SnapshotStageCounts)
        assert isinstance(period, PeriodStageArrivals)
        assert snapshot.get(1) == 7
        assert period.get(1) == 50
        assert period.get(99) == 0

    def test_mismatched_counts_rejected(self):
        with pytest.raises(TypeError):
            computed_conversions([LEAD, MQL], PeriodStageArrivals({1: 10}), ViewMode.SNAPSHOT)
        with pytest.raises(TypeError):
            computed_conversions([LEAD, MQL], SnapshotStageCounts({1: 10}), ViewMode.PERIOD)

    def test_string_stage_keys_coerced(self):
        funnel = FunnelData.model_validate({
            "stages": [{"id": 1, "name": "Lead", "order_nr": 1}],
            "stage_arrivals": {"1": 12},
        })
        assert funnel.period_arrivals().get(1) == 12

    def test_leads_value(self):
        funnel = make_funnel(stage_counts={1: 9, 2: 4})
        assert leads_value(funnel, ViewMode.PERIOD) == 100
        assert leads_value(funnel, ViewMode.SNAPSHOT) == 9


class TestTransitions:
    def test_ordered_by_order_nr(self):
        funnel = make_funnel(stage_arrivals={1: 50, 2: 20, 3: 5})
        transitions = funnel_transitions(funnel, ViewMode.PERIOD)
        assert [t.key for t in transitions] == ["1_2", "2_3"]
        assert [t.rate for t in transitions] == [40, 25]
        assert all(t.resolved_by == "computed" for t in transitions)

    def test_period_falls_back_to_name_slug(self):
        funnel = make_funnel(stages=[LEAD, MQL], conversions={"lead_to_mql": 40})
        (transition,) = funnel_transitions(funnel, ViewMode.PERIOD)
        assert transition.rate == 40
        assert transition.resolved_by == "name"

    def test_snapshot_without_counts_is_zero(self):
        funnel = make_funnel(stages=[LEAD, MQL], conversions={"1_2": 40})
        (transition,) = funnel_transitions(funnel, ViewMode.SNAPSHOT)
        assert transition.rate == 0
        assert transition.resolved_by == "unresolved"

    def test_computed_rates_round_half_up(self):
        rates = computed_conversions(
            [LEAD, MQL, SQL], SnapshotStageCounts({1: 8, 2: 5, 3: 0}), ViewMode.SNAPSHOT,
        )
        # 5/8 = 62.5%
        assert rates == {"1_2": 63, "2_3": 0}

    def test_empty_source_stage_left_out(self):
        rates = computed_conversions(
            [LEAD, MQL], PeriodStageArrivals({2: 5}), ViewMode.PERIOD,
        )
        assert rates == {}


def entry(total, by_stage=None, by_source=None):
    return BreakdownEntry(total=total, by_stage=by_stage or {}, by_source=by_source or {})


class TestBreakdown:
    def test_top_n_and_shares(self):
        entries = {f"Campanha {i}": entry(i + 1) for i in range(12)}
        items = rank_breakdown(entries)
        assert len(items) == 10
        assert items[0].name == "Campanha 11"
        assert [i.count for i in items] == sorted((i.count for i in items), reverse=True)
        assert sum(i.percentage for i in items) == pytest.approx(100.0)

    def test_policy_override(self):
        entries = {"a": entry(3), "b": entry(2), "c": entry(1)}
        assert [i.name for i in rank_breakdown(entries, policy=TopNPolicy(limit=2))] == ["a", "b"]
        assert len(rank_breakdown(entries, policy=TopNPolicy(limit=None))) == 3

    def test_zero_counts_dropped_and_blank_name(self):
        entries = {"": entry(4), "vazio": entry(0)}
        items = rank_breakdown(entries)
        assert [i.name for i in items] == [NOT_INFORMED]
        assert items[0].percentage == 100.0

    def test_stage_filter(self):
        entries = {
            "A": entry(10, by_stage={1: 8, 2: 2}),
            "B": entry(5, by_stage={2: 5}, by_source={"Lead Nativo": 5}),
        }
        items = rank_breakdown(entries, stage="2")
        assert [(i.name, i.count) for i in items] == [("B", 5), ("A", 2)]
        assert items[0].by_source == {"Lead Nativo": 5}

    def test_display_order_pins_known_names(self):
        entries = {
            "Base Sétima": entry(9),
            "Indicação": entry(3),
            "Evento": entry(6),
            "Lead Nativo": entry(1),
            "Landing Page": entry(4),
        }
        items = rank_breakdown(entries, order=LEAD_SOURCE_ORDER)
        assert [i.name for i in items] == [
            "Lead Nativo", "Landing Page", "Base Sétima", "Evento", "Indicação",
        ]
        assert sum(i.percentage for i in items) == pytest.approx(100.0)

    def test_empty(self):
        assert rank_breakdown({}) == []

    def test_entries_by_level(self):
        payload = CampaignTrackingData(
            by_campaign={"C": entry(3, by_stage={2: 3})},
            by_adset={"A": entry(1)},
            field_keys={"campaign": "abc"},
        )
        assert list(breakdown_entries(payload, BreakdownLevel.ADSET)) == ["A"]
        assert breakdown_entries(payload, "sector") == {}
        assert breakdown_entries(None, "campaign") == {}
        assert breakdown_total(payload.by_campaign) == 3
        assert payload.has_fields_configured is True

    def test_stages_with_data(self):
        entries = {"C": entry(3, by_stage={2: 3, 3: 0})}
        assert stages_with_data([LEAD, MQL, SQL], entries) == [MQL]


class TestCompareFunnels:
    def test_rows_and_variations(self):
        current = make_funnel(stage_arrivals={1: 50, 2: 20, 3: 5})
        previous = make_funnel(stage_arrivals={1: 40, 2: 20, 3: 5}, leads_count=80)

        view = compare_funnels(current, previous, ViewMode.PERIOD)

        lead_row = view.stages[0]
        assert (lead_row.name, lead_row.value, lead_row.previous) == ("Lead", 50, 40)
        assert lead_row.variation.formatted == "+25%"
        assert lead_row.variation.trend == "up"

        lead_to_mql = view.transitions[0]
        assert lead_to_mql.rate == 40
        assert lead_to_mql.previous_rate == 50
        assert lead_to_mql.variation.formatted == "-10pp"
        assert lead_to_mql.variation.trend == "down"

        assert view.leads_count == 100
        assert view.previous_leads_count == 80
        assert view.leads_variation.value == 25.0

    def test_without_previous(self):
        view = compare_funnels(make_funnel(stage_counts={1: 3}), None, ViewMode.SNAPSHOT)
        assert view.leads_count == 3
        assert view.previous_leads_count is None
        assert all(row.variation.value is None for row in view.stages)
        assert all(row.variation.formatted == "—" for row in view.transitions)
