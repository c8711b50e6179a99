"""Tests for the target-vs-actual panel."""

import pytest
from pydantic import ValidationError

from models.funnel_models import FunnelData, StageBenchmark, StageInfo, StageStatus, ViewMode
from scripts.funnel.targets import (
    BENCHMARK_LABEL,
    find_stage_id,
    normalize_stage_key,
    stage_status,
    step_volumes,
    target_vs_actual,
)

STAGES = [
    StageInfo(id=5, name="Contrato", order_nr=5),
    StageInfo(id=1, name="Lead", order_nr=1),
    StageInfo(id=2, name="MQL", order_nr=2),
    StageInfo(id=3, name="SQL (call agendada)", order_nr=3),
    StageInfo(id=4, name="Oportunidade - proposta", order_nr=4),
]


def make_funnel(**kwargs):
    data = {"stages": STAGES, "leads_count": 200}
    data.update(kwargs)
    return FunnelData(**data)


def by_key(report):
    return {m.key: m for m in report.metrics}


class TestStageKeys:
    @pytest.mark.parametrize("name, key", [
        ("Leads", "lead"),
        (" Lead ", "lead"),
        ("MQL", "mql"),
        ("SQL", "sql"),
        ("Call agendada - SQL (qualificado)", "sql"),
        ("SQL (call agendada)", "sql"),
        ("Oportunidade - proposta", "oportunidade"),
        ("Opportunity", "oportunidade"),
        ("Contrato assinado", "contrato"),
        ("Negociação", "negociação"),
    ])
    def test_normalize(self, name, key):
        assert normalize_stage_key(name) == key

    def test_find_stage_id(self):
        assert find_stage_id(STAGES, "sql") == 3
        assert find_stage_id(STAGES, "oportunidade") == 4
        assert find_stage_id(STAGES, "negociação") is None


class TestStageStatus:
    BENCHMARK = StageBenchmark(min=20, avg=30, max=35)

    @pytest.mark.parametrize("actual, status", [
        (None, StageStatus.NO_DATA),
        (45.0, StageStatus.OK),
        (30.0, StageStatus.OK),
        (25.0, StageStatus.WARNING),
        (20.0, StageStatus.WARNING),
        (19.9, StageStatus.CRITICAL),
        (0.0, StageStatus.CRITICAL),
    ])
    def test_thresholds(self, actual, status):
        assert stage_status(actual, self.BENCHMARK) == status

    def test_benchmark_order_validated(self):
        with pytest.raises(ValidationError):
            StageBenchmark(min=30, avg=20, max=35)


class TestTargetVsActual:
    def test_period_uses_window_leads_and_arrivals(self):
        funnel = make_funnel(
            stage_arrivals={2: 32, 3: 8, 4: 1},
            stage_counts={1: 999, 2: 999},
        )
        report = target_vs_actual(funnel, ViewMode.PERIOD)

        assert report.view_mode is ViewMode.PERIOD
        assert report.benchmark_label == BENCHMARK_LABEL
        assert report.volumes == {"lead": 200, "mql": 32, "sql": 8, "oportunidade": 1}

        metrics = by_key(report)
        assert list(metrics) == ["lead_to_mql", "mql_to_sql", "sql_to_opp"]

        assert metrics["lead_to_mql"].actual == pytest.approx(16.0)
        assert metrics["lead_to_mql"].formatted == "16.0%"
        assert metrics["lead_to_mql"].status is StageStatus.OK
        assert metrics["lead_to_mql"].gap_points == pytest.approx(1.0)

        assert metrics["mql_to_sql"].actual == pytest.approx(25.0)
        assert metrics["mql_to_sql"].status is StageStatus.WARNING
        assert metrics["mql_to_sql"].gap_points == pytest.approx(-5.0)

        assert metrics["sql_to_opp"].actual == pytest.approx(12.5)
        assert metrics["sql_to_opp"].from_stage == "SQL"
        assert metrics["sql_to_opp"].to_stage == "Oportunidade"
        assert metrics["sql_to_opp"].status is StageStatus.CRITICAL

    def test_snapshot_uses_open_deals(self):
        funnel = make_funnel(
            stage_counts={1: 40, 2: 5, 3: 0, 4: 2},
            stage_arrivals={2: 999},
        )
        report = target_vs_actual(funnel, "snapshot")
        assert report.volumes == {"lead": 40, "mql": 5, "sql": 0, "oportunidade": 2}

        metrics = by_key(report)
        assert metrics["lead_to_mql"].actual == pytest.approx(12.5)
        assert metrics["lead_to_mql"].status is StageStatus.WARNING
        assert metrics["mql_to_sql"].actual == 0.0
        assert metrics["mql_to_sql"].status is StageStatus.CRITICAL

        sql_to_opp = metrics["sql_to_opp"]
        assert sql_to_opp.actual is None
        assert sql_to_opp.formatted == "—"
        assert sql_to_opp.status is StageStatus.NO_DATA
        assert sql_to_opp.gap_points is None

    def test_missing_stage_counts_as_empty(self):
        stages = [s for s in STAGES if s.name != "MQL"]
        funnel = make_funnel(stages=stages, stage_arrivals={3: 8, 4: 1})
        assert step_volumes(funnel, ViewMode.PERIOD)["mql"] == 0

        metrics = by_key(target_vs_actual(funnel, ViewMode.PERIOD))
        assert metrics["lead_to_mql"].status is StageStatus.CRITICAL
        assert metrics["mql_to_sql"].status is StageStatus.NO_DATA

    def test_benchmark_override(self):
        funnel = make_funnel(stage_arrivals={2: 32, 3: 8, 4: 1})
        report = target_vs_actual(
            funnel, ViewMode.PERIOD,
            benchmarks={"mql_to_sql": StageBenchmark(min=10, avg=20, max=25)},
            benchmark_label="Custom",
        )
        metrics = by_key(report)
        assert report.benchmark_label == "Custom"
        assert metrics["mql_to_sql"].status is StageStatus.OK
        assert metrics["mql_to_sql"].target.avg == 20
        assert metrics["sql_to_opp"].target.avg == 30
