"""Tests for the funnel API router."""

import asyncio
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from dashboard.api.main import app
from models.funnel_models import (
    CampaignTrackingData,
    FunnelData,
    LeadSourceData,
    SQLCallMetrics,
    StageDeal,
    ViewMode,
)
from scripts.lib.errors import APITimeoutError, ConfigError

CUSTOM_WEEK = {"preset": "custom", "start": "2025-02-01", "end": "2025-02-07"}


class FakeSource:
    def __init__(self):
        self.fail = False
        self.calls = []

    async def get_funnel_data(self, pipeline_id, window, force=False):
        self.calls.append(("funnel", window, force))
        if self.fail:
            raise APITimeoutError("https://proxy", 30)
        current = window.start.month == 2
        return FunnelData.model_validate({
            "stages": [
                {"id": 1, "name": "Lead", "order_nr": 1},
                {"id": 2, "name": "MQL (qualificado)", "order_nr": 2},
            ],
            "leads_count": 100 if current else 80,
            "stage_arrivals": {"1": 50 if current else 40, "2": 20},
            "lost_reasons": {"total": {"Fora do ICP": 2, "Desqualificado Brandspot": 1, "": 1}},
        })

    async def get_tracking(self, kind, pipeline_id, window=None, force=False):
        self.calls.append((kind, window, force))
        if kind == "source":
            return LeadSourceData.model_validate({
                "by_source": {
                    "Base Sétima": {"total": 10},
                    "Indicação": {"total": 7},
                    "Landing Page": {"total": 5},
                    "Lead Nativo": {"total": 2},
                },
            })
        return CampaignTrackingData.model_validate({
            "by_campaign": {
                "Black Friday": {"total": 6, "by_stage": {"2": 6}},
                "Lançamento": {"total": 2, "by_stage": {"1": 2}},
                "Sem resultado": {"total": 0},
            },
            "field_keys": {"campaign": "hash123"},
            "all_stages": [
                {"id": 1, "name": "Lead", "order_nr": 1},
                {"id": 2, "name": "MQL", "order_nr": 2},
                {"id": 3, "name": "SQL", "order_nr": 3},
            ],
        })

    async def get_sql_call_metrics(self, pipeline_id, view_mode=ViewMode.PERIOD, force=False):
        self.calls.append(("sql_calls", view_mode, force))
        return SQLCallMetrics(agendada=5, sim=3, noshow=1, reagendada=1, total=10)

    async def get_stage_deals(self, pipeline_id, stage_id, view_mode=ViewMode.SNAPSHOT,
                              window=None, force=False):
        self.calls.append(("deals", stage_id, view_mode, window))
        return [StageDeal(id=501, title="Acme - rebranding", value=12000)]


class GatedSource(FakeSource):
    """February funnel fetches wait for ``release``; every window reports its month as leads."""

    def __init__(self):
        super().__init__()
        self.february_started = asyncio.Event()
        self.release = asyncio.Event()

    async def get_funnel_data(self, pipeline_id, window, force=False):
        self.calls.append(("funnel", window, force))
        if window.start.month == 2:
            self.february_started.set()
            await self.release.wait()
        return FunnelData.model_validate({
            "stages": [{"id": 1, "name": "Lead", "order_nr": 1}],
            "leads_count": window.start.month,
            "stage_arrivals": {"1": window.start.month},
        })


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def client(source):
    with TestClient(app) as test_client:
        app.state.proxy = source
        app.state.orchestrators = {}
        yield test_client


class TestSystem:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["service"] == "Funnel Hub"

    def test_pipelines(self, client):
        body = client.get("/api/pipelines").json()
        ids = [p["id"] for p in body["results"]]
        assert 9 in ids
        assert body["results"][0]["pipedrive_url"].startswith("https://")


class TestPeriodsAndVariation:
    def test_resolve_custom_week(self, client):
        body = client.get("/api/funnel/periods/resolve", params=CUSTOM_WEEK).json()
        assert body["primary"] == {"start": "2025-02-01", "end": "2025-02-07"}
        assert body["comparison"] == {"start": "2025-01-25", "end": "2025-01-31"}
        assert body["label"] == "vs período anterior"

    def test_resolve_comparison_off(self, client):
        params = {**CUSTOM_WEEK, "comparison": "off"}
        body = client.get("/api/funnel/periods/resolve", params=params).json()
        assert body["comparison"] is None
        assert body["label"] == ""

    def test_custom_without_dates_is_rejected(self, client):
        response = client.get("/api/funnel/periods/resolve", params={"preset": "custom"})
        assert response.status_code == 422

    def test_inverted_range_is_rejected(self, client):
        params = {"preset": "custom", "start": "2025-02-07", "end": "2025-02-01"}
        response = client.get("/api/funnel/periods/resolve", params=params)
        assert response.status_code == 422

    def test_variation(self, client):
        body = client.get("/api/funnel/variation", params={"current": 15, "previous": 10}).json()
        assert body["value"] == 50.0
        assert body["formatted"] == "+50%"
        assert body["trend"] == "up"

        body = client.get(
            "/api/funnel/variation", params={"current": 0, "previous": 0},
        ).json()
        assert body["value"] is None
        assert body["formatted"] == "—"


class TestFunnelView:
    def test_view_with_comparison(self, client, source):
        response = client.get("/api/funnel/9", params=CUSTOM_WEEK)
        assert response.status_code == 200
        body = response.json()

        assert body["pipeline_name"] == "Brandspot"
        assert body["comparison_window"] == {"start": "2025-01-25", "end": "2025-01-31"}
        stages = body["view"]["stages"]
        assert [s["value"] for s in stages] == [50, 20]
        assert stages[0]["variation"]["formatted"] == "+25%"

        transition = body["view"]["transitions"][0]
        assert transition["key"] == "1_2"
        assert transition["rate"] == 40
        assert transition["variation"]["formatted"] == "-10pp"

        lost = body["lost_reasons"]
        assert lost["items"][0] == {"reason": "Fora do ICP", "count": 3}
        assert lost["total_lost"] == 4
        assert body["error"] is None
        assert len(source.calls) == 2

    def test_repeat_request_is_cached(self, client, source):
        client.get("/api/funnel/9", params=CUSTOM_WEEK)
        client.get("/api/funnel/9", params=CUSTOM_WEEK)
        assert len(source.calls) == 2

    def test_unknown_pipeline(self, client):
        response = client.get("/api/funnel/404", params=CUSTOM_WEEK)
        assert response.status_code == 404

    def test_failure_without_data_is_502(self, client, source):
        source.fail = True
        response = client.get("/api/funnel/9", params=CUSTOM_WEEK)
        assert response.status_code == 502
        assert "timed out" in response.json()["detail"]

    def test_targets_follow_view_mode(self, client):
        body = client.get("/api/funnel/9", params=CUSTOM_WEEK).json()
        targets = body["targets"]

        assert targets["view_mode"] == "period"
        assert targets["volumes"]["lead"] == 100
        assert [m["key"] for m in targets["metrics"]] == ["lead_to_mql", "mql_to_sql", "sql_to_opp"]
        # "MQL (qualificado)" is not the canonical MQL stage name
        lead_to_mql = targets["metrics"][0]
        assert lead_to_mql["actual"] == 0.0
        assert lead_to_mql["status"] == "critical"
        assert lead_to_mql["target"] == {"min": 10.0, "avg": 15.0, "max": 20.0}
        assert targets["metrics"][1]["status"] == "no_data"
        assert targets["metrics"][1]["formatted"] == "—"

    def test_snapshot_skips_comparison(self, client, source):
        params = {**CUSTOM_WEEK, "view_mode": "snapshot"}
        body = client.get("/api/funnel/9", params=params).json()

        assert body["comparison_window"] is None
        assert body["comparison_label"] == ""
        assert all(s["variation"]["value"] is None for s in body["view"]["stages"])
        assert body["view"]["previous_leads_count"] is None
        assert body["targets"]["view_mode"] == "snapshot"
        assert [call[0] for call in source.calls] == ["funnel"]

    def test_stale_data_returned_with_error(self, client, source):
        client.get("/api/funnel/9", params=CUSTOM_WEEK)

        source.fail = True
        refreshed = client.post("/api/funnel/9/refresh")
        assert refreshed.status_code == 200
        assert refreshed.json()["status"] == "error"

        body = client.get("/api/funnel/9", params=CUSTOM_WEEK).json()
        assert body["view"]["leads_count"] == 100
        assert "timed out" in body["error"]
        assert body["last_updated"] is not None


class TestBreakdown:
    def test_snapshot_campaigns(self, client, source):
        response = client.get("/api/funnel/9/breakdown/campaign", params={"snapshot": True})
        assert response.status_code == 200
        body = response.json()

        assert [i["name"] for i in body["items"]] == ["Black Friday", "Lançamento"]
        assert body["items"][0]["percentage"] == 75.0
        assert body["total"] == 8
        assert [s["id"] for s in body["stages"]] == [1, 2]
        assert body["fields_configured"] is True
        assert source.calls == [("campaign", None, False)]

    def test_period_stage_filter(self, client, source):
        params = {**CUSTOM_WEEK, "stage": "2"}
        body = client.get("/api/funnel/9/breakdown/campaign", params=params).json()
        assert [(i["name"], i["count"]) for i in body["items"]] == [("Black Friday", 6)]
        assert body["window"] == {"start": "2025-02-01", "end": "2025-02-07"}

    def test_invalid_stage(self, client):
        response = client.get(
            "/api/funnel/9/breakdown/campaign", params={"snapshot": True, "stage": "abc"},
        )
        assert response.status_code == 422

    def test_lead_sources_follow_display_order(self, client):
        body = client.get("/api/funnel/9/breakdown/source", params={"snapshot": True}).json()
        assert [i["name"] for i in body["items"]] == [
            "Lead Nativo", "Landing Page", "Base Sétima", "Indicação",
        ]
        assert body["total"] == 24

    def test_top_n_override(self, client):
        body = client.get(
            "/api/funnel/9/breakdown/campaign", params={"snapshot": True, "limit": 1},
        ).json()
        assert len(body["items"]) == 1
        assert body["items"][0]["percentage"] == 100.0


class TestDrillDowns:
    def test_sql_calls(self, client, source):
        response = client.get("/api/funnel/9/sql-calls", params={"view_mode": "snapshot"})
        assert response.status_code == 200
        body = response.json()

        assert body["view_mode"] == "snapshot"
        assert body["metrics"]["total"] == 10
        assert body["shares"] == {"agendada": 50, "sim": 30, "noshow": 10, "reagendada": 10}
        assert source.calls == [("sql_calls", ViewMode.SNAPSHOT, False)]

        client.get("/api/funnel/9/sql-calls", params={"view_mode": "snapshot"})
        assert len(source.calls) == 1

    def test_snapshot_stage_deals(self, client, source):
        response = client.get("/api/funnel/9/stages/3/deals")
        assert response.status_code == 200
        body = response.json()

        assert body["window"] is None
        assert body["count"] == 1
        assert body["deals"][0]["title"] == "Acme - rebranding"
        assert body["deals"][0]["url"] == "https://setima.pipedrive.com/deal/501"
        assert source.calls == [("deals", 3, ViewMode.SNAPSHOT, None)]

    def test_period_stage_deals_use_window(self, client, source):
        params = {**CUSTOM_WEEK, "view_mode": "period"}
        body = client.get("/api/funnel/9/stages/3/deals", params=params).json()

        assert body["window"] == {"start": "2025-02-01", "end": "2025-02-07"}
        assert source.calls[0][3].start.isoformat() == "2025-02-01"

    def test_period_stage_deals_need_a_range(self, client):
        response = client.get(
            "/api/funnel/9/stages/3/deals", params={"view_mode": "period", "preset": "custom"},
        )
        assert response.status_code == 422


class TestConcurrentRequests:
    @pytest.mark.asyncio
    async def test_overlapping_windows_answer_with_their_own_data(self):
        source = GatedSource()
        app.state.proxy = source
        app.state.orchestrators = {}
        february_week = {**CUSTOM_WEEK, "comparison": "off"}
        march_week = {
            "preset": "custom", "start": "2025-03-01", "end": "2025-03-07", "comparison": "off",
        }

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            pending = asyncio.ensure_future(client.get("/api/funnel/9", params=february_week))
            await source.february_started.wait()
            march = await client.get("/api/funnel/9", params=march_week)
            source.release.set()
            february = await pending

        assert march.json()["view"]["leads_count"] == 3

        assert february.status_code == 200
        body = february.json()
        assert body["window"] == {"start": "2025-02-01", "end": "2025-02-07"}
        assert body["view"]["leads_count"] == 2
        assert body["view"]["stages"][0]["value"] == 2
        assert body["error"] is None


class TestErrorHandler:
    def test_hub_errors_become_json(self, client):
        with patch(
            "dashboard.api.routers.funnel.get_settings",
            side_effect=ConfigError("funnel.yaml is broken", config_path="configs/funnel.yaml"),
        ):
            response = client.get("/api/funnel/variation", params={"current": 1, "previous": 1})

        assert response.status_code == 500
        assert response.json() == {
            "error": "CONFIG_ERROR",
            "message": "funnel.yaml is broken",
            "details": {"config_path": "configs/funnel.yaml"},
        }
