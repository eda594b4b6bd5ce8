"""Tests for the HTTP surface: /api/v1/cgm/* and /health."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from src.cgm import config_loader
from src.cgm.base import GlucoseReading
from src.cgm.history import GlucoseHistory
from src.cgm.pipeline import CGMPipeline, build_pipeline
from src.cgm.reconciler import ReconcileResult
from src.cgm.tests.conftest import T0, make_config, make_reading
from src.config import Settings, get_settings
from src.main import create_app


@pytest.fixture
def pipeline(tmp_path: Path, channel, health, clock) -> CGMPipeline:
    settings = Settings(
        database_path=tmp_path / "glucose.sqlite3",
        shared_storage_dir=tmp_path / "shared",
    )
    return build_pipeline(settings, channel=channel, health=health, clock=clock)


@pytest.fixture
def client(pipeline: CGMPipeline) -> TestClient:
    app = create_app()
    app.state.pipeline = pipeline
    return TestClient(app)


class TestGlucoseEndpoints:
    def test_list_glucose_newest_first(self, client, pipeline) -> None:
        pipeline.store.store_glucose([make_reading(0, 110), make_reading(5, 120), make_reading(10, 130)])

        resp = client.get("/api/v1/cgm/glucose")
        assert resp.status_code == 200
        body = resp.json()
        assert [r["value"] for r in body] == [130, 120, 110]
        assert body[0]["source"] == "dexcom_g6"

    def test_list_glucose_limit(self, client, pipeline) -> None:
        pipeline.store.store_glucose([make_reading(m) for m in (0, 5, 10)])
        resp = client.get("/api/v1/cgm/glucose", params={"limit": 2})
        assert len(resp.json()) == 2

    def test_delete_glucose(self, client, pipeline, health) -> None:
        pipeline.store.store_glucose(
            [GlucoseReading(timestamp=T0, value=100, source="dexcom_g6", id="r-1")]
        )
        resp = client.delete("/api/v1/cgm/glucose/r-1")
        assert resp.status_code == 204
        assert pipeline.store.recent() == []
        assert health.deleted == ["r-1"]

    def test_delete_unknown_glucose_is_404(self, client) -> None:
        resp = client.delete("/api/v1/cgm/glucose/missing")
        assert resp.status_code == 404

    def test_delete_manual_glucose(self, client, pipeline, health, cloud) -> None:
        pipeline.history = GlucoseHistory(pipeline.store, health, cloud)
        resp = client.delete(
            "/api/v1/cgm/glucose/manual", params={"at": "2026-02-23T08:00:00Z"}
        )
        assert resp.status_code == 204
        assert cloud.manual_deletes == [T0]


class TestSourceEndpoints:
    def test_refresh_is_accepted(self, client) -> None:
        resp = client.post("/api/v1/cgm/refresh")
        assert resp.status_code == 202
        assert resp.json() == {"status": "queued", "source": "dexcom_g6"}

    def test_source_info(self, client, pipeline) -> None:
        pipeline.resolver.resolve()
        resp = client.get("/api/v1/cgm/source")
        assert resp.status_code == 200
        body = resp.json()
        assert body["source"] == "dexcom_g6"
        assert body["info"]["transmitterID"] == "8G1234"

    def test_source_before_first_cycle_reports_configured_type(self, client, pipeline) -> None:
        resp = client.get("/api/v1/cgm/source")
        assert resp.status_code == 200
        assert resp.json() == {"source": "dexcom_g6", "info": {}}
        assert pipeline.resolver.active is None

    def test_unconfigured_nightscout_does_not_fail_requests(
        self, client, pipeline, channel
    ) -> None:
        channel.publish(make_config(cgm="nightscout", transmitter_id=None))

        source = client.get("/api/v1/cgm/source")
        refresh = client.post("/api/v1/cgm/refresh")

        assert source.status_code == 200
        assert source.json()["source"] == "nightscout"
        assert refresh.status_code == 202
        assert refresh.json()["source"] == "nightscout"

    def test_last_cycle_before_any_cycle(self, client) -> None:
        assert client.get("/api/v1/cgm/last-cycle").status_code == 404

    def test_last_cycle(self, client, pipeline) -> None:
        pipeline.scheduler.last_result = ReconcileResult(
            status="stored",
            candidates=3,
            delta=[make_reading(0), make_reading(5)],
            cursor_after=T0,
        )
        body = client.get("/api/v1/cgm/last-cycle").json()
        assert body["status"] == "stored"
        assert body["candidates"] == 3
        assert body["stored"] == 2

    def test_pipeline_not_started_is_503(self) -> None:
        client = TestClient(create_app())
        assert client.get("/api/v1/cgm/source").status_code == 503


class TestHealth:
    def test_health_reports_stopped_scheduler(self, client) -> None:
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["scheduler"] == "stopped"
        assert body["sync_cursor"] is not None

    def test_lifespan_starts_scheduler(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("GLUCOLINK_DATABASE_PATH", str(tmp_path / "glucose.sqlite3"))
        monkeypatch.setenv("GLUCOLINK_SHARED_STORAGE_DIR", str(tmp_path / "shared"))
        monkeypatch.setattr(config_loader, "_channel", None)
        get_settings.cache_clear()
        try:
            with TestClient(create_app()) as client:
                body = client.get("/health").json()
                assert body["scheduler"] == "running"
                assert body["status"] == "healthy"
                source = client.get("/api/v1/cgm/source").json()
                assert source["source"] == "simulator"
        finally:
            get_settings.cache_clear()
