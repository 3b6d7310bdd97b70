# tests/test_api.py
"""HTTP surface: uploads, jobs, sessions, orphans, zones and health."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from fastapi.testclient import TestClient
from app.main import app
from app.pipeline import build_pipeline


@pytest.fixture
def pipeline(session_factory, config):
    return build_pipeline(session_factory, config)


@pytest.fixture
def client(pipeline):
    # No startup hook: the test owns the database and the orchestrator stays idle.
    app.state.pipeline = pipeline
    yield TestClient(app)
    del app.state.pipeline


class TestUploads:
    def test_ingest_queues_job(self, client, pipeline):
        resp = client.post("/api/v1/uploads/u1/ingest", json={"rows": [{"zone": "Z"}]})
        assert resp.status_code == 202
        body = resp.json()
        assert body["kind"] == "ingest"
        assert body["state"] == "PENDING"
        assert pipeline.ingest.get_upload("u1").status == "PENDING"

    def test_ingest_requires_payload(self, client):
        assert client.post("/api/v1/uploads/u1/ingest", json={}).status_code == 422

    def test_abort_then_ingest_conflicts(self, client, add_event):
        add_event("IN", "ABC123", "10:00", upload_id="u1")
        resp = client.post("/api/v1/uploads/u1/abort")
        assert resp.status_code == 200
        assert resp.json()["deleted_events"] == 1
        assert client.post("/api/v1/uploads/u1/ingest", json={"rows": []}).status_code == 409

    def test_unknown_upload(self, client):
        assert client.get("/api/v1/uploads/nope").status_code == 404


class TestJobs:
    def test_submit_and_fetch(self, client):
        resp = client.post("/api/v1/jobs", json={"kind": "pair", "payload": {"out_id": 1}})
        assert resp.status_code == 202
        job_id = resp.json()["id"]
        assert client.get(f"/api/v1/jobs/{job_id}").json()["state"] == "PENDING"
        assert [j["id"] for j in client.get("/api/v1/jobs", params={"kind": "pair"}).json()] == [job_id]

    def test_invalid_job(self, client):
        resp = client.post("/api/v1/jobs", json={"kind": "reindex"})
        assert resp.status_code == 422

    def test_missing_job(self, client):
        assert client.get("/api/v1/jobs/abc").status_code == 404


class TestReadPaths:
    def test_sessions_and_orphans(self, client, pairing, add_event):
        add_event("IN", "ABC123", "10:00")
        out_id = add_event("OUT", "ABC123", "11:00")
        add_event("OUT", "XYZ999", "11:30")
        pairing.pair_out(out_id)

        sessions = client.get("/api/v1/sessions", params={"zone": "Z", "match_type": "EXACT"}).json()
        assert len(sessions) == 1
        assert sessions[0]["duration_minutes"] == 60

        orphans = client.get("/api/v1/orphans", params={"zone": "Z"}).json()
        assert [o["plate_norm"] for o in orphans] == ["XYZ999"]
        summary = client.get("/api/v1/orphans/summary").json()
        assert summary == [{"zone": "Z", "open_in": 0, "orphan_out": 1}]

    def test_orphan_status_validated(self, client):
        assert client.get("/api/v1/orphans", params={"status": "PAIRED"}).status_code == 422
        assert client.get("/api/v1/orphans", params={"status": "OPEN"}).status_code == 422
        assert client.get("/api/v1/orphans", params={"status": "ORPHAN_EXPIRED"}).status_code == 200


class TestZones:
    def test_defaults_then_update(self, client, config):
        zone = client.get("/api/v1/zones/Z").json()
        assert zone["fuzzy_threshold"] == config.DEFAULT_FUZZY_THRESHOLD
        assert client.get("/api/v1/zones").json() == []

        resp = client.put("/api/v1/zones/Z", json={"horizon_days": 2, "billing_rules": {"hourly_rate": 1.5}})
        assert resp.status_code == 200
        assert resp.json()["horizon_days"] == 2
        assert [z["zone_id"] for z in client.get("/api/v1/zones").json()] == ["Z"]

    def test_empty_update_rejected(self, client):
        assert client.put("/api/v1/zones/Z", json={}).status_code == 422

    def test_invalid_stored_config_reported(self, client, session_factory):
        from app.models.zone_config import ZoneConfig
        db = session_factory()
        db.add(ZoneConfig(zone_id="BAD", horizon_days=0, fuzzy_threshold=2.0,
                          review_required_below_score=0.9, max_stay_hours=1, billing_rules={}))
        db.commit()
        db.close()
        resp = client.get("/api/v1/zones/BAD")
        assert resp.status_code == 422
        assert resp.json()["zone_id"] == "BAD"


class TestHealth:
    def test_reports_database_and_orchestrator(self, client):
        body = client.get("/api/v1/health").json()
        assert body["database"] == "ok"
        assert body["orchestrator"]["running"] is False
        assert body["status"] == "degraded"
