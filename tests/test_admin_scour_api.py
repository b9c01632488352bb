import copy
import time

import pytest
from fastapi.testclient import TestClient

from scourwatch import admin
from scourwatch.admin import app, get_manager
from scourwatch.config import DEFAULT_CONFIG
from scourwatch.models import Job, SourcesPhase
from scourwatch.scour.dispatch import UnitProcessor
from scourwatch.services.alert_sink import MemoryAlertSink
from scourwatch.services.job_store import save_job
from scourwatch.storage import init_db, upsert_source

from scour_fakes import FakeExtractor, build_stack, make_sources


@pytest.fixture
def stack():
    manager, registry, extractor, search, dispatcher = build_stack(
        make_sources(4), failing={"src-02"}
    )
    app.dependency_overrides[get_manager] = lambda: manager
    try:
        yield manager, registry, extractor
    finally:
        app.dependency_overrides.clear()


def test_health_reports_ok():
    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert "version" in payload


def test_run_sources_waits_and_returns_summary(stack):
    manager, registry, _ = stack
    client = TestClient(app)

    response = client.post("/scour/run", json={"jobId": "rss-0"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "done"
    assert payload["jobId"] == "rss-0"
    assert payload["processed"] == payload["total"] == 4
    assert payload["created"] == 6
    assert payload["errorCount"] == 1
    assert payload["disabled_source_ids"] == ["src-02"]
    assert registry.get("src-02").enabled is False


def test_run_early_signals_returns_queued(stack):
    manager, _, _ = stack
    client = TestClient(app)

    response = client.post("/scour/run", json={"earlySignalsOnly": True})

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "queued"
    deadline = time.monotonic() + 5
    while True:
        status = client.get("/scour/status", params={"jobId": payload["jobId"]})
        assert status.status_code == 200
        job = status.json()["job"]
        if job["status"] == "done" or time.monotonic() > deadline:
            break
        time.sleep(0.02)
    assert job["phase"] == "early_signals"
    assert job["status"] == "done"
    assert job["macroProgress"] == {"processed": 4, "total": 4}


def test_run_conflict_returns_409_with_active_job(stack):
    manager, _, _ = stack
    save_job(manager.store, Job(id="busy", status="running", phase=SourcesPhase()))
    client = TestClient(app)

    response = client.post("/scour/run", json={})

    assert response.status_code == 409
    assert response.json()["detail"] == {"error": "job_already_running", "jobId": "busy"}


def test_run_unknown_source_returns_400(stack):
    client = TestClient(app)
    response = client.post("/scour/run", json={"sourceIds": ["missing"]})
    assert response.status_code == 400


def test_status_and_logs_error_codes(stack):
    client = TestClient(app)

    assert client.get("/scour/status").status_code == 400
    assert client.get("/scour/status", params={"jobId": "nope"}).status_code == 404
    assert client.get("/scour/logs").status_code == 400
    assert client.get("/scour/logs", params={"jobId": "nope"}).status_code == 404

    client.post("/scour/run", json={"jobId": "rss-1"})
    logs = client.get("/scour/logs", params={"jobId": "rss-1", "limit": 2})
    assert logs.status_code == 200
    entries = logs.json()["logs"]
    assert len(entries) == 2
    assert entries[-1]["message"].startswith("Created 6 alerts")


def test_force_stop_reports_cleared_jobs(stack):
    manager, _, _ = stack
    save_job(manager.store, Job(id="j1", status="queued", phase=SourcesPhase()))
    client = TestClient(app)

    response = client.post("/force-stop-scour")

    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "message": "Stopped 1 scour job(s)",
        "clearedCount": 1,
        "jobIds": ["j1"],
    }
    assert client.post("/scour/run", json={}).json()["status"] == "done"


def test_mutating_endpoints_require_admin_token(stack, monkeypatch):
    monkeypatch.setenv("SW_ADMIN_TOKEN", "secret")
    client = TestClient(app)

    assert client.post("/force-stop-scour").status_code == 401
    assert client.post("/scour/run", json={}).status_code == 401
    ok = client.post("/force-stop-scour", headers={"X-Admin-Token": "secret"})
    assert ok.status_code == 200


def test_patch_source_enables_and_404s(stack):
    _, registry, _ = stack
    client = TestClient(app)

    response = client.patch("/sources/src-03", json={"enabled": False})
    assert response.status_code == 200
    assert response.json()["enabled"] is False
    assert registry.get("src-03").enabled is False

    assert client.patch("/sources/ghost", json={"enabled": True}).status_code == 404
    assert client.patch("/sources/src-03", json={"trust_score": 3}).status_code == 400


def test_sources_list_reads_state_db():
    with init_db() as conn:
        upsert_source(conn, {"id": "feed-a", "url": "https://a.example.com/rss"})
        upsert_source(conn, {"id": "feed-b", "url": "https://b.example.com/rss", "enabled": False})
    client = TestClient(app)

    response = client.get("/sources")

    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == ["feed-a", "feed-b"]
    enabled = client.get("/sources", params={"enabled_only": True}).json()
    assert [item["id"] for item in enabled] == ["feed-a"]


def test_worker_endpoint_returns_unit_outcomes(stack, monkeypatch):
    processor = UnitProcessor(
        extractor=FakeExtractor(failing={"src-02"}, per_source=1), sink=MemoryAlertSink()
    )
    monkeypatch.setattr(admin, "build_processor", lambda config, db_path, logger=None: processor)
    client = TestClient(app)

    response = client.post("/scour/worker", json={"sourceIds": ["src-01", "src-02"]})

    assert response.status_code == 200
    units = response.json()["units"]
    assert [unit["unitId"] for unit in units] == ["src-01", "src-02"]
    assert units[0]["created"] == 1
    assert units[1]["succeeded"] is False
    assert units[1]["errors"]


def test_runtime_config_get_put_and_reject_invalid():
    client = TestClient(app)

    response = client.get("/admin/config/runtime")
    assert response.status_code == 200
    cfg = response.json()["config"]
    assert cfg["scour"]["retry_batch_size"] == DEFAULT_CONFIG["scour"]["retry_batch_size"]

    updated = copy.deepcopy(cfg)
    updated["scour"]["retry_batch_size"] = 5
    response = client.put("/admin/config/runtime", json={"config": updated})
    assert response.status_code == 200
    assert response.json()["applied"] is True
    assert client.get("/admin/config/runtime").json()["config"]["scour"]["retry_batch_size"] == 5

    updated["scour"]["retry_batch_size"] = 0
    assert client.put("/admin/config/runtime", json={"config": updated}).status_code == 400
    assert client.put("/admin/config/runtime", json={"config": {"app": {}}}).status_code == 400
