import io
import json
from urllib.error import HTTPError

import pytest

from scourwatch.client import (
    ScourApiError,
    ScourClient,
    ScourView,
    apply_disabled,
    build_source_groups,
    describe_result,
    run_group,
)
from scourwatch.client import api as client_api


def _sources(count, source_type="rss", enabled=True, prefix=None):
    prefix = prefix or source_type
    return [
        {"id": f"{prefix}-{index}", "type": source_type, "enabled": enabled}
        for index in range(count)
    ]


def test_groups_split_enabled_sources_by_type_in_fifties():
    sources = _sources(120) + _sources(10, "html") + _sources(5, "rss", enabled=False, prefix="off")

    groups = build_source_groups(sources)

    assert [group.id for group in groups] == ["early-signals", "html-0", "rss-0", "rss-1", "rss-2"]
    assert [len(group.source_ids) for group in groups] == [0, 10, 50, 50, 20]
    assert groups[2].name == "Rss - Group 1 (50 sources)"
    assert all(group.status == "pending" for group in groups)
    assert not any(item.startswith("off-") for group in groups for item in group.source_ids)


def test_disabled_ids_are_removed_and_empty_groups_dropped():
    groups = build_source_groups(_sources(3, "html") + _sources(2))

    kept = apply_disabled(groups, ["rss-0", "rss-1", "html-2"])

    assert [group.id for group in kept] == ["early-signals", "html-0"]
    assert kept[1].source_ids == ["html-0", "html-1"]


def test_describe_result_variants():
    assert describe_result({"status": "done", "created": 3, "duplicatesSkipped": 1}) == (
        "Created 3 alerts, 1 dupes"
    )
    assert "will be disabled" in describe_result(
        {"status": "done", "created": 0, "duplicatesSkipped": 0, "errorCount": 2}
    )
    assert describe_result({"status": "error", "fatalError": "boom"}) == "Failed: boom"
    assert describe_result({"status": "stopped"}) == "Stopped by force-stop"


class FakeClient:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def run(self, **kwargs):
        self.calls.append(kwargs)
        return self.result


class FakePoller:
    def __init__(self, view):
        self._view = view

    def run(self):
        return self._view


def test_run_group_sends_group_source_ids_and_records_result():
    group = build_source_groups(_sources(3), include_early_signals=False)[0]
    client = FakeClient({"status": "done", "created": 2, "disabled_source_ids": ["rss-1"]})

    result = run_group(client, group)

    assert client.calls[0]["source_ids"] == ["rss-0", "rss-1", "rss-2"]
    assert client.calls[0]["wait"] is True
    assert client.calls[0]["job_id"].startswith("rss-0-")
    assert group.status == "completed"
    assert group.results == result


def test_run_group_early_signals_polls_until_done():
    group = build_source_groups([])[0]
    client = FakeClient({"ok": True, "status": "queued", "jobId": "early-signals-1"})
    final = ScourView(job={"status": "done", "created": 5}, finish_reason="terminal")

    result = run_group(client, group, poller_factory=lambda job_id: FakePoller(final))

    assert client.calls[0]["early_signals"] is True
    assert result["created"] == 5
    assert group.status == "completed"


def test_run_group_reports_force_stop_as_stopped():
    group = build_source_groups([])[0]
    client = FakeClient({"status": "queued", "jobId": "early-signals-1"})
    view = ScourView(job={"status": "running"}, stopped_by_user=True, finish_reason="force_stopped")

    result = run_group(client, group, poller_factory=lambda job_id: FakePoller(view))

    assert result["status"] == "stopped"
    assert group.status == "error"


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def test_client_status_unwraps_job(monkeypatch):
    seen = {}

    def fake_urlopen(request, timeout):
        seen["url"] = request.full_url
        seen["timeout"] = timeout
        return _Response(json.dumps({"ok": True, "job": {"id": "j1"}}).encode("utf-8"))

    monkeypatch.setattr(client_api, "urlopen", fake_urlopen)
    client = ScourClient("http://api.local/", timeout_s=8.0)

    assert client.status("j1") == {"id": "j1"}
    assert seen["url"] == "http://api.local/scour/status?jobId=j1"
    assert seen["timeout"] == 8.0


def test_client_maps_http_errors(monkeypatch):
    def fake_urlopen(request, timeout):
        body = io.BytesIO(json.dumps({"detail": {"error": "job_already_running", "jobId": "x"}}).encode())
        raise HTTPError(request.full_url, 409, "Conflict", {}, body)

    monkeypatch.setattr(client_api, "urlopen", fake_urlopen)
    client = ScourClient("http://api.local", admin_token="secret")

    with pytest.raises(ScourApiError) as excinfo:
        client.run(source_ids=["a"])
    assert excinfo.value.status == 409
    assert excinfo.value.detail == {"error": "job_already_running", "jobId": "x"}
