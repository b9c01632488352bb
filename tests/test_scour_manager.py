import threading

import pytest

from scourwatch.models import DONE, Job, Progress, SourcesPhase, ActivityEntry
from scourwatch.scour import JobAlreadyRunning
from scourwatch.services.job_store import load_job, save_job

from scour_fakes import build_stack, make_sources


def _start_blocked(manager, extractor, **kwargs):
    extractor.gate = threading.Event()
    handle = manager.start(**kwargs)
    assert extractor.started.wait(5)
    return handle


def test_second_start_while_running_is_rejected():
    manager, _, extractor, _, _ = build_stack(make_sources(3))
    handle = _start_blocked(manager, extractor)

    with pytest.raises(JobAlreadyRunning) as excinfo:
        manager.start(early_signals=True)
    assert excinfo.value.job_id == handle.job_id

    extractor.gate.set()
    assert handle.wait(5)
    assert manager.status(handle.job_id).status == DONE

    second = manager.start(background=False)
    assert manager.status(second.job_id).status == DONE


def test_queued_document_alone_blocks_new_jobs():
    manager, _, _, _, _ = build_stack(make_sources(2))
    save_job(manager.store, Job(id="stale", status="queued", phase=SourcesPhase()))

    with pytest.raises(JobAlreadyRunning):
        manager.start(background=False)


def test_unreadable_job_documents_do_not_block_start_or_force_stop():
    manager, _, _, _, _ = build_stack(make_sources(2))
    manager.store.set("scour-job-bad", {"id": "bad", "status": "cancelled", "phase": "sources"})
    manager.store.set("scour-job-half", {"status": "running", "phase": "sources"})

    assert manager.status("bad") is None
    assert manager.active_job_ids() == []
    handle = manager.start(background=False)
    assert manager.status(handle.job_id).status == DONE

    assert manager.force_stop() == ["half"]
    assert manager.store.get("scour-job-half") is None
    assert manager.store.get("scour-job-bad") is not None


def test_force_stop_clears_every_active_job_then_allows_new_start():
    manager, _, _, _, _ = build_stack(make_sources(2))
    save_job(manager.store, Job(id="a", status="queued", phase=SourcesPhase()))
    save_job(manager.store, Job(id="b", status="running", phase=SourcesPhase()))
    save_job(manager.store, Job(id="c", status="done", phase=SourcesPhase()))

    cleared = manager.force_stop()

    assert sorted(cleared) == ["a", "b"]
    assert manager.active_job_ids() == []
    assert load_job(manager.store, "c") is not None
    handle = manager.start(background=False)
    assert manager.status(handle.job_id).status == DONE
    assert manager.force_stop() == []


def test_force_stop_mid_run_is_never_resurrected():
    manager, registry, extractor, _, _ = build_stack(make_sources(5), failing={"src-01"})
    handle = _start_blocked(manager, extractor)
    writes_before = len(manager.store.history)

    cleared = manager.force_stop()
    extractor.gate.set()
    assert handle.wait(5)

    assert cleared == [handle.job_id]
    assert manager.status(handle.job_id) is None
    assert len(manager.store.history) == writes_before
    assert extractor.calls == ["src-01"]
    assert all(source.enabled for source in registry.list_sources(enabled_only=False))
    assert manager.start(background=False).job_id != handle.job_id


def test_caller_supplied_job_id_is_used_and_must_be_new():
    manager, _, _, _, _ = build_stack(make_sources(2))

    handle = manager.start(job_id="rss-0", background=False)
    assert handle.job_id == "rss-0"
    with pytest.raises(ValueError):
        manager.start(job_id="rss-0", background=False)


def test_unknown_source_ids_are_rejected_before_any_write():
    manager, _, _, _, _ = build_stack(make_sources(2))

    with pytest.raises(ValueError, match="nope"):
        manager.start(source_ids=["src-01", "nope"], background=False)
    assert manager.store.history == []


def test_selected_sources_are_a_snapshot_of_the_request():
    manager, _, extractor, _, _ = build_stack(make_sources(6))

    handle = manager.start(source_ids=["src-05", "src-02", "src-05"], background=False)
    job = manager.status(handle.job_id)

    assert job.total == 2
    assert job.source_ids == ["src-05", "src-02"]
    assert extractor.calls == ["src-05", "src-02"]


def test_batch_window_selects_a_slice_and_reports_next_offset():
    manager, _, extractor, _, _ = build_stack(make_sources(25))

    handle = manager.start(batch_offset=20, batch_size=10, background=False)
    job = manager.status(handle.job_id)

    assert job.total == 5
    assert extractor.calls == [f"src-{index:02d}" for index in range(21, 26)]
    assert job.batch_window == {
        "offset": 20,
        "size": 10,
        "totalSources": 25,
        "hasMoreBatches": False,
        "nextBatchOffset": None,
    }

    manager2, _, _, _, _ = build_stack(make_sources(25))
    job2 = manager2.status(manager2.start(batch_offset=0, batch_size=10, background=False).job_id)
    assert job2.batch_window["hasMoreBatches"] is True
    assert job2.batch_window["nextBatchOffset"] == 10


def test_status_document_truncates_activity_log():
    manager, _, _, _, _ = build_stack(make_sources(1))
    manager.status_log_window = 3
    job = Job(
        id="long",
        status="done",
        phase=SourcesPhase(current_query_progress=Progress(1, 1)),
        total=1,
        processed=1,
        activity_log=[ActivityEntry(time="t", message=f"m{index}") for index in range(10)],
    )
    save_job(manager.store, job)

    document = manager.status_document("long")

    assert [entry["message"] for entry in document["activityLog"]] == ["m7", "m8", "m9"]
    assert document["activityLogTotal"] == 10
    assert [entry.message for entry in manager.logs("long", limit=2)] == ["m8", "m9"]
    assert manager.status_document("missing") is None
    assert manager.logs("missing") is None
