import pytest

from scourwatch.models import (
    ActivityEntry,
    EarlySignalsPhase,
    Job,
    JobError,
    Progress,
    SourcesPhase,
)
from scourwatch.services.job_store import (
    DBJobStore,
    MemoryJobStore,
    clear_active_jobs,
    job_key,
    list_active_jobs,
    list_jobs,
    load_job,
    save_job,
)


def _early_job(job_id="early-1", status="running"):
    return Job(
        id=job_id,
        status=status,
        phase=EarlySignalsPhase(
            macro_progress=Progress(3, 80),
            micro_progress=Progress(10, 240),
            current_early_signal_query="flood Haiti",
        ),
        total=80,
        processed=3,
    )


@pytest.fixture(params=["memory", "db"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryJobStore()
    return DBJobStore(str(tmp_path / "jobs.sqlite3"))


def test_document_carries_only_its_own_phase_fields():
    document = _early_job().to_document()

    assert document["phase"] == "early_signals"
    assert document["macroProgress"] == {"processed": 3, "total": 80}
    assert document["microProgress"] == {"processed": 10, "total": 240}
    assert "currentQueryProgress" not in document
    assert "currentQuery" not in document

    sources = Job(id="s", status="queued", phase=SourcesPhase(current_query_progress=Progress(0, 5)))
    assert "macroProgress" not in sources.to_document()


def test_save_and_load_preserve_the_job(store):
    job = _early_job()
    job.errors.append(JobError(source_id="early:flood:Haiti", reason="timeout"))
    job.activity_log.append(ActivityEntry(time="2026-01-01T00:00:00+00:00", message="Searching"))
    save_job(store, job)

    loaded = load_job(store, job.id)

    assert loaded == job
    assert store.get(job_key(job.id))["errors"] == [
        {"sourceId": "early:flood:Haiti", "reason": "timeout"}
    ]
    assert load_job(store, "missing") is None


def test_clear_active_jobs_leaves_terminal_documents(store):
    save_job(store, _early_job("a", "queued"))
    save_job(store, _early_job("b", "running"))
    save_job(store, _early_job("c", "done"))
    save_job(store, _early_job("d", "error"))
    store.set("unrelated", {"status": "running"})

    assert sorted(job.id for job in list_active_jobs(store)) == ["a", "b"]
    assert sorted(clear_active_jobs(store)) == ["a", "b"]
    assert sorted(job.id for job in list_jobs(store)) == ["c", "d"]
    assert store.get("unrelated") == {"status": "running"}


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        Job.from_document({"id": "x", "status": "paused", "phase": "sources"})


def test_unreadable_documents_are_skipped_but_still_cleared(store):
    save_job(store, _early_job("good", "done"))
    store.set(job_key("bad-status"), {"id": "bad-status", "status": "cancelled", "phase": "sources"})
    store.set(job_key("no-id"), {"status": "queued", "phase": "sources"})

    assert [job.id for job in list_jobs(store)] == ["good"]
    assert load_job(store, "bad-status") is None
    assert list_active_jobs(store) == []
    assert clear_active_jobs(store) == ["no-id"]
    assert store.get(job_key("bad-status")) is not None
