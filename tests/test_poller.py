import threading

import pytest

from scourwatch.client import CancelToken, PollTimeout, ScourApiError, ScourPoller


class FakeStatusApi:
    def __init__(self, documents, logs=None):
        self.documents = list(documents)
        self.logs_payload = logs or []
        self.status_calls = 0
        self.force_stop_calls = 0
        self.lock = threading.Lock()

    def status(self, job_id):
        with self.lock:
            self.status_calls += 1
            item = self.documents[0] if len(self.documents) == 1 else self.documents.pop(0)
        if isinstance(item, Exception):
            raise item
        return dict(item)

    def logs(self, job_id, limit=50):
        return list(self.logs_payload)[-limit:]

    def force_stop(self):
        self.force_stop_calls += 1
        return {"ok": True, "clearedCount": 1, "jobIds": ["j1"]}


def _doc(status="running", processed=0, total=4, **extra):
    document = {"id": "j1", "status": status, "phase": "sources", "processed": processed, "total": total}
    document.update(extra)
    return document


def test_each_document_replaces_the_previous_projection():
    api = FakeStatusApi(
        [
            _doc(processed=1, currentActivity="fetching", batchRetry={"reason": "gateway_timeout"}),
            _doc(processed=2),
        ]
    )
    poller = ScourPoller(api, "j1")

    poller.poll_once()
    assert poller.view.job["batchRetry"] == {"reason": "gateway_timeout"}
    poller.poll_once()

    assert poller.view.job == _doc(processed=2)
    assert "currentActivity" not in poller.view.job


def test_poll_loop_ends_on_terminal_status():
    updates = []
    api = FakeStatusApi([_doc(processed=1), _doc(processed=3), _doc(status="done", processed=4)])
    poller = ScourPoller(api, "j1", fast_interval=0.001, slow_interval=0.001, on_update=updates.append)

    view = poller.run()

    assert view.running is False
    assert view.finish_reason == "terminal"
    assert view.job["processed"] == 4
    assert api.status_calls == 3
    assert [update.job["processed"] for update in updates if update.running] == [1, 3, 4]


def test_start_is_idempotent_while_a_loop_runs():
    api = FakeStatusApi([_doc()])
    poller = ScourPoller(api, "j1", slow_interval=0.01)

    assert poller.start() is True
    assert poller.start() is False
    poller.stop()
    poller.join(2)
    assert poller.view.running is False


def test_interval_is_fast_for_early_signals_and_log_watching():
    api = FakeStatusApi([_doc(phase="early_signals")])
    poller = ScourPoller(api, "j1", fast_interval=0.45, slow_interval=2.5)
    assert poller.interval() == 2.5
    poller.poll_once()
    assert poller.interval() == 0.45

    watcher = ScourPoller(FakeStatusApi([_doc()]), "j1", watch_logs=True)
    assert watcher.interval() == watcher.fast_interval


def test_stuck_job_raises_poll_timeout_after_deadline():
    ticks = iter([0.0, 1.0, 5.0, 11.0])
    poller = ScourPoller(
        FakeStatusApi([_doc()]),
        "j1",
        slow_interval=0.001,
        max_wait=10.0,
        clock=lambda: next(ticks, 99.0),
    )

    with pytest.raises(PollTimeout):
        poller.run()
    assert poller.view.stuck is True
    assert poller.view.finish_reason == "stuck"
    assert poller.view.job["status"] == "running"


def test_restart_after_stuck_reports_the_real_outcome():
    state = {"now": 0.0, "step": 6.0}

    def clock():
        state["now"] += state["step"]
        return state["now"]

    api = FakeStatusApi([_doc()])
    poller = ScourPoller(api, "j1", slow_interval=0.001, max_wait=10.0, clock=clock)
    with pytest.raises(PollTimeout):
        poller.run()

    state["step"] = 0.0
    api.documents = [_doc(status="done", processed=4)]
    view = poller.run()

    assert view.finish_reason == "terminal"
    assert view.stuck is False
    assert view.error is None
    assert view.job["status"] == "done"


def test_document_arriving_after_teardown_is_dropped():
    class StoppingApi(FakeStatusApi):
        def status(self, job_id):
            poller.stop()
            return super().status(job_id)

    poller = ScourPoller(StoppingApi([_doc(processed=3)]), "j1")

    poller.poll_once()

    assert poller.view.finish_reason == "stopped"
    assert poller.view.job is None


def test_missing_job_stops_polling():
    api = FakeStatusApi([_doc(processed=1), ScourApiError("gone", status=404)])
    poller = ScourPoller(api, "j1", slow_interval=0.001)

    view = poller.run()

    assert view.finish_reason == "job_gone"
    assert view.job["processed"] == 1


def test_transient_errors_keep_polling():
    api = FakeStatusApi(
        [ScourApiError("timeout"), ScourApiError("bad gateway", status=502), _doc(status="error")]
    )
    poller = ScourPoller(api, "j1", slow_interval=0.001)

    view = poller.run()

    assert view.finish_reason == "terminal"
    assert api.status_calls == 3


def test_force_stop_tears_down_exactly_once():
    finished = []
    api = FakeStatusApi([_doc()])
    poller = ScourPoller(
        api,
        "j1",
        slow_interval=0.01,
        on_update=lambda view: finished.append(view.finish_reason) if not view.running else None,
    )
    poller.start()

    result = poller.force_stop()
    view = poller.join(2)

    assert result["clearedCount"] == 1
    assert api.force_stop_calls == 1
    assert view.stopped_by_user is True
    assert view.finish_reason == "force_stopped"
    assert poller.stop() is False
    assert finished == ["force_stopped"]


def test_cancel_token_first_reason_wins():
    token = CancelToken()
    assert token.cancel("terminal") is True
    assert token.cancel("force_stopped") is False
    assert token.reason == "terminal"
    assert token.wait(0) is True


def test_watch_logs_fetches_tail():
    api = FakeStatusApi(
        [_doc(status="done")],
        logs=[{"time": "t", "message": f"m{index}"} for index in range(20)],
    )
    poller = ScourPoller(api, "j1", watch_logs=True, log_tail=3)

    poller.poll_once()

    assert [entry["message"] for entry in poller.view.logs] == ["m17", "m18", "m19"]
