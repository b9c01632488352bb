from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Protocol

from ..models import PHASE_EARLY_SIGNALS, TERMINAL_STATUSES
from ..utils import log_event
from .api import ScourApiError


class PollTimeout(RuntimeError):
    pass


class StatusApi(Protocol):
    def status(self, job_id: str) -> dict[str, Any]: ...

    def logs(self, job_id: str, limit: int = 50) -> list[dict[str, Any]]: ...

    def force_stop(self) -> dict[str, Any]: ...


class CancelToken:
    """Shared by every exit path of a poll loop; the first ``cancel`` wins."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            return True

    def wait(self, seconds: float) -> bool:
        return self._event.wait(seconds)


@dataclass(frozen=True)
class ScourView:
    job: dict[str, Any] | None = None
    logs: list[dict[str, Any]] = field(default_factory=list)
    running: bool = False
    stuck: bool = False
    stopped_by_user: bool = False
    error: str | None = None
    finish_reason: str | None = None


class ScourPoller:
    """Follows one job through GET /scour/status until it ends.

    Each received document replaces the local projection wholesale. Terminal
    status, a 404, the overall deadline and a local force-stop all end the
    loop through the same token, so only one of them tears down.
    """

    def __init__(
        self,
        client: StatusApi,
        job_id: str,
        *,
        fast_interval: float = 0.45,
        slow_interval: float = 2.5,
        max_wait: float = 900.0,
        watch_logs: bool = False,
        log_tail: int = 15,
        on_update: Callable[[ScourView], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.job_id = job_id
        self.fast_interval = fast_interval
        self.slow_interval = slow_interval
        self.max_wait = max_wait
        self.watch_logs = watch_logs
        self.log_tail = log_tail
        self.on_update = on_update
        self.clock = clock
        self.logger = logger or logging.getLogger("scourwatch.client")
        self._lock = threading.Lock()
        self._token = CancelToken()
        self._thread: threading.Thread | None = None
        self._view = ScourView()

    @property
    def view(self) -> ScourView:
        with self._lock:
            return self._view

    @property
    def token(self) -> CancelToken:
        return self._token

    def interval(self) -> float:
        job = self.view.job or {}
        if self.watch_logs or job.get("phase") == PHASE_EARLY_SIGNALS:
            return self.fast_interval
        return self.slow_interval

    def start(self) -> bool:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return False
            if self._token.cancelled:
                self._token = CancelToken()
            self._view = ScourView(job=self._view.job, logs=self._view.logs, running=True)
            token = self._token
            self._thread = threading.Thread(
                target=self._loop,
                args=(token,),
                name=f"poll-{self.job_id}",
                daemon=True,
            )
            self._thread.start()
        return True

    def join(self, timeout: float | None = None) -> ScourView:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return self.view

    def run(self) -> ScourView:
        """Poll in the calling thread; raises PollTimeout when the job looks stuck."""
        if not self.start():
            raise RuntimeError(f"poller for {self.job_id} is already running")
        view = self.join()
        if view.stuck:
            raise PollTimeout(view.error or f"job {self.job_id} is stuck")
        return view

    def stop(self) -> bool:
        return self._teardown(self._token, "stopped")

    def force_stop(self) -> dict[str, Any]:
        result = self.client.force_stop()
        self._teardown(self._token, "force_stopped", stopped_by_user=True)
        return result

    def poll_once(self, token: CancelToken | None = None) -> None:
        token = token or self._token
        try:
            job = self.client.status(self.job_id)
        except ScourApiError as exc:
            if exc.status == 404:
                self._teardown(token, "job_gone", error="job not found")
                return
            log_event(
                self.logger,
                logging.WARNING,
                "poll_failed",
                job_id=self.job_id,
                status=exc.status,
                error=str(exc),
            )
            return
        logs = self.view.logs
        if self.watch_logs:
            try:
                logs = self.client.logs(self.job_id, limit=self.log_tail)
            except ScourApiError as exc:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "poll_logs_failed",
                    job_id=self.job_id,
                    error=str(exc),
                )
        with self._lock:
            if token.cancelled:
                return
            self._view = replace(self._view, job=dict(job), logs=list(logs))
            view = self._view
        self._notify(view)
        if job.get("status") in TERMINAL_STATUSES:
            self._teardown(token, "terminal", error=job.get("fatalError"))

    def _loop(self, token: CancelToken) -> None:
        started = self.clock()
        while not token.cancelled:
            if self.clock() - started >= self.max_wait:
                self._teardown(
                    token,
                    "stuck",
                    stuck=True,
                    error=f"job {self.job_id} did not finish within {self.max_wait:g}s",
                )
                break
            self.poll_once(token)
            if token.cancelled:
                break
            token.wait(self.interval())

    def _teardown(self, token: CancelToken, reason: str, **updates: Any) -> bool:
        if not token.cancel(reason):
            return False
        with self._lock:
            self._view = replace(self._view, running=False, finish_reason=reason, **updates)
            view = self._view
        log_event(self.logger, logging.INFO, "poll_finished", job_id=self.job_id, reason=reason)
        self._notify(view)
        return True

    def _notify(self, view: ScourView) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(view)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.WARNING,
                "poll_callback_failed",
                job_id=self.job_id,
                error=str(exc),
            )
