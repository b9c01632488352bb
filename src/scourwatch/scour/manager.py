from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field

from ..config import Config
from ..ingest import SourceExtractor
from ..models import (
    QUEUED,
    ActivityEntry,
    EarlySignalsPhase,
    Job,
    Progress,
    Source,
    SourcesPhase,
)
from ..searxng import SearxngSearchClient
from ..services.alert_sink import DBAlertSink
from ..services.job_store import (
    DBJobStore,
    JobStore,
    clear_active_jobs,
    list_active_jobs,
    load_job,
    save_job,
)
from ..services.sources_service import DBSourceRegistry, SourceRegistry, resolve_sources
from ..storage import new_job_id
from ..utils import log_event, utc_now_iso
from .catalog import catalog_from_config, macro_total, micro_total
from .dispatch import HttpDispatcher, LocalDispatcher, UnitProcessor
from .errors import JobAlreadyRunning
from .runner import JobRunner, JobWriter


@dataclass
class JobHandle:
    job_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None
    job: Job | None = None

    def wait(self, timeout: float | None = None) -> bool:
        if self.thread is None:
            return True
        self.thread.join(timeout)
        return not self.thread.is_alive()


class ScourManager:
    """Starts scour jobs (one at a time), serves reads and the global force-stop."""

    def __init__(
        self,
        *,
        store: JobStore,
        registry: SourceRegistry,
        runner: JobRunner,
        flush_interval: float = 1.0,
        status_log_window: int = 100,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.runner = runner
        self.flush_interval = flush_interval
        self.status_log_window = max(1, status_log_window)
        self.logger = logger or logging.getLogger("scourwatch.scour")
        self._lock = threading.RLock()
        self._handles: dict[str, JobHandle] = {}

    def start(
        self,
        *,
        job_id: str | None = None,
        source_ids: list[str] | None = None,
        early_signals: bool = False,
        batch_offset: int | None = None,
        batch_size: int | None = None,
        background: bool = True,
    ) -> JobHandle:
        with self._lock:
            active = list_active_jobs(self.store)
            if active:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "job_start_rejected",
                    active_job_id=active[0].id,
                )
                raise JobAlreadyRunning(active[0].id)
            job_id = (job_id or "").strip() or new_job_id()
            if load_job(self.store, job_id) is not None:
                raise ValueError(f"job id {job_id} already exists")
            if early_signals:
                job, sources = self._new_early_signals_job(job_id), []
            else:
                job, sources = self._new_sources_job(job_id, source_ids, batch_offset, batch_size)
            save_job(self.store, job)
            handle = JobHandle(job_id=job_id, job=job)
            self._handles[job_id] = handle
        log_event(
            self.logger,
            logging.INFO,
            "job_queued",
            job_id=job_id,
            phase=job.phase.kind,
            total=job.total,
            background=background,
        )
        if background:
            handle.thread = threading.Thread(
                target=self._run,
                args=(handle, job, sources),
                name=f"scour-{job_id}",
                daemon=True,
            )
            handle.thread.start()
        else:
            self._run(handle, job, sources)
        return handle

    def _new_early_signals_job(self, job_id: str) -> Job:
        catalog = self.runner.catalog
        if not catalog:
            raise ValueError("early signals catalog is empty")
        macro = macro_total(catalog)
        return Job(
            id=job_id,
            status=QUEUED,
            phase=EarlySignalsPhase(
                macro_progress=Progress(0, macro),
                micro_progress=Progress(0, micro_total(catalog)),
            ),
            total=macro,
            created_at=utc_now_iso(),
        )

    def _new_sources_job(
        self,
        job_id: str,
        source_ids: list[str] | None,
        batch_offset: int | None,
        batch_size: int | None,
    ) -> tuple[Job, list[Source]]:
        sources = resolve_sources(self.registry, source_ids)
        batch_window = None
        if batch_offset is not None or batch_size is not None:
            offset = batch_offset or 0
            if offset < 0:
                raise ValueError("batchOffset must be >= 0")
            if batch_size is not None and batch_size < 1:
                raise ValueError("batchSize must be >= 1")
            size = batch_size if batch_size is not None else max(len(sources) - offset, 0)
            total_sources = len(sources)
            sources = sources[offset : offset + size]
            next_offset = offset + len(sources)
            batch_window = {
                "offset": offset,
                "size": size,
                "totalSources": total_sources,
                "hasMoreBatches": next_offset < total_sources,
                "nextBatchOffset": next_offset if next_offset < total_sources else None,
            }
        job = Job(
            id=job_id,
            status=QUEUED,
            phase=SourcesPhase(current_query_progress=Progress(0, len(sources))),
            total=len(sources),
            source_ids=[source.id for source in sources],
            batch_window=batch_window,
            created_at=utc_now_iso(),
        )
        job.activity_log.append(
            ActivityEntry(time=utc_now_iso(), message=f"Queued scour of {len(sources)} sources")
        )
        return job, sources

    def _run(self, handle: JobHandle, job: Job, sources: list[Source]) -> None:
        writer = JobWriter(
            self.store,
            job,
            cancel_event=handle.cancel_event,
            lock=self._lock,
            flush_interval=self.flush_interval,
        )
        try:
            self.runner.run(job, writer, sources)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.ERROR,
                "job_runner_crashed",
                job_id=job.id,
                error=str(exc),
            )
        finally:
            with self._lock:
                self._handles.pop(handle.job_id, None)

    def status(self, job_id: str) -> Job | None:
        return load_job(self.store, job_id)

    def status_document(self, job_id: str) -> dict[str, object] | None:
        job = load_job(self.store, job_id)
        if job is None:
            return None
        document = job.to_document()
        document["activityLogTotal"] = len(job.activity_log)
        document["activityLog"] = [
            entry.to_dict() for entry in job.activity_log[-self.status_log_window :]
        ]
        return document

    def logs(self, job_id: str, limit: int = 50) -> list[ActivityEntry] | None:
        job = load_job(self.store, job_id)
        if job is None:
            return None
        if limit <= 0:
            return []
        return job.activity_log[-limit:]

    def active_job_ids(self) -> list[str]:
        return [job.id for job in list_active_jobs(self.store)]

    def has_running_threads(self) -> bool:
        with self._lock:
            return bool(self._handles)

    def force_stop(self) -> list[str]:
        with self._lock:
            for handle in self._handles.values():
                handle.cancel_event.set()
            cleared = clear_active_jobs(self.store)
        log_event(
            self.logger,
            logging.WARNING,
            "scour_force_stopped",
            cleared=len(cleared),
            job_ids=",".join(cleared) or None,
        )
        return cleared


def build_processor(config: Config, db_path: str, logger: logging.Logger | None = None) -> UnitProcessor:
    sink = DBAlertSink(
        db_path,
        window_days=config.ingest.dedupe.window_days,
        enabled=config.ingest.dedupe.enabled,
        url_normalization=config.ingest.url_normalization,
    )
    return UnitProcessor(
        extractor=SourceExtractor(config.ingest.http, logger),
        sink=sink,
        min_confidence=config.ingest.min_confidence,
        search_client=SearxngSearchClient(config.early_signals),
        logger=logger,
    )


def build_manager(config: Config, db_path: str, logger: logging.Logger | None = None) -> ScourManager:
    processor = build_processor(config, db_path, logger)
    if config.scour.dispatch == "http":
        dispatcher = HttpDispatcher(
            config.scour.worker_url,
            timeout_s=config.scour.worker_timeout_seconds,
            admin_token=os.environ.get("SW_ADMIN_TOKEN"),
            logger=logger,
        )
    else:
        dispatcher = LocalDispatcher(processor)
    registry = DBSourceRegistry(db_path)
    runner = JobRunner(
        registry=registry,
        processor=processor,
        dispatcher=dispatcher,
        catalog=catalog_from_config(config.early_signals),
        retry_batch_size=config.scour.retry_batch_size,
        disable_failing_sources=config.scour.disable_failing_sources,
        query_delay_seconds=config.early_signals.delay_seconds,
        logger=logger,
    )
    return ScourManager(
        store=DBJobStore(db_path),
        registry=registry,
        runner=runner,
        flush_interval=config.scour.flush_interval_seconds,
        status_log_window=config.scour.status_log_window,
        logger=logger,
    )
