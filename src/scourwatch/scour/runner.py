from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable

from ..models import (
    DONE,
    ERROR,
    PHASE_EARLY_SIGNALS,
    RUNNING,
    ActivityEntry,
    EarlySignalsPhase,
    Job,
    JobError,
    Progress,
    Source,
    SourcesPhase,
    UnitOutcome,
    summarize_job,
)
from ..services.job_store import JobStore, save_job
from ..services.sources_service import SourceRegistry
from ..utils import log_event, utc_now_iso
from .catalog import EarlySignalUnit, catalog_fingerprint, micro_total
from .dispatch import Dispatcher, LocalDispatcher, UnitProcessor
from .errors import FatalScourError, JobCancelled
from .reliability import SourceReliabilityTracker, disable_sources
from .retry import BatchRetryController


class JobWriter:
    """The only writer of one job document for the job's lifetime."""

    def __init__(
        self,
        store: JobStore,
        job: Job,
        *,
        cancel_event: threading.Event | None = None,
        lock: threading.RLock | None = None,
        flush_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.job = job
        self.cancel_event = cancel_event or threading.Event()
        self.lock = lock or threading.RLock()
        self.flush_interval = flush_interval
        self.clock = clock
        self._last_flush = clock()
        self._closed = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def ensure_active(self) -> None:
        if self.cancel_event.is_set():
            raise JobCancelled(self.job.id)

    def log(self, message: str) -> None:
        self.job.activity_log.append(ActivityEntry(time=utc_now_iso(), message=message))
        self.job.current_activity = message

    def note(self, message: str) -> None:
        self.log(message)
        if self.clock() - self._last_flush >= self.flush_interval:
            self.flush()

    def flush(self) -> None:
        with self.lock:
            self.ensure_active()
            if self._closed:
                raise RuntimeError(f"job {self.job.id} is terminal")
            self.job.updated_at = utc_now_iso()
            save_job(self.store, self.job)
            self._last_flush = self.clock()

    def finish(self, status: str, fatal_error: str | None = None) -> None:
        with self.lock:
            self.ensure_active()
            if self._closed or self.job.is_terminal:
                raise RuntimeError(f"job {self.job.id} is terminal")
            self.job.status = status
            self.job.fatal_error = fatal_error
            self.job.finished_at = utc_now_iso()
            self.log(summarize_job(self.job))
            self.flush()
            self._closed = True

    def pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self.cancel_event.wait(seconds):
            raise JobCancelled(self.job.id)


class JobRunner:
    def __init__(
        self,
        *,
        registry: SourceRegistry,
        processor: UnitProcessor,
        dispatcher: Dispatcher | None = None,
        catalog: list[EarlySignalUnit] | None = None,
        retry_batch_size: int = 10,
        disable_failing_sources: bool = True,
        query_delay_seconds: float = 0.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.processor = processor
        self.dispatcher = dispatcher or LocalDispatcher(processor)
        self.catalog = list(catalog or [])
        self.retry_batch_size = retry_batch_size
        self.disable_failing_sources = disable_failing_sources
        self.query_delay_seconds = query_delay_seconds
        self.logger = logger or logging.getLogger("scourwatch.scour")

    def run(self, job: Job, writer: JobWriter, sources: list[Source] | None = None) -> Job:
        try:
            job.status = RUNNING
            job.started_at = utc_now_iso()
            if job.phase.kind == PHASE_EARLY_SIGNALS:
                writer.log(f"Early signals scour started: {job.total} threat/country pairs")
                writer.flush()
                log_event(
                    self.logger,
                    logging.INFO,
                    "job_started",
                    job_id=job.id,
                    phase=job.phase.kind,
                    total=job.total,
                    catalog=catalog_fingerprint(self.catalog) if self.catalog else None,
                )
                self._run_early_signals(job, writer)
            else:
                writer.log(f"Scour started: {job.total} sources")
                writer.flush()
                log_event(
                    self.logger,
                    logging.INFO,
                    "job_started",
                    job_id=job.id,
                    phase=job.phase.kind,
                    total=job.total,
                )
                self._run_sources(job, writer, sources or [])
        except JobCancelled:
            log_event(self.logger, logging.WARNING, "job_force_stopped", job_id=job.id)
            return job
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.ERROR,
                "job_failed",
                job_id=job.id,
                processed=job.processed,
                total=job.total,
                error=str(exc),
            )
            self._finish(job, writer, ERROR, str(exc))
            return job
        self._finish(job, writer, DONE)
        return job

    def _finish(self, job: Job, writer: JobWriter, status: str, fatal_error: str | None = None) -> None:
        try:
            writer.finish(status, fatal_error)
        except JobCancelled:
            log_event(self.logger, logging.WARNING, "job_force_stopped", job_id=job.id)
            return
        log_event(
            self.logger,
            logging.INFO,
            "job_finished",
            job_id=job.id,
            status=status,
            processed=job.processed,
            total=job.total,
            created=job.created,
            duplicates=job.duplicates_skipped,
            errors=job.error_count,
            disabled=len(job.disabled_source_ids),
        )

    def _run_sources(self, job: Job, writer: JobWriter, sources: list[Source]) -> None:
        tracker = SourceReliabilityTracker()
        expected = {source.id for source in sources}
        processed_ids: list[str] = []
        controller = BatchRetryController(
            self.dispatcher, batch_size=self.retry_batch_size, logger=self.logger
        )

        def apply(outcome: UnitOutcome) -> None:
            writer.ensure_active()
            if outcome.unit_id not in expected or outcome.unit_id in processed_ids:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "unexpected_unit_outcome",
                    job_id=job.id,
                    unit_id=outcome.unit_id,
                )
                return
            processed_ids.append(outcome.unit_id)
            job.processed += 1
            self._apply_counters(job, outcome)
            if outcome.error_count:
                tracker.record_error(outcome.unit_id, outcome.error_count)
            if outcome.succeeded:
                tracker.record_success(outcome.unit_id)
            for message in outcome.messages:
                writer.log(message)
            job.phase = SourcesPhase(
                current_query=outcome.label,
                current_query_progress=Progress(job.processed, job.total),
            )
            writer.flush()

        def on_batch(index: int, total: int, batch: list[Source]) -> None:
            job.batch_retry = {
                "reason": "gateway_timeout",
                "batchSize": self.retry_batch_size,
                "batchesTotal": total,
                "batchesCompleted": index - 1,
            }
            if index == 1:
                writer.log(
                    f"Gateway timeout on full run, retrying {len(sources)} sources "
                    f"in {total} batches of {self.retry_batch_size}"
                )
            writer.log(f"Batch {index}/{total}: {len(batch)} sources")
            writer.flush()

        try:
            report = controller.run(sources, apply, on_batch)
            if report.batched and job.batch_retry is not None:
                job.batch_retry = dict(job.batch_retry, batchesCompleted=report.batches_completed)
        finally:
            if not writer.cancelled:
                self._settle_sources(job, writer, tracker, processed_ids)

    def _settle_sources(
        self,
        job: Job,
        writer: JobWriter,
        tracker: SourceReliabilityTracker,
        processed_ids: list[str],
    ) -> None:
        scoured_at = utc_now_iso()
        for source_id in processed_ids:
            try:
                self.registry.patch_source(source_id, {"last_scoured_at": scoured_at})
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.WARNING,
                    "source_touch_failed",
                    source_id=source_id,
                    error=str(exc),
                )
        disabled = tracker.disabled_source_ids()
        job.disabled_source_ids = disabled
        if not disabled:
            return
        if not self.disable_failing_sources:
            writer.log(f"{len(disabled)} failing sources left enabled (disabling is off)")
            return
        results = disable_sources(self.registry, disabled, self.logger)
        job.disable_results = [result.to_dict() for result in results]
        disabled_ok = sum(1 for result in results if result.ok)
        writer.log(f"Disabled {disabled_ok} of {len(disabled)} sources with errors and no successes")

    def _run_early_signals(self, job: Job, writer: JobWriter) -> None:
        if not self.catalog:
            raise FatalScourError("early signals catalog is empty")
        query_total = micro_total(self.catalog)
        queries_done = 0
        for unit in self.catalog:
            for query in unit.queries:
                writer.ensure_active()
                job.phase = EarlySignalsPhase(
                    macro_progress=Progress(job.processed, job.total),
                    micro_progress=Progress(queries_done, query_total),
                    current_early_signal_query=query,
                )
                writer.note(f"Searching: {query}")
                outcome = self.processor.process_query(unit.unit_id, query, unit.country)
                queries_done += 1
                self._apply_counters(job, outcome)
                for message in outcome.messages:
                    writer.log(message)
                job.phase = replace(
                    job.phase, micro_progress=Progress(queries_done, query_total)
                )
                writer.flush()
                if queries_done < query_total:
                    writer.pause(self.query_delay_seconds)
            job.processed += 1
            job.phase = replace(job.phase, macro_progress=Progress(job.processed, job.total))
            writer.flush()

    def _apply_counters(self, job: Job, outcome: UnitOutcome) -> None:
        job.created += outcome.created
        job.duplicates_skipped += outcome.duplicates_skipped
        job.low_confidence_skipped += outcome.low_confidence_skipped
        job.error_count += outcome.error_count
        for reason in outcome.errors:
            job.errors.append(JobError(source_id=outcome.unit_id, reason=reason))
