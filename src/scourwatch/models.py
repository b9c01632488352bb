from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

QUEUED = "queued"
RUNNING = "running"
DONE = "done"
ERROR = "error"

JOB_STATUSES = (QUEUED, RUNNING, DONE, ERROR)
ACTIVE_STATUSES = (QUEUED, RUNNING)
TERMINAL_STATUSES = (DONE, ERROR)

PHASE_SOURCES = "sources"
PHASE_EARLY_SIGNALS = "early_signals"

EARLY_SIGNALS_SOURCE_ID = "early-signals"


@dataclass(frozen=True)
class Source:
    id: str
    url: str
    type: str
    enabled: bool
    trust_score: float
    last_scoured_at: str | None
    name: str | None = None

    @property
    def label(self) -> str:
        return self.name or self.id

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "type": self.type,
            "enabled": self.enabled,
            "trust_score": self.trust_score,
            "last_scoured_at": self.last_scoured_at,
        }


@dataclass(frozen=True)
class CandidateAlert:
    title: str
    url: str | None
    summary: str | None
    source_id: str
    confidence: float
    country: str | None = None
    published_at: str | None = None


@dataclass(frozen=True)
class Progress:
    processed: int
    total: int

    def to_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "total": self.total}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Progress | None":
        if not data:
            return None
        return cls(processed=int(data.get("processed", 0)), total=int(data.get("total", 0)))


@dataclass(frozen=True)
class SourcesPhase:
    kind: ClassVar[str] = PHASE_SOURCES
    current_query: str | None = None
    current_query_progress: Progress | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "currentQuery": self.current_query,
            "currentQueryProgress": (
                self.current_query_progress.to_dict() if self.current_query_progress else None
            ),
        }


@dataclass(frozen=True)
class EarlySignalsPhase:
    kind: ClassVar[str] = PHASE_EARLY_SIGNALS
    macro_progress: Progress
    micro_progress: Progress
    current_early_signal_query: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "currentEarlySignalQuery": self.current_early_signal_query,
            "macroProgress": self.macro_progress.to_dict(),
            "microProgress": self.micro_progress.to_dict(),
        }


JobPhase = Union[SourcesPhase, EarlySignalsPhase]


def phase_from_document(data: dict[str, Any]) -> JobPhase:
    phase = data.get("phase") or PHASE_SOURCES
    if phase == PHASE_EARLY_SIGNALS:
        return EarlySignalsPhase(
            macro_progress=Progress.from_dict(data.get("macroProgress")) or Progress(0, 0),
            micro_progress=Progress.from_dict(data.get("microProgress")) or Progress(0, 0),
            current_early_signal_query=data.get("currentEarlySignalQuery"),
        )
    if phase == PHASE_SOURCES:
        return SourcesPhase(
            current_query=data.get("currentQuery"),
            current_query_progress=Progress.from_dict(data.get("currentQueryProgress")),
        )
    raise ValueError(f"unknown job phase {phase}")


@dataclass(frozen=True)
class JobError:
    source_id: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"sourceId": self.source_id, "reason": self.reason}


@dataclass(frozen=True)
class ActivityEntry:
    time: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"time": self.time, "message": self.message}


@dataclass(frozen=True)
class UnitOutcome:
    unit_id: str
    label: str
    succeeded: bool
    created: int = 0
    duplicates_skipped: int = 0
    low_confidence_skipped: int = 0
    errors: tuple[str, ...] = ()
    messages: tuple[str, ...] = ()

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, object]:
        return {
            "unitId": self.unit_id,
            "label": self.label,
            "succeeded": self.succeeded,
            "created": self.created,
            "duplicatesSkipped": self.duplicates_skipped,
            "lowConfidenceSkipped": self.low_confidence_skipped,
            "errors": list(self.errors),
            "messages": list(self.messages),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UnitOutcome":
        return cls(
            unit_id=str(data["unitId"]),
            label=str(data.get("label") or data["unitId"]),
            succeeded=bool(data.get("succeeded")),
            created=int(data.get("created", 0)),
            duplicates_skipped=int(data.get("duplicatesSkipped", 0)),
            low_confidence_skipped=int(data.get("lowConfidenceSkipped", 0)),
            errors=tuple(str(item) for item in data.get("errors") or ()),
            messages=tuple(str(item) for item in data.get("messages") or ()),
        )


@dataclass
class Job:
    id: str
    status: str
    phase: JobPhase
    total: int = 0
    processed: int = 0
    created: int = 0
    duplicates_skipped: int = 0
    low_confidence_skipped: int = 0
    error_count: int = 0
    errors: list[JobError] = field(default_factory=list)
    activity_log: list[ActivityEntry] = field(default_factory=list)
    current_activity: str | None = None
    disabled_source_ids: list[str] = field(default_factory=list)
    disable_results: list[dict[str, object]] = field(default_factory=list)
    source_ids: list[str] = field(default_factory=list)
    batch_retry: dict[str, object] | None = None
    batch_window: dict[str, object] | None = None
    fatal_error: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    updated_at: str | None = None
    finished_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_document(self) -> dict[str, object]:
        document: dict[str, object] = {
            "id": self.id,
            "status": self.status,
            "phase": self.phase.kind,
            "total": self.total,
            "processed": self.processed,
            "created": self.created,
            "duplicatesSkipped": self.duplicates_skipped,
            "lowConfidenceSkipped": self.low_confidence_skipped,
            "errorCount": self.error_count,
            "errors": [item.to_dict() for item in self.errors],
            "activityLog": [item.to_dict() for item in self.activity_log],
            "currentActivity": self.current_activity,
            "disabled_source_ids": list(self.disabled_source_ids),
            "disableResults": list(self.disable_results),
            "sourceIds": list(self.source_ids),
            "batchRetry": self.batch_retry,
            "batchWindow": self.batch_window,
            "fatalError": self.fatal_error,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "finishedAt": self.finished_at,
        }
        document.update(self.phase.to_dict())
        return document

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "Job":
        status = data.get("status")
        if status not in JOB_STATUSES:
            raise ValueError(f"unknown job status {status}")
        return cls(
            id=str(data["id"]),
            status=str(status),
            phase=phase_from_document(data),
            total=int(data.get("total") or 0),
            processed=int(data.get("processed") or 0),
            created=int(data.get("created") or 0),
            duplicates_skipped=int(data.get("duplicatesSkipped") or 0),
            low_confidence_skipped=int(data.get("lowConfidenceSkipped") or 0),
            error_count=int(data.get("errorCount") or 0),
            errors=[
                JobError(source_id=str(item.get("sourceId")), reason=str(item.get("reason")))
                for item in data.get("errors") or []
            ],
            activity_log=[
                ActivityEntry(time=str(item.get("time")), message=str(item.get("message")))
                for item in data.get("activityLog") or []
            ],
            current_activity=data.get("currentActivity"),
            disabled_source_ids=[str(item) for item in data.get("disabled_source_ids") or []],
            disable_results=list(data.get("disableResults") or []),
            source_ids=[str(item) for item in data.get("sourceIds") or []],
            batch_retry=data.get("batchRetry"),
            batch_window=data.get("batchWindow"),
            fatal_error=data.get("fatalError"),
            created_at=data.get("createdAt"),
            started_at=data.get("startedAt"),
            updated_at=data.get("updatedAt"),
            finished_at=data.get("finishedAt"),
        )


def summarize_job(job: Job) -> str:
    if job.status == ERROR:
        return (
            f"Scour failed: {job.fatal_error or 'unknown error'} "
            f"(created {job.created} alerts before stopping)"
        )
    base = f"Created {job.created} alerts, {job.duplicates_skipped} duplicates skipped"
    if job.low_confidence_skipped:
        base += f", {job.low_confidence_skipped} low confidence"
    if job.error_count:
        return (
            f"{base}, {job.error_count} errors "
            "(sources with repeated errors will be disabled)"
        )
    return base
