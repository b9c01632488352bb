from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from ..models import EARLY_SIGNALS_SOURCE_ID
from ..utils import chunked, log_event
from .api import ScourApiError, ScourClient
from .poller import ScourPoller

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "error"


@dataclass
class SourceGroup:
    id: str
    name: str
    source_type: str
    source_ids: list[str] = field(default_factory=list)
    status: str = PENDING
    results: dict[str, Any] | None = None
    last_scoured_at: str | None = None

    @property
    def is_early_signals(self) -> bool:
        return self.id == EARLY_SIGNALS_SOURCE_ID


def build_source_groups(
    sources: list[dict[str, Any]],
    group_size: int = 50,
    include_early_signals: bool = True,
) -> list[SourceGroup]:
    groups: list[SourceGroup] = []
    if include_early_signals:
        groups.append(
            SourceGroup(
                id=EARLY_SIGNALS_SOURCE_ID,
                name="Early Signals (web search)",
                source_type="early_signals",
            )
        )
    by_type: dict[str, list[dict[str, Any]]] = {}
    for source in sources:
        if not source.get("enabled"):
            continue
        by_type.setdefault(str(source.get("type") or "rss"), []).append(source)
    for source_type in sorted(by_type):
        for index, batch in enumerate(chunked(by_type[source_type], group_size)):
            scoured = [str(item["last_scoured_at"]) for item in batch if item.get("last_scoured_at")]
            groups.append(
                SourceGroup(
                    id=f"{source_type}-{index}",
                    name=(
                        f"{source_type.capitalize()} - Group {index + 1} "
                        f"({len(batch)} sources)"
                    ),
                    source_type=source_type,
                    source_ids=[str(item["id"]) for item in batch],
                    last_scoured_at=max(scoured) if scoured else None,
                )
            )
    return groups


def apply_disabled(groups: list[SourceGroup], disabled_ids: list[str]) -> list[SourceGroup]:
    """Drop disabled sources from their groups, and groups left empty."""
    disabled = set(disabled_ids)
    if not disabled:
        return groups
    kept = []
    for group in groups:
        if not group.is_early_signals:
            group.source_ids = [item for item in group.source_ids if item not in disabled]
            if not group.source_ids:
                continue
        kept.append(group)
    return kept


def describe_result(result: dict[str, Any]) -> str:
    status = result.get("status")
    if status == "stopped":
        return "Stopped by force-stop"
    if status == "error":
        return f"Failed: {result.get('fatalError') or 'unknown error'}"
    created = result.get("created", 0)
    duplicates = result.get("duplicatesSkipped", 0)
    errors = result.get("errorCount", 0)
    if errors:
        return (
            f"Created {created} alerts, {duplicates} dupes, {errors} errors "
            "(sources with errors will be disabled)"
        )
    return f"Created {created} alerts, {duplicates} dupes"


def run_group(
    client: ScourClient,
    group: SourceGroup,
    *,
    poller_factory: Callable[[str], ScourPoller] | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, Any]:
    logger = logger or logging.getLogger("scourwatch.client")
    group.status = RUNNING
    try:
        if group.is_early_signals:
            queued = client.run(early_signals=True, job_id=_group_job_id(group), wait=False)
            job_id = str(queued["jobId"])
            poller = (
                poller_factory(job_id)
                if poller_factory is not None
                else ScourPoller(client, job_id, logger=logger)
            )
            view = poller.run()
            result = dict(view.job or {"status": "stopped", "jobId": job_id})
            if view.finish_reason in ("job_gone", "force_stopped"):
                result["status"] = "stopped"
        else:
            result = client.run(source_ids=group.source_ids, job_id=_group_job_id(group), wait=True)
    except ScourApiError as exc:
        group.status = FAILED
        group.results = {"status": "error", "fatalError": str(exc)}
        log_event(logger, logging.ERROR, "group_run_failed", group=group.id, error=str(exc))
        raise
    group.results = result
    group.status = COMPLETED if result.get("status") == "done" else FAILED
    log_event(
        logger,
        logging.INFO,
        "group_run_finished",
        group=group.id,
        status=result.get("status"),
        created=result.get("created"),
        disabled=len(result.get("disabled_source_ids") or []),
    )
    return result


def _group_job_id(group: SourceGroup) -> str:
    return f"{group.id}-{uuid.uuid4().hex[:12]}"
