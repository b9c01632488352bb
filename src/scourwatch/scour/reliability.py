from __future__ import annotations

import logging
from dataclasses import dataclass

from ..services.sources_service import SourceRegistry
from ..utils import log_event


@dataclass(frozen=True)
class DisableResult:
    source_id: str
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {"sourceId": self.source_id, "ok": self.ok, "error": self.error}


class SourceReliabilityTracker:
    """Per-job error/success tally; a source with errors and no success gets disabled."""

    def __init__(self) -> None:
        self._errors: dict[str, int] = {}
        self._successes: dict[str, int] = {}

    def record_error(self, source_id: str, count: int = 1) -> None:
        self._errors[source_id] = self._errors.get(source_id, 0) + count

    def record_success(self, source_id: str) -> None:
        self._successes[source_id] = self._successes.get(source_id, 0) + 1

    def errors_for(self, source_id: str) -> int:
        return self._errors.get(source_id, 0)

    def successes_for(self, source_id: str) -> int:
        return self._successes.get(source_id, 0)

    def disabled_source_ids(self) -> list[str]:
        return [
            source_id
            for source_id, errors in self._errors.items()
            if errors > 0 and self._successes.get(source_id, 0) == 0
        ]


def disable_sources(
    registry: SourceRegistry,
    source_ids: list[str],
    logger: logging.Logger | None = None,
) -> list[DisableResult]:
    logger = logger or logging.getLogger("scourwatch.reliability")
    results = []
    for source_id in source_ids:
        try:
            registry.patch_source(source_id, {"enabled": False})
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.WARNING,
                "source_disable_failed",
                source_id=source_id,
                error=str(exc),
            )
            results.append(DisableResult(source_id=source_id, ok=False, error=str(exc)))
            continue
        log_event(logger, logging.INFO, "source_disabled", source_id=source_id)
        results.append(DisableResult(source_id=source_id, ok=True))
    return results
