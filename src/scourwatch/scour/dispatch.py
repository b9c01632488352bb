from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Iterable, Iterator, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from ..models import CandidateAlert, Source, UnitOutcome
from ..services.alert_sink import AlertSink
from ..utils import json_dumps, log_event
from .errors import FatalScourError, GatewayTimeout


class Extractor(Protocol):
    def extract(self, source: Source) -> list[CandidateAlert]: ...


class SearchClient(Protocol):
    def search(self, query: str) -> list[CandidateAlert]: ...


class Dispatcher(Protocol):
    def run(self, sources: list[Source]) -> Iterable[UnitOutcome]: ...


class UnitProcessor:
    """Fetch, parse and classify one source or one search query."""

    def __init__(
        self,
        *,
        extractor: Extractor,
        sink: AlertSink,
        min_confidence: float = 0.5,
        search_client: SearchClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.extractor = extractor
        self.sink = sink
        self.min_confidence = min_confidence
        self.search_client = search_client
        self.logger = logger or logging.getLogger("scourwatch.scour")

    def process_source(self, source: Source) -> UnitOutcome:
        try:
            candidates = self.extractor.extract(source)
        except FatalScourError:
            raise
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.WARNING,
                "source_scour_failed",
                source_id=source.id,
                error=str(exc),
            )
            return UnitOutcome(
                unit_id=source.id,
                label=source.label,
                succeeded=False,
                errors=(str(exc),),
                messages=(f"Error scouring {source.label}: {exc}",),
            )
        return self._classify(source.id, source.label, candidates)

    def process_query(
        self, unit_id: str, query: str, country: str | None = None
    ) -> UnitOutcome:
        if self.search_client is None:
            raise FatalScourError("early signals search client not configured")
        try:
            candidates = self.search_client.search(query)
        except FatalScourError:
            raise
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.WARNING,
                "early_signal_query_failed",
                unit_id=unit_id,
                query=query,
                error=str(exc),
            )
            return UnitOutcome(
                unit_id=unit_id,
                label=query,
                succeeded=False,
                errors=(str(exc),),
                messages=(f"Query failed '{query}': {exc}",),
            )
        if country:
            candidates = [
                candidate if candidate.country else replace(candidate, country=country)
                for candidate in candidates
            ]
        return self._classify(unit_id, query, candidates)

    def _classify(
        self, unit_id: str, label: str, candidates: list[CandidateAlert]
    ) -> UnitOutcome:
        created = 0
        duplicates = 0
        low_confidence = 0
        errors: list[str] = []
        for candidate in candidates:
            if candidate.confidence < self.min_confidence:
                low_confidence += 1
                continue
            try:
                if self.sink.is_duplicate(candidate):
                    duplicates += 1
                    continue
                self.sink.save(candidate)
            except FatalScourError:
                raise
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.WARNING,
                    "alert_save_failed",
                    unit_id=unit_id,
                    title=candidate.title,
                    error=str(exc),
                )
                errors.append(f"save failed for '{candidate.title}': {exc}")
                continue
            created += 1
        message = (
            f"{label}: {len(candidates)} found, {created} created, "
            f"{duplicates} duplicates, {low_confidence} low confidence"
        )
        if errors:
            message += f", {len(errors)} errors"
        return UnitOutcome(
            unit_id=unit_id,
            label=label,
            succeeded=True,
            created=created,
            duplicates_skipped=duplicates,
            low_confidence_skipped=low_confidence,
            errors=tuple(errors),
            messages=(message,),
        )


class LocalDispatcher:
    def __init__(self, processor: UnitProcessor) -> None:
        self.processor = processor

    def run(self, sources: list[Source]) -> Iterator[UnitOutcome]:
        for source in sources:
            yield self.processor.process_source(source)


class HttpDispatcher:
    """Sends a source set to a remote scour worker; HTTP 504 means gateway timeout."""

    def __init__(
        self,
        worker_url: str,
        *,
        timeout_s: int = 300,
        admin_token: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not worker_url:
            raise ValueError("worker_url is required for http dispatch")
        self.worker_url = worker_url
        self.timeout_s = timeout_s
        self.admin_token = admin_token
        self.logger = logger or logging.getLogger("scourwatch.scour")

    def run(self, sources: list[Source]) -> list[UnitOutcome]:
        body = json_dumps({"sourceIds": [source.id for source in sources]}).encode("utf-8")
        headers = {"Content-Type": "application/json", "User-Agent": "ScourWatch/1.0"}
        if self.admin_token:
            headers["X-Admin-Token"] = self.admin_token
        request = Request(self.worker_url, data=body, headers=headers, method="POST")
        try:
            with urlopen(request, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            if exc.code == 504:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "worker_gateway_timeout",
                    sources=len(sources),
                )
                raise GatewayTimeout(
                    f"worker gateway timeout for {len(sources)} sources"
                ) from exc
            raise FatalScourError(f"worker HTTP error {exc.code}") from exc
        except URLError as exc:
            raise FatalScourError(f"worker connection error: {exc}") from exc
        except TimeoutError as exc:
            raise FatalScourError(f"worker timeout after {self.timeout_s}s") from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise FatalScourError("worker returned invalid JSON") from exc
        units = payload.get("units")
        if not isinstance(units, list):
            raise FatalScourError("worker response missing units")
        return [UnitOutcome.from_dict(item) for item in units]
