from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from ..models import Source, UnitOutcome
from ..utils import chunked, log_event
from .dispatch import Dispatcher
from .errors import BatchAborted, FatalScourError, GatewayTimeout, JobCancelled


@dataclass(frozen=True)
class RetryReport:
    batched: bool
    batch_size: int
    batches_total: int
    batches_completed: int


class BatchRetryController:
    """Runs the whole source set once; on a gateway timeout, degrades to fixed-size batches.

    Outcomes from every batch go through the same ``apply`` callback, so the
    job document accumulates them exactly as a single pass would.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        batch_size: int = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.logger = logger or logging.getLogger("scourwatch.scour")

    def run(
        self,
        sources: list[Source],
        apply: Callable[[UnitOutcome], None],
        on_batch: Callable[[int, int, list[Source]], None] | None = None,
    ) -> RetryReport:
        applied = 0
        try:
            for outcome in self.dispatcher.run(sources):
                apply(outcome)
                applied += 1
        except GatewayTimeout as exc:
            if applied:
                # units already counted; re-running would double them
                raise FatalScourError(
                    f"gateway timeout after {applied} of {len(sources)} sources: {exc}"
                ) from exc
            log_event(
                self.logger,
                logging.WARNING,
                "gateway_timeout_batch_fallback",
                sources=len(sources),
                batch_size=self.batch_size,
            )
            return self._run_batches(sources, apply, on_batch)
        return RetryReport(
            batched=False,
            batch_size=len(sources),
            batches_total=1,
            batches_completed=1,
        )

    def _run_batches(
        self,
        sources: list[Source],
        apply: Callable[[UnitOutcome], None],
        on_batch: Callable[[int, int, list[Source]], None] | None,
    ) -> RetryReport:
        batches = chunked(sources, self.batch_size)
        total = len(batches)
        for index, batch in enumerate(batches, start=1):
            if on_batch is not None:
                on_batch(index, total, batch)
            try:
                for outcome in self.dispatcher.run(batch):
                    apply(outcome)
            except JobCancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.ERROR,
                    "batch_failed",
                    batch=index,
                    batches=total,
                    error=str(exc),
                )
                raise BatchAborted(index, total, str(exc)) from exc
            log_event(
                self.logger,
                logging.INFO,
                "batch_completed",
                batch=index,
                batches=total,
                sources=len(batch),
            )
        return RetryReport(
            batched=True,
            batch_size=self.batch_size,
            batches_total=total,
            batches_completed=total,
        )
