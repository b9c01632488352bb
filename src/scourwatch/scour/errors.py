from __future__ import annotations


class ScourError(RuntimeError):
    pass


class JobAlreadyRunning(ScourError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"scour job {job_id} is already queued or running")
        self.job_id = job_id


class GatewayTimeout(ScourError):
    """The whole-set processing call timed out at an intermediary."""


class FatalScourError(ScourError):
    pass


class BatchAborted(FatalScourError):
    def __init__(self, batch_index: int, batch_count: int, reason: str) -> None:
        super().__init__(f"batch {batch_index}/{batch_count} failed: {reason}")
        self.batch_index = batch_index
        self.batch_count = batch_count


class JobCancelled(ScourError):
    """Raised inside the runner once the job was force-stopped."""
