from .errors import (
    BatchAborted,
    FatalScourError,
    GatewayTimeout,
    JobAlreadyRunning,
    ScourError,
)
from .manager import JobHandle, ScourManager, build_manager, build_processor
from .runner import JobRunner, JobWriter

__all__ = [
    "BatchAborted",
    "FatalScourError",
    "GatewayTimeout",
    "JobAlreadyRunning",
    "JobHandle",
    "JobRunner",
    "JobWriter",
    "ScourError",
    "ScourManager",
    "build_manager",
    "build_processor",
]
