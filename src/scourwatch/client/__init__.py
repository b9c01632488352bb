from .api import ScourApiError, ScourClient
from .groups import SourceGroup, apply_disabled, build_source_groups, describe_result, run_group
from .poller import CancelToken, PollTimeout, ScourPoller, ScourView

__all__ = [
    "CancelToken",
    "PollTimeout",
    "ScourApiError",
    "ScourClient",
    "ScourPoller",
    "ScourView",
    "SourceGroup",
    "apply_disabled",
    "build_source_groups",
    "describe_result",
    "run_group",
]
