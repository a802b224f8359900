"""Abstract interfaces for the hosting service and the log sink."""

from pollci.interfaces.ci import CIClient, CIClientError, NetworkError
from pollci.interfaces.log_sink import LogSink, LogSinkError
from pollci.interfaces.models import Comment, JobStatus, PullRequest, StatusState

__all__ = [
    "CIClient",
    "CIClientError",
    "Comment",
    "JobStatus",
    "LogSink",
    "LogSinkError",
    "NetworkError",
    "PullRequest",
    "StatusState",
]
