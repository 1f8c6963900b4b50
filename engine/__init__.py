from .jobs import (
    Job,
    JobManager,
    JobStatus,
    JobStore,
    parse_job_request,
)
from .paths import EnginePaths
from .runtime import get_runtime_info

__all__ = [
    "EnginePaths",
    "Job",
    "JobManager",
    "JobStatus",
    "JobStore",
    "get_runtime_info",
    "parse_job_request",
]
