"""Background workers for async processing tasks."""

from umrgen.workers.job_queue import JobQueueManager
from umrgen.workers.session_sweeper import run_session_sweeper

__all__ = [
    "JobQueueManager",
    "run_session_sweeper",
]
