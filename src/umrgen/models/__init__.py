"""In-memory domain entities.

Jobs live for the process lifetime only (plus a short retention period after
they finish); nothing here is persisted.
"""

from umrgen.models.job import (
    GenerationParameters,
    InvalidStateTransition,
    Job,
    JobOwner,
    JobState,
    JobView,
    PostProcessing,
)
from umrgen.models.tier import Tier

__all__ = [
    "GenerationParameters",
    "InvalidStateTransition",
    "Job",
    "JobOwner",
    "JobState",
    "JobView",
    "PostProcessing",
    "Tier",
]
