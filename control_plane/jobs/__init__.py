"""Job system package."""

from control_plane.jobs.types import JobFamily, JobStatus, ResultStatus, family_for_type
from control_plane.jobs.models import Job, JobOutcome
from control_plane.jobs.validator import JobValidationError, validate

__all__ = [
    "JobFamily",
    "JobStatus",
    "ResultStatus",
    "family_for_type",
    "Job",
    "JobOutcome",
    "JobValidationError",
    "validate",
]
