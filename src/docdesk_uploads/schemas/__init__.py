"""
Batch upload data model.

Provides:
- jobs: JobStatus, JobState and the normalized BatchSubmissionResult
- results: FailureRecord variants and ResultSummary
- progress: snapshots published by status sources and the aggregated report
"""

from .jobs import (
    BatchSubmissionResult,
    ImmediateSuccess,
    JobDescriptor,
    JobOutcome,
    JobState,
    JobStatus,
    JobStatusReport,
    LocalFailure,
    parse_job_status,
)
from .progress import (
    BatchCondition,
    BatchPhase,
    ProgressEvent,
    ProgressIndicator,
    ProgressReport,
    ReportedProgress,
    TrackerSnapshot,
)
from .results import (
    DuplicateFailure,
    DuplicateReference,
    ErrorFailure,
    FailureRecord,
    ResultSummary,
)

__all__ = [
    "BatchSubmissionResult",
    "ImmediateSuccess",
    "JobDescriptor",
    "JobOutcome",
    "JobState",
    "JobStatus",
    "JobStatusReport",
    "LocalFailure",
    "parse_job_status",
    "BatchCondition",
    "BatchPhase",
    "ProgressEvent",
    "ProgressIndicator",
    "ProgressReport",
    "ReportedProgress",
    "TrackerSnapshot",
    "DuplicateFailure",
    "DuplicateReference",
    "ErrorFailure",
    "FailureRecord",
    "ResultSummary",
]
