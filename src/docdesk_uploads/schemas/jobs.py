"""
Batch job data model (SSOT).

Every file in a batch ends up as exactly one JobState, whichever way the
backend answered for it:
- items: resolved synchronously in the submission response
- failures: rejected locally before submission, or rejected by the server
- jobs: deferred work, tracked by an opaque job_id until terminal

JobState values are immutable. A poll response produces a new JobState via
advance(); status transitions only ever move forward.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Union

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """
    Lifecycle of one job.

    PENDING -> RUNNING -> {SUCCESS, FAILED}. NOT_FOUND is out-of-band: the
    backend no longer knows the batch, which ends the whole batch rather
    than a single job. It never appears on a JobState.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        """Position in the lifecycle; transitions must not decrease it."""
        return _STATUS_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> Optional["JobStatus"]:
        """Parse a backend status string. Returns None for unknown values."""
        if isinstance(value, JobStatus):
            return value
        if not isinstance(value, str):
            return None
        normalized = value.strip().upper()
        normalized = _STATUS_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            logger.warning(f"Unknown job status from backend: {value!r}")
            return None


_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.SUCCESS: 2,
    JobStatus.FAILED: 2,
    JobStatus.NOT_FOUND: 3,
}

# Spellings used by the push stream and older endpoints
_STATUS_ALIASES = {
    "WAITING": "PENDING",
    "QUEUED": "PENDING",
    "PROCESSING": "RUNNING",
    "COMPLETED": "SUCCESS",
    "DONE": "SUCCESS",
    "ERROR": "FAILED",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobDescriptor:
    """Handle for deferred work returned by the submission call."""

    job_id: str
    filename: str


@dataclass(frozen=True)
class ImmediateSuccess:
    """Outcome resolved synchronously in the submission response."""

    filename: str
    result_ref: Optional[Union[int, str]] = None


@dataclass(frozen=True)
class LocalFailure:
    """
    File that never became a job.

    origin is "local" for files rejected by client-side validation (they
    never reach the network) and "remote" for server-side rejections listed
    under failures in the submission response. detail keeps the raw server
    payload so duplicate references survive until classification.
    """

    filename: str
    reason: str
    index: Optional[int] = None
    origin: str = "local"
    detail: Mapping[str, Any] = field(default_factory=dict)


# One submitted file, whichever shape the backend chose for it
JobOutcome = Union[ImmediateSuccess, LocalFailure, JobDescriptor]


@dataclass(frozen=True)
class JobStatusReport:
    """One parsed poll response for a single job."""

    job_id: str
    status: Optional[JobStatus]
    filename: Optional[str] = None
    result_ref: Optional[Union[int, str]] = None
    error_message: Optional[str] = None
    detail: Mapping[str, Any] = field(default_factory=dict)


def parse_job_status(job_id: str, payload: Mapping[str, Any]) -> JobStatusReport:
    """
    Build a JobStatusReport from a job status payload.

    The result reference is whichever of document_id, invoice_id or
    statement_id the endpoint populates. Duplicate details (duplicate_of,
    extracted) are carried through untouched for the classifier.
    """
    result_ref = None
    for key in ("document_id", "invoice_id", "statement_id"):
        if payload.get(key) is not None:
            result_ref = payload[key]
            break

    detail = {
        key: payload[key]
        for key in ("duplicate_of", "extracted", "type")
        if payload.get(key) is not None
    }

    return JobStatusReport(
        job_id=job_id,
        status=JobStatus.parse(payload.get("status")),
        filename=payload.get("original_filename") or payload.get("filename"),
        result_ref=result_ref,
        error_message=payload.get("error_message"),
        detail=detail,
    )


@dataclass(frozen=True)
class JobState:
    """
    Known state of one file in the batch.

    Synthesized entries (immediate successes and failures) are created
    terminal and are never polled.
    """

    job_id: str
    filename: str
    status: JobStatus
    first_seen_at: datetime
    last_polled_at: Optional[datetime] = None
    result_ref: Optional[Union[int, str]] = None
    error_message: Optional[str] = None
    failure_detail: Mapping[str, Any] = field(default_factory=dict)
    synthesized: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def pending(cls, job: JobDescriptor, now: Optional[datetime] = None) -> "JobState":
        return cls(
            job_id=job.job_id,
            filename=job.filename,
            status=JobStatus.PENDING,
            first_seen_at=now or utcnow(),
        )

    @classmethod
    def from_success(
        cls, item: ImmediateSuccess, position: int, now: Optional[datetime] = None
    ) -> "JobState":
        return cls(
            job_id=f"sync-success:{position}",
            filename=item.filename,
            status=JobStatus.SUCCESS,
            first_seen_at=now or utcnow(),
            result_ref=item.result_ref,
            synthesized=True,
        )

    @classmethod
    def from_failure(
        cls, failure: LocalFailure, position: int, now: Optional[datetime] = None
    ) -> "JobState":
        # Position in the failure list, not the file index: server entries
        # without an index would otherwise collide with ones that have one
        return cls(
            job_id=f"{failure.origin}-failure:{position}",
            filename=failure.filename,
            status=JobStatus.FAILED,
            first_seen_at=now or utcnow(),
            error_message=failure.reason,
            failure_detail=dict(failure.detail),
            synthesized=True,
        )

    def advance(self, report: JobStatusReport, now: Optional[datetime] = None) -> "JobState":
        """
        Apply a poll response.

        Reports that would move the job backwards (or out of a terminal
        status) are ignored; only last_polled_at is refreshed.
        """
        now = now or utcnow()
        status = report.status
        if status is None or status is JobStatus.NOT_FOUND:
            return replace(self, last_polled_at=now)

        if self.is_terminal and status is not self.status:
            logger.warning(
                f"Ignoring {status.value} for job {self.job_id}: "
                f"already terminal ({self.status.value})"
            )
            return replace(self, last_polled_at=now)

        if status.rank < self.status.rank:
            logger.warning(
                f"Ignoring regression {self.status.value} -> {status.value} "
                f"for job {self.job_id}"
            )
            return replace(self, last_polled_at=now)

        return replace(
            self,
            status=status,
            last_polled_at=now,
            filename=report.filename or self.filename,
            result_ref=report.result_ref if report.result_ref is not None else self.result_ref,
            error_message=report.error_message if status is JobStatus.FAILED else None,
            failure_detail=dict(report.detail) if status is JobStatus.FAILED else {},
        )

    def as_failure_payload(self) -> dict[str, Any]:
        """Raw failure record in the shape the classifier consumes."""
        payload: dict[str, Any] = {"file": self.filename, "reason": self.error_message}
        payload.update(self.failure_detail)
        return payload


@dataclass(frozen=True)
class BatchSubmissionResult:
    """
    Normalized answer to one batch submission.

    Produced once per batch and never mutated. A batch can be fully
    synchronous, fully deferred, or mixed; batch_id is set by flows whose
    progress arrives as a push stream for the whole batch.
    """

    jobs: tuple[JobDescriptor, ...] = ()
    items: tuple[ImmediateSuccess, ...] = ()
    failures: tuple[LocalFailure, ...] = ()
    total_files: int = 0
    batch_id: Optional[str] = None

    def __post_init__(self) -> None:
        job_ids = [job.job_id for job in self.jobs]
        if len(job_ids) != len(set(job_ids)):
            raise ValueError("job_id must be unique within a batch")
        known = len(self.jobs) + len(self.items) + len(self.failures)
        if self.total_files < known:
            raise ValueError(
                f"total_files ({self.total_files}) is smaller than the "
                f"{known} outcomes in the submission"
            )

    @property
    def has_pending_jobs(self) -> bool:
        return bool(self.jobs)

    def outcomes(self) -> list[JobOutcome]:
        """All outcomes, failures first, then immediate successes, then jobs."""
        return [*self.failures, *self.items, *self.jobs]

    def initial_states(self, now: Optional[datetime] = None) -> tuple[JobState, ...]:
        """One JobState per outcome; immediate ones are already terminal."""
        now = now or utcnow()
        states: list[JobState] = []
        for position, failure in enumerate(self.failures):
            states.append(JobState.from_failure(failure, position, now))
        for position, item in enumerate(self.items):
            states.append(JobState.from_success(item, position, now))
        for job in self.jobs:
            states.append(JobState.pending(job, now))
        return tuple(states)
