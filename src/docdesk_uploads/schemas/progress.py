"""
Progress model shared by status sources and the aggregator.

Status sources (the per-job poller and the per-batch push stream) both
publish TrackerSnapshot values. The aggregator turns a snapshot into a
ProgressReport for the UI.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from .jobs import JobState
from .results import ResultSummary


class BatchCondition(str, Enum):
    """
    Batch-level condition reported alongside every snapshot.

    RUNNING is the only non-terminal value. SUBMISSION_FAILED, BATCH_FAILED
    and SESSION_EXPIRED are fatal and turn the progress indicator red;
    TIMED_OUT and CONNECTION_LOST are informational.
    """

    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    SESSION_EXPIRED = "session_expired"
    CONNECTION_LOST = "connection_lost"
    SUBMISSION_FAILED = "submission_failed"
    BATCH_FAILED = "batch_failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not BatchCondition.RUNNING

    @property
    def is_fatal(self) -> bool:
        return self in (
            BatchCondition.SUBMISSION_FAILED,
            BatchCondition.BATCH_FAILED,
            BatchCondition.SESSION_EXPIRED,
        )


class BatchPhase(str, Enum):
    """What the status line is describing."""

    PREPARING = "preparing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SESSION_EXPIRED = "session_expired"
    CONNECTION_LOST = "connection_lost"
    CANCELLED = "cancelled"


class ProgressIndicator(str, Enum):
    """Colour of the progress bar."""

    NORMAL = "normal"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class ReportedProgress:
    """Batch-level progress as reported by a push stream."""

    percentage: int = 0
    current: int = 0
    total: int = 0
    message: str = ""


@dataclass(frozen=True)
class ProgressEvent:
    """
    One server-sent progress event for a whole batch.

    status is one of waiting, processing, completed, error or not_found.
    """

    status: str
    percentage: int = 0
    current: int = 0
    total: int = 0
    message: str = ""
    summary: Mapping[str, Any] = field(default_factory=dict)

    TERMINAL_STATUSES = ("completed", "error", "not_found")

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProgressEvent":
        return cls(
            status=str(data.get("status") or "waiting").lower(),
            percentage=_as_int(data.get("percentage")),
            current=_as_int(data.get("current")),
            total=_as_int(data.get("total")),
            message=data.get("message") or "",
            summary=data.get("summary") or {},
        )


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class TrackerSnapshot:
    """
    Complete view of a batch after one polling tick or stream event.

    Snapshots are only published after every poll of a tick has been
    joined, so consumers never see a half-updated job set.
    unknown_job_ids lists jobs whose poll request failed this tick; their
    states hold the last known status.
    """

    tick: int
    states: tuple[JobState, ...]
    condition: BatchCondition = BatchCondition.RUNNING
    unknown_job_ids: frozenset[str] = frozenset()
    reported: Optional[ReportedProgress] = None
    message: str = ""

    @property
    def terminal_count(self) -> int:
        return sum(1 for state in self.states if state.is_terminal)

    @property
    def pending_job_ids(self) -> list[str]:
        return [state.job_id for state in self.states if not state.is_terminal]


@dataclass(frozen=True)
class ProgressReport:
    """Everything the progress panel renders for one update."""

    percentage: int
    status_text: str
    phase: BatchPhase
    indicator: ProgressIndicator
    terminal_count: int
    total_files: int
    result_summary: ResultSummary
    condition: BatchCondition = BatchCondition.RUNNING
    details: str = ""
    is_complete: bool = False
    completed_now: bool = False
