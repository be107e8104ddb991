"""
Progress aggregation.

Folds every outcome of a batch (immediate items, immediate failures and
live job states) into what the progress panel shows: a percentage, a
status line, and the unified result summary.

percentage = round(100 * terminal / total_files), 0 for an empty batch.
Push sources report their own percentage; the larger of the two wins.
"""

import logging
from dataclasses import replace
from typing import Iterable, Optional

from ..schemas.jobs import ImmediateSuccess, JobState, LocalFailure, utcnow
from ..schemas.progress import (
    BatchCondition,
    BatchPhase,
    ProgressIndicator,
    ProgressReport,
    ReportedProgress,
    TrackerSnapshot,
)
from .classifier import ResultClassifier

logger = logging.getLogger(__name__)

_CONDITION_PHASES = {
    BatchCondition.TIMED_OUT: BatchPhase.TIMED_OUT,
    BatchCondition.SESSION_EXPIRED: BatchPhase.SESSION_EXPIRED,
    BatchCondition.CONNECTION_LOST: BatchPhase.CONNECTION_LOST,
    BatchCondition.SUBMISSION_FAILED: BatchPhase.FAILED,
    BatchCondition.BATCH_FAILED: BatchPhase.FAILED,
    BatchCondition.CANCELLED: BatchPhase.CANCELLED,
}

_STATUS_TEXT = {
    BatchPhase.PREPARING: "Preparing upload...",
    BatchPhase.COMPLETED: "Upload completed",
    BatchPhase.COMPLETED_WITH_ERRORS: "Upload completed with errors",
    BatchPhase.FAILED: "Upload failed",
    BatchPhase.TIMED_OUT: "Still processing",
    BatchPhase.SESSION_EXPIRED: "Upload not found",
    BatchPhase.CONNECTION_LOST: "Connection error",
    BatchPhase.CANCELLED: "Upload cancelled",
}


def completion_percentage(terminal: int, total: int) -> int:
    """Whole-number percentage of terminal outcomes; halves round up."""
    if total <= 0:
        return 0
    return min(100, int(100 * terminal / total + 0.5))


def _indicator(condition: BatchCondition) -> ProgressIndicator:
    if condition.is_fatal:
        return ProgressIndicator.ERROR
    if condition is BatchCondition.COMPLETED:
        return ProgressIndicator.COMPLETED
    return ProgressIndicator.NORMAL


def _processed_details(created: int, failed: int) -> str:
    details = f"Successfully processed {created} file(s)"
    if failed:
        details += f", {failed} failed"
    return details


def aggregate_states(
    states: Iterable[JobState],
    total_files: int,
    condition: BatchCondition = BatchCondition.RUNNING,
    reported: Optional[ReportedProgress] = None,
    message: str = "",
    classifier: Optional[ResultClassifier] = None,
) -> ProgressReport:
    """Build a progress report over the full set of job states of a batch."""
    by_id: dict[str, JobState] = {}
    for state in states:
        by_id[state.job_id] = state
    known = list(by_id.values())

    summary = (classifier or ResultClassifier()).summarize(known)
    terminal = summary.created + summary.failed
    running = sum(1 for state in known if not state.is_terminal)

    percentage = completion_percentage(terminal, total_files)
    if reported is not None:
        percentage = max(percentage, min(max(reported.percentage, 0), 100))
    if condition is BatchCondition.COMPLETED:
        percentage = 100

    if condition is BatchCondition.COMPLETED:
        if summary.failed == 0:
            phase = BatchPhase.COMPLETED
        elif summary.created == 0:
            phase = BatchPhase.FAILED
        else:
            phase = BatchPhase.COMPLETED_WITH_ERRORS
    elif condition.is_terminal:
        phase = _CONDITION_PHASES[condition]
    elif not known and reported is None:
        phase = BatchPhase.PREPARING
    else:
        phase = BatchPhase.PROCESSING

    if phase is BatchPhase.PROCESSING:
        if reported is not None and reported.total > 0:
            status_text = f"Processing {reported.current} of {reported.total} files"
            details = message or reported.message
        else:
            status_text = (
                f"Processing {min(terminal + 1, total_files)} of {total_files} files"
            )
            details = message or f"Processing {running} file(s)..."
    elif phase is BatchPhase.TIMED_OUT:
        status_text = _STATUS_TEXT[phase]
        details = f"{running} file(s) still processing. Check back later."
    elif phase is BatchPhase.SESSION_EXPIRED:
        status_text = _STATUS_TEXT[phase]
        details = message or "The upload session has expired"
    elif phase is BatchPhase.CONNECTION_LOST:
        status_text = _STATUS_TEXT[phase]
        details = message or "Lost the progress stream. Check the documents list for results."
    elif phase in (BatchPhase.COMPLETED, BatchPhase.COMPLETED_WITH_ERRORS) or (
        phase is BatchPhase.FAILED and condition is BatchCondition.COMPLETED
    ):
        status_text = _STATUS_TEXT[phase]
        details = message or _processed_details(summary.created, summary.failed)
    else:
        status_text = _STATUS_TEXT[phase]
        details = message

    return ProgressReport(
        percentage=percentage,
        status_text=status_text,
        phase=phase,
        indicator=_indicator(condition),
        terminal_count=terminal,
        total_files=total_files,
        result_summary=summary,
        condition=condition,
        details=details,
        is_complete=condition.is_terminal or (total_files > 0 and terminal >= total_files),
    )


def aggregate(
    immediate_items: Iterable[ImmediateSuccess],
    immediate_failures: Iterable[LocalFailure],
    live_job_states: Iterable[JobState],
    total_files: int,
    condition: BatchCondition = BatchCondition.RUNNING,
    reported: Optional[ReportedProgress] = None,
) -> ProgressReport:
    """
    Aggregate the three outcome shapes of a batch into one report.

    Immediate outcomes are seeded as terminal states and go through the
    same classification as polled jobs that ended FAILED.
    """
    now = utcnow()
    states: list[JobState] = [
        JobState.from_failure(failure, position, now)
        for position, failure in enumerate(immediate_failures)
    ]
    states.extend(
        JobState.from_success(item, position, now)
        for position, item in enumerate(immediate_items)
    )
    states.extend(live_job_states)
    return aggregate_states(states, total_files, condition, reported)


class ProgressAggregator:
    """
    Per-batch aggregator with memory.

    - Displayed percentage is the running maximum over the batch.
    - is_complete latches; completed_now is True on exactly one report,
      the first complete one.
    """

    def __init__(self, total_files: int, classifier: Optional[ResultClassifier] = None):
        self.total_files = total_files
        self.classifier = classifier or ResultClassifier()
        self._max_percentage = 0
        self._completed = False
        self.last_report: Optional[ProgressReport] = None

    @property
    def is_complete(self) -> bool:
        return self._completed

    def update(self, snapshot: TrackerSnapshot) -> ProgressReport:
        report = aggregate_states(
            snapshot.states,
            self.total_files,
            condition=snapshot.condition,
            reported=snapshot.reported,
            message=snapshot.message,
            classifier=self.classifier,
        )
        return self._latch(report)

    def fail(self, condition: BatchCondition, message: str) -> ProgressReport:
        """Report a batch that ended without any snapshot (submission failure)."""
        report = aggregate_states(
            [], self.total_files, condition=condition, message=message, classifier=self.classifier
        )
        return self._latch(report)

    def _latch(self, report: ProgressReport) -> ProgressReport:
        self._max_percentage = max(self._max_percentage, report.percentage)
        completed_now = report.is_complete and not self._completed
        if completed_now:
            self._completed = True
            logger.debug(
                f"Batch complete: {report.phase.value}, "
                f"{report.terminal_count}/{report.total_files} terminal"
            )
        report = replace(
            report,
            percentage=self._max_percentage,
            is_complete=self._completed,
            completed_now=completed_now,
        )
        self.last_report = report
        return report
