"""
Batch upload session.

A BatchUploadSession owns everything one batch needs while it runs: a
cancellation token, a timing clock and a progress aggregator. Nothing is
shared with other sessions. State writes go through one guarded method,
so once a session is cancelled (or superseded by a newer one) late
network responses can no longer reach the UI.

UploadController keeps at most one session alive per upload dialog.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, AsyncGenerator, Callable, Mapping, Optional, Sequence

from ..dashboard_client import UploadFile
from ..schemas.jobs import JobState, JobStatus
from ..schemas.progress import (
    BatchCondition,
    BatchPhase,
    ProgressIndicator,
    ProgressReport,
    TrackerSnapshot,
)
from ..schemas.results import ResultSummary
from .aggregator import ProgressAggregator
from .flows import UploadFlow
from .submitter import SubmissionError
from .timing import DEFAULT_RESOLUTION, TimingClock, format_seconds
from .tracker import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionState:
    """Everything the upload dialog renders."""

    is_uploading: bool = False
    show_progress: bool = False
    percentage: int = 0
    status_text: str = ""
    details: str = ""
    indicator: ProgressIndicator = ProgressIndicator.NORMAL
    phase: BatchPhase = BatchPhase.PREPARING
    elapsed: str = format_seconds(0)
    current_item: str = format_seconds(0)
    show_file_timing: bool = False
    result_summary: Optional[ResultSummary] = None
    job_states: tuple[JobState, ...] = ()
    condition: BatchCondition = BatchCondition.RUNNING
    show_result_actions: bool = False


class SessionObserver:
    """Receives session updates. Override what you need."""

    def on_state(self, state: SessionState) -> None:
        pass

    def on_job_finished(self, job_state: JobState) -> None:
        pass


class BatchUploadSession:
    """
    One batch, from submission to a terminal condition.

    run() may be called once. cancel() is idempotent; after it returns no
    observer method is invoked again.
    """

    def __init__(
        self,
        flow: UploadFlow,
        observer: Optional[SessionObserver] = None,
        *,
        generation: int = 0,
        current_generation: Optional[Callable[[], int]] = None,
        resolution_seconds: float = DEFAULT_RESOLUTION,
        time_source: Callable[[], float] = time.monotonic,
    ):
        self.flow = flow
        self.observer = observer or SessionObserver()
        self.generation = generation
        self._current_generation = current_generation
        self.token = CancellationToken()
        self.clock = TimingClock(
            on_tick=self._on_tick, resolution=resolution_seconds, time_source=time_source
        )
        self.aggregator: Optional[ProgressAggregator] = None
        self.state = SessionState()
        self._started = False
        self._running_jobs: set[str] = set()
        self._finished_jobs: set[str] = set()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def is_active(self) -> bool:
        """False once cancelled or superseded by a newer session."""
        if self.token.cancelled:
            return False
        if self._current_generation is not None:
            return self._current_generation() == self.generation
        return True

    def cancel(self) -> None:
        """Stop polling and the clock. Idempotent."""
        if self.token.cancelled:
            return
        self.token.cancel()
        self.clock.stop()
        logger.info(f"Upload session {self.generation} ({self.flow.name}) cancelled")

    async def run(
        self,
        files: Sequence[UploadFile],
        per_file_metadata: Optional[Sequence[Mapping[str, Any]]] = None,
        batch_options: Optional[Mapping[str, Any]] = None,
    ) -> SessionState:
        """Submit the batch and track it until a terminal condition."""
        if self._started:
            raise RuntimeError("A session runs exactly one batch")
        self._started = True

        logger.info(f"Uploading {len(files)} files via {self.flow.name}")
        self._publish(
            is_uploading=True,
            show_progress=True,
            status_text="Preparing upload...",
            details=f"Uploading {len(files)} file(s)...",
        )

        async with self.clock:
            try:
                await self._run(files, per_file_metadata, batch_options)
            except SubmissionError as e:
                self._submission_failed(e, len(files))
            except Exception as e:
                logger.exception(f"Upload session {self.generation} crashed")
                self.clock.stop()
                self._publish(
                    is_uploading=False,
                    status_text="Upload failed",
                    details=str(e),
                    indicator=ProgressIndicator.ERROR,
                    phase=BatchPhase.FAILED,
                    condition=BatchCondition.BATCH_FAILED,
                    elapsed=self.clock.elapsed(),
                )
                raise

        return self.state

    async def _run(self, files, per_file_metadata, batch_options) -> None:
        submission = await self.flow.submit(files, per_file_metadata, batch_options)
        if not self.is_active:
            return

        self.aggregator = ProgressAggregator(submission.total_files)
        if submission.has_pending_jobs:
            self._apply(TrackerSnapshot(tick=0, states=submission.initial_states()))

        await self._follow(self.flow.track(submission, self.token))

    async def refresh(self) -> SessionState:
        """
        Check once more on a batch that timed out.

        No-op unless the last condition was TIMED_OUT and the session is
        still active.
        """
        if not self.is_active or self.aggregator is None:
            return self.state
        if self.state.condition is not BatchCondition.TIMED_OUT:
            return self.state

        source = self.flow.refresh(self.state.job_states, self.token)
        if source is None:
            return self.state

        logger.info(f"Refreshing timed-out batch of session {self.generation}")
        await self._follow(source)
        return self.state

    async def _follow(self, source: AsyncGenerator[TrackerSnapshot, None]) -> None:
        """Apply snapshots until the source ends or the session goes inactive."""
        try:
            async for snapshot in source:
                if not self.is_active:
                    break
                self._apply(snapshot)
        finally:
            # Releases the status source (open stream, pending polls)
            await source.aclose()

    def result_table(self) -> Optional[dict[str, Any]]:
        """Result summary rows, duplicates linked to the existing record."""
        if self.state.result_summary is None:
            return None
        return self.state.result_summary.to_dict(self.flow.external_url)

    def _apply(self, snapshot: TrackerSnapshot) -> None:
        report = self.aggregator.update(snapshot)
        changes: dict[str, Any] = self._report_changes(report)
        changes["job_states"] = snapshot.states
        if self._note_activity(snapshot):
            self.clock.mark_new_item()
            changes["show_file_timing"] = True

        if report.completed_now:
            self.clock.stop()
            changes.update(
                is_uploading=False,
                show_result_actions=True,
                elapsed=self.clock.elapsed(),
            )
            logger.info(
                f"Batch finished ({report.phase.value}): "
                f"{report.result_summary.created} created, {report.result_summary.failed} failed"
            )
        self._publish(**changes)

    def _note_activity(self, snapshot: TrackerSnapshot) -> bool:
        """Notify per finished job; True when a new item started processing."""
        new_item = False
        for state in snapshot.states:
            if state.synthesized:
                continue
            if state.status is JobStatus.RUNNING and state.job_id not in self._running_jobs:
                self._running_jobs.add(state.job_id)
                new_item = True
            if state.is_terminal and state.job_id not in self._finished_jobs:
                self._finished_jobs.add(state.job_id)
                if self.is_active:
                    self.observer.on_job_finished(state)

        if snapshot.reported is not None and "Processing" in snapshot.message:
            new_item = True

        return new_item

    def _report_changes(self, report: ProgressReport) -> dict[str, Any]:
        return {
            "percentage": report.percentage,
            "status_text": report.status_text,
            "details": report.details,
            "indicator": report.indicator,
            "phase": report.phase,
            "condition": report.condition,
            "result_summary": report.result_summary if report.is_complete else None,
        }

    def _submission_failed(self, error: SubmissionError, total_files: int) -> None:
        if not self.is_active:
            return
        self.clock.stop()
        self.aggregator = ProgressAggregator(total_files)
        report = self.aggregator.fail(BatchCondition.SUBMISSION_FAILED, error.message)
        changes = self._report_changes(report)
        changes.update(is_uploading=False, elapsed=self.clock.elapsed())
        self._publish(**changes)

    def _on_tick(self, elapsed: str, current_item: str) -> None:
        self._publish(elapsed=elapsed, current_item=current_item)

    def _publish(self, **changes: Any) -> None:
        if not self.is_active:
            return
        self.state = replace(self.state, **changes)
        self.observer.on_state(self.state)


class UploadController:
    """
    Owns the upload dialog's single active session.

    start() tears down the previous session (loop and clock) before the
    next one exists; close() models the dialog closing.
    """

    def __init__(
        self,
        flow: UploadFlow,
        observer: Optional[SessionObserver] = None,
        resolution_seconds: float = DEFAULT_RESOLUTION,
        time_source: Callable[[], float] = time.monotonic,
    ):
        self.flow = flow
        self.observer = observer or SessionObserver()
        self.resolution_seconds = resolution_seconds
        self.time_source = time_source
        self.generation = 0
        self.session: Optional[BatchUploadSession] = None
        self._task: Optional[asyncio.Task] = None

    def start(
        self,
        files: Sequence[UploadFile],
        per_file_metadata: Optional[Sequence[Mapping[str, Any]]] = None,
        batch_options: Optional[Mapping[str, Any]] = None,
    ) -> asyncio.Task:
        """Start a new batch; returns the task running its session."""
        self._teardown()
        self.generation += 1
        self.session = BatchUploadSession(
            self.flow,
            self.observer,
            generation=self.generation,
            current_generation=lambda: self.generation,
            resolution_seconds=self.resolution_seconds,
            time_source=self.time_source,
        )
        self._task = asyncio.get_running_loop().create_task(
            self.session.run(files, per_file_metadata, batch_options)
        )
        return self._task

    async def refresh(self) -> Optional[SessionState]:
        if self.session is None:
            return None
        return await self.session.refresh()

    async def close(self) -> None:
        """Cancel the active session and wait for its task to unwind."""
        task = self._task
        self._teardown()
        self.generation += 1
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def _teardown(self) -> None:
        if self.session is not None:
            self.session.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
