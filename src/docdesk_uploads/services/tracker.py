"""
Job tracking (pull-based status source).

One polling loop per batch: every tick polls all still-pending jobs
concurrently, joins the requests, then publishes one TrackerSnapshot.

Loop termination (any one ends it):
- every job is terminal
- a poll reports NOT_FOUND (the batch is gone; nothing else is polled)
- max_attempts ticks have run with jobs still pending (timed out)
- the owner cancelled

A failed poll request is not a failed job: the job keeps its last known
status, is listed in the snapshot's unknown_job_ids and is polled again
on the next tick.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine, Iterable, Optional

from ..dashboard_client import DashboardError, SessionNotFoundError
from ..schemas.jobs import JobDescriptor, JobState, JobStatus, JobStatusReport, utcnow
from ..schemas.progress import BatchCondition, TrackerSnapshot

logger = logging.getLogger(__name__)

PollOne = Callable[[str], Awaitable[JobStatusReport]]


class CancellationToken:
    """
    Cancellation flag owned by one batch session.

    Every state write and every loop continuation checks it first, so work
    that resolves after cancel() is discarded.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Cancel. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep for seconds, waking early on cancellation.

        Returns:
            True if the token was cancelled
        """
        if self._cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self._cancelled

    async def race(self, coro: Coroutine[Any, Any, Any]) -> tuple[bool, Any]:
        """
        Await coro unless the token is cancelled first.

        On cancellation the pending work is cancelled and awaited, so a
        blocked network read is released instead of outliving the batch.

        Returns:
            (True, None) if cancelled, otherwise (False, result of coro)
        """
        if self._cancelled:
            coro.close()
            return True, None

        work = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()

        if self._cancelled:
            await asyncio.gather(work, return_exceptions=True)
            return True, None
        return False, work.result()


@dataclass(frozen=True)
class PollOptions:
    """Per-flow polling parameters."""

    interval_seconds: float = 2.0
    max_attempts: Optional[int] = None


async def _poll_all(poll_one: PollOne, job_ids: list[str]) -> list[Any]:
    return await asyncio.gather(*(poll_one(job_id) for job_id in job_ids), return_exceptions=True)


async def poll_until_terminal(
    states: Iterable[JobState],
    poll_one: PollOne,
    options: PollOptions,
    token: CancellationToken,
) -> AsyncIterator[TrackerSnapshot]:
    """
    Poll every non-terminal job until the batch reaches a terminal condition.

    Yields one snapshot per tick. Nothing is yielded after cancellation.
    """
    current = {state.job_id: state for state in states}
    order = list(current)
    attempts = 0

    pending = [job_id for job_id in order if not current[job_id].is_terminal]
    if not pending:
        if not token.cancelled:
            yield TrackerSnapshot(
                tick=0,
                states=tuple(current[job_id] for job_id in order),
                condition=BatchCondition.COMPLETED,
            )
        return

    while not token.cancelled:
        pending = [job_id for job_id in order if not current[job_id].is_terminal]
        attempts += 1
        logger.debug(f"Polling tick {attempts}: {len(pending)} pending jobs")

        cancelled, results = await token.race(_poll_all(poll_one, pending))
        if cancelled:
            logger.debug(f"Discarding tick {attempts} results: batch cancelled")
            return

        now = utcnow()
        unknown: set[str] = set()
        session_lost = False
        for job_id, result in zip(pending, results):
            if isinstance(result, SessionNotFoundError):
                session_lost = True
            elif isinstance(result, DashboardError):
                logger.warning(f"Status of job {job_id} unknown this tick: {result}")
                unknown.add(job_id)
            elif isinstance(result, BaseException):
                raise result
            elif result.status is JobStatus.NOT_FOUND:
                session_lost = True
            elif result.status is None:
                unknown.add(job_id)
            else:
                before = current[job_id]
                current[job_id] = before.advance(result, now)
                if not before.is_terminal and current[job_id].is_terminal:
                    logger.info(
                        f"Job {job_id} ({current[job_id].filename}) "
                        f"finished: {current[job_id].status.value}"
                    )

        snapshot_states = tuple(current[job_id] for job_id in order)
        if session_lost:
            condition = BatchCondition.SESSION_EXPIRED
            logger.error(f"Upload session not found after tick {attempts}; polling stopped")
        elif all(state.is_terminal for state in snapshot_states):
            condition = BatchCondition.COMPLETED
        elif options.max_attempts is not None and attempts >= options.max_attempts:
            condition = BatchCondition.TIMED_OUT
            logger.info(
                f"Polling gave up after {attempts} ticks with "
                f"{sum(1 for s in snapshot_states if not s.is_terminal)} jobs pending"
            )
        else:
            condition = BatchCondition.RUNNING

        yield TrackerSnapshot(
            tick=attempts,
            states=snapshot_states,
            condition=condition,
            unknown_job_ids=frozenset(unknown),
        )

        if condition.is_terminal:
            return
        if await token.sleep(options.interval_seconds):
            return


class JobTracker:
    """
    Cancellable polling loop over one batch's jobs.

    cancel() is idempotent and safe after the loop has finished.
    """

    def __init__(
        self,
        states: Iterable[JobState],
        poll_one: PollOne,
        options: Optional[PollOptions] = None,
        token: Optional[CancellationToken] = None,
    ):
        self.states = tuple(states)
        self.poll_one = poll_one
        self.options = options or PollOptions()
        self.token = token or CancellationToken()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def snapshots(self) -> AsyncIterator[TrackerSnapshot]:
        return poll_until_terminal(self.states, self.poll_one, self.options, self.token)

    def cancel(self) -> None:
        self.token.cancel()

    async def run(
        self, on_snapshot: Optional[Callable[[TrackerSnapshot], None]] = None
    ) -> Optional[TrackerSnapshot]:
        """Drive the loop to the end; returns the last snapshot published."""
        last = None
        async for snapshot in self.snapshots():
            last = snapshot
            if on_snapshot is not None:
                on_snapshot(snapshot)
        return last


def track(
    jobs: Iterable[JobDescriptor],
    poll_one: PollOne,
    options: Optional[PollOptions] = None,
) -> JobTracker:
    """Start tracking freshly submitted jobs (all PENDING)."""
    now = utcnow()
    return JobTracker([JobState.pending(job, now) for job in jobs], poll_one, options)
