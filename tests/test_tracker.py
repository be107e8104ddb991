"""
Tests for the job polling loop.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from docdesk_uploads.dashboard_client import DashboardConnectionError, SessionNotFoundError
from docdesk_uploads.schemas import (
    BatchCondition,
    JobDescriptor,
    JobState,
    JobStatus,
    JobStatusReport,
    LocalFailure,
)
from docdesk_uploads.services.tracker import (
    CancellationToken,
    JobTracker,
    PollOptions,
    poll_until_terminal,
    track,
)

NOW = datetime(2024, 11, 20, 10, 0, 0, tzinfo=timezone.utc)
FAST = PollOptions(interval_seconds=0.001)


def pending(*job_ids: str) -> list[JobState]:
    return [JobState.pending(JobDescriptor(job_id, f"{job_id}.pdf"), NOW) for job_id in job_ids]


async def collect(source) -> list:
    return [snapshot async for snapshot in source]


class TestPollUntilTerminal:
    """Test loop termination and per-tick semantics."""

    @pytest.mark.asyncio
    async def test_runs_until_all_terminal(self, scripted_poller):
        """Test one snapshot per tick until every job finished."""
        poller = scripted_poller({"A": ["SUCCESS"], "B": ["RUNNING", "SUCCESS"]})

        snapshots = await collect(
            poll_until_terminal(pending("A", "B"), poller, FAST, CancellationToken())
        )

        assert [s.tick for s in snapshots] == [1, 2]
        assert [s.terminal_count for s in snapshots] == [1, 2]
        assert snapshots[0].condition is BatchCondition.RUNNING
        assert snapshots[-1].condition is BatchCondition.COMPLETED

    @pytest.mark.asyncio
    async def test_terminal_jobs_are_not_polled_again(self, scripted_poller):
        """Test only still-pending jobs are polled on later ticks."""
        poller = scripted_poller({"A": ["SUCCESS"], "B": ["RUNNING", "RUNNING", "FAILED"]})

        await collect(poll_until_terminal(pending("A", "B"), poller, FAST, CancellationToken()))

        assert poller.calls == {"A": 1, "B": 3}

    @pytest.mark.asyncio
    async def test_already_terminal_batch(self, scripted_poller):
        """Test a batch with nothing pending completes without polling."""
        poller = scripted_poller({})
        states = [JobState.from_failure(LocalFailure("a.pdf", "File is empty", index=0), 0, NOW)]

        snapshots = await collect(poll_until_terminal(states, poller, FAST, CancellationToken()))

        assert len(snapshots) == 1
        assert snapshots[0].tick == 0
        assert snapshots[0].condition is BatchCondition.COMPLETED
        assert poller.total_calls == 0

    @pytest.mark.asyncio
    async def test_transport_error_is_not_a_failure(self, scripted_poller):
        """Test a failed poll keeps the last known status and is retried."""
        poller = scripted_poller(
            {"A": ["RUNNING", DashboardConnectionError("reset by peer"), "SUCCESS"]}
        )

        snapshots = await collect(
            poll_until_terminal(pending("A"), poller, FAST, CancellationToken())
        )

        assert len(snapshots) == 3
        assert snapshots[1].unknown_job_ids == frozenset({"A"})
        assert snapshots[1].states[0].status is JobStatus.RUNNING
        assert snapshots[2].states[0].status is JobStatus.SUCCESS
        assert snapshots[2].unknown_job_ids == frozenset()

    @pytest.mark.asyncio
    async def test_not_found_report_stops_batch(self, scripted_poller):
        """Test NOT_FOUND ends polling for every job."""
        poller = scripted_poller({"A": ["RUNNING", "NOT_FOUND"], "B": ["RUNNING"]})

        snapshots = await collect(
            poll_until_terminal(pending("A", "B"), poller, FAST, CancellationToken())
        )

        assert snapshots[-1].condition is BatchCondition.SESSION_EXPIRED
        assert poller.calls == {"A": 2, "B": 2}

    @pytest.mark.asyncio
    async def test_session_not_found_error_stops_batch(self, scripted_poller):
        """Test a 404 from the status endpoint ends the batch."""
        poller = scripted_poller({"A": [SessionNotFoundError()]})

        snapshots = await collect(
            poll_until_terminal(pending("A"), poller, FAST, CancellationToken())
        )

        assert len(snapshots) == 1
        assert snapshots[0].condition is BatchCondition.SESSION_EXPIRED
        assert snapshots[0].states[0].status is JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_max_attempts_times_out(self, scripted_poller):
        """Test the tick cap ends the loop with jobs still pending."""
        poller = scripted_poller({"A": ["RUNNING"]})
        options = PollOptions(interval_seconds=0.001, max_attempts=3)

        snapshots = await collect(poll_until_terminal(pending("A"), poller, options, CancellationToken()))

        assert len(snapshots) == 3
        assert snapshots[-1].condition is BatchCondition.TIMED_OUT
        assert snapshots[-1].pending_job_ids == ["A"]

    @pytest.mark.asyncio
    async def test_completion_on_last_attempt_wins(self, scripted_poller):
        """Test finishing on the final tick is completion, not timeout."""
        poller = scripted_poller({"A": ["RUNNING", "SUCCESS"]})
        options = PollOptions(interval_seconds=0.001, max_attempts=2)

        snapshots = await collect(poll_until_terminal(pending("A"), poller, options, CancellationToken()))

        assert snapshots[-1].condition is BatchCondition.COMPLETED

    @pytest.mark.asyncio
    async def test_programming_errors_propagate(self, scripted_poller):
        """Test only dashboard errors are absorbed as transport failures."""
        poller = scripted_poller({"A": [KeyError("status")]})

        with pytest.raises(KeyError):
            await collect(poll_until_terminal(pending("A"), poller, FAST, CancellationToken()))

    @pytest.mark.asyncio
    async def test_regression_is_ignored(self, scripted_poller):
        """Test a job never moves backwards between ticks."""
        poller = scripted_poller({"A": ["RUNNING", "PENDING", "SUCCESS"]})

        snapshots = await collect(poll_until_terminal(pending("A"), poller, FAST, CancellationToken()))

        assert [s.states[0].status for s in snapshots] == [
            JobStatus.RUNNING,
            JobStatus.RUNNING,
            JobStatus.SUCCESS,
        ]


class TestCancellation:
    """Test the loop stops when its owner cancels."""

    @pytest.mark.asyncio
    async def test_cancel_between_ticks(self, scripted_poller):
        """Test nothing is polled or published after cancel()."""
        poller = scripted_poller({"A": ["RUNNING"]})
        tracker = JobTracker(pending("A"), poller, PollOptions(interval_seconds=10))

        snapshots = []
        async for snapshot in tracker.snapshots():
            snapshots.append(snapshot)
            tracker.cancel()

        assert len(snapshots) == 1
        assert poller.total_calls == 1
        assert tracker.cancelled

    @pytest.mark.asyncio
    async def test_results_after_cancel_are_discarded(self):
        """Test a poll that resolves after cancel() never reaches a snapshot."""
        started = asyncio.Event()
        release = asyncio.Event()
        token = CancellationToken()

        async def slow_poll(job_id):
            started.set()
            await release.wait()
            return JobStatusReport(job_id, JobStatus.SUCCESS)

        consumer = asyncio.create_task(collect(poll_until_terminal(pending("A"), slow_poll, FAST, token)))
        await started.wait()
        token.cancel()
        release.set()

        assert await consumer == []

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self):
        """Test cancelling twice is harmless."""
        token = CancellationToken()
        token.cancel()
        token.cancel()
        assert token.cancelled
        assert await token.sleep(10) is True

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_cancel(self):
        """Test a sleeping loop wakes as soon as it is cancelled."""
        token = CancellationToken()
        sleeper = asyncio.create_task(token.sleep(10))
        await asyncio.sleep(0)
        token.cancel()

        assert await asyncio.wait_for(sleeper, timeout=1) is True

    @pytest.mark.asyncio
    async def test_race_returns_result(self):
        token = CancellationToken()
        assert await token.race(asyncio.sleep(0, result=5)) == (False, 5)

    @pytest.mark.asyncio
    async def test_race_releases_blocked_work(self):
        """Test cancel() abandons work that would otherwise block forever."""
        token = CancellationToken()
        started = asyncio.Event()
        released = asyncio.Event()

        async def blocked():
            started.set()
            try:
                await asyncio.Event().wait()
            finally:
                released.set()

        racer = asyncio.create_task(token.race(blocked()))
        await started.wait()
        token.cancel()

        assert await asyncio.wait_for(racer, timeout=1) == (True, None)
        assert released.is_set()


class TestJobTracker:
    """Test the tracker wrapper."""

    @pytest.mark.asyncio
    async def test_track_and_run(self, scripted_poller):
        """Test track() seeds pending states and run() returns the last snapshot."""
        poller = scripted_poller({"J1": ["SUCCESS"], "J2": ["FAILED"]})
        tracker = track(
            [JobDescriptor("J1", "a.pdf"), JobDescriptor("J2", "b.pdf")],
            poller,
            FAST,
        )
        seen = []

        last = await tracker.run(seen.append)

        assert all(s.status is JobStatus.PENDING for s in tracker.states)
        assert last.condition is BatchCondition.COMPLETED
        assert len(seen) == 1
        assert {s.status for s in last.states} == {JobStatus.SUCCESS, JobStatus.FAILED}
