"""
Push-based status source.

Follows the server-sent progress stream of one batch and publishes the
same TrackerSnapshot values as the polling loop, so the aggregator and
the session do not care which protocol a flow uses.

Event mapping:
    waiting     -> RUNNING, preparing (no progress yet)
    processing  -> RUNNING with the reported percentage and counters
    completed   -> COMPLETED; the summary becomes terminal job states
    error       -> BATCH_FAILED
    not_found   -> SESSION_EXPIRED
    stream end or connection failure before a terminal event -> CONNECTION_LOST
"""

import logging
from typing import Any, AsyncIterator, Iterable, Mapping, Optional

from ..dashboard_client import DashboardError, SessionNotFoundError
from ..schemas.jobs import JobState, JobStatus, utcnow
from ..schemas.progress import (
    BatchCondition,
    ProgressEvent,
    ReportedProgress,
    TrackerSnapshot,
)
from .tracker import CancellationToken

logger = logging.getLogger(__name__)


def summary_states(summary: Mapping[str, Any]) -> list[JobState]:
    """
    Expand a completed-event summary into terminal job states.

    created only carries a count, so successes get no filename. Each
    failed_files entry keeps its duplicate details for the classifier.
    """
    now = utcnow()
    states: list[JobState] = []

    try:
        created = max(int(summary.get("created") or 0), 0)
    except (TypeError, ValueError):
        created = 0
    for position in range(created):
        states.append(
            JobState(
                job_id=f"stream-success:{position}",
                filename="",
                status=JobStatus.SUCCESS,
                first_seen_at=now,
                synthesized=True,
            )
        )

    failed_files = summary.get("failed_files") or []
    for position, raw in enumerate(failed_files):
        raw = raw if isinstance(raw, Mapping) else {}
        states.append(
            JobState(
                job_id=f"stream-failure:{position}",
                filename=raw.get("file") or raw.get("filename") or "",
                status=JobStatus.FAILED,
                first_seen_at=now,
                error_message=raw.get("reason"),
                failure_detail={
                    k: raw[k] for k in ("duplicate_of", "extracted", "type") if raw.get(k) is not None
                },
                synthesized=True,
            )
        )

    reported_failed = summary.get("failed")
    if isinstance(reported_failed, int) and reported_failed != len(failed_files):
        logger.warning(
            f"Summary reports {reported_failed} failures but lists {len(failed_files)}"
        )
    return states


_END_OF_STREAM = object()


async def _next_event(iterator: AsyncIterator[Mapping[str, Any]]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END_OF_STREAM


async def follow_progress_stream(
    events: AsyncIterator[Mapping[str, Any]],
    token: CancellationToken,
    initial_states: Iterable[JobState] = (),
    batch_id: Optional[str] = None,
) -> AsyncIterator[TrackerSnapshot]:
    """
    Translate a batch progress stream into snapshots.

    initial_states holds outcomes already known at submission (local
    rejections); they are carried on every snapshot.
    """
    known = tuple(initial_states)
    label = batch_id or "?"
    tick = 0

    try:
        try:
            iterator = events.__aiter__()
            while True:
                # A blocked read is abandoned as soon as the token is cancelled
                cancelled, raw = await token.race(_next_event(iterator))
                if cancelled:
                    return
                if raw is _END_OF_STREAM:
                    break
                tick += 1
                event = ProgressEvent.from_dict(raw)

                if event.status == "waiting":
                    yield TrackerSnapshot(tick=tick, states=known, message=event.message)
                elif event.status == "processing":
                    yield TrackerSnapshot(
                        tick=tick,
                        states=known,
                        reported=ReportedProgress(
                            percentage=event.percentage,
                            current=event.current,
                            total=event.total,
                            message=event.message,
                        ),
                        message=event.message,
                    )
                elif event.status == "completed":
                    logger.info(f"Batch {label} completed")
                    yield TrackerSnapshot(
                        tick=tick,
                        states=known + tuple(summary_states(event.summary)),
                        condition=BatchCondition.COMPLETED,
                        reported=ReportedProgress(
                            percentage=100,
                            current=event.current,
                            total=event.total,
                            message=event.message,
                        ),
                        message=event.message,
                    )
                    return
                elif event.status == "error":
                    logger.error(f"Batch {label} failed: {event.message}")
                    yield TrackerSnapshot(
                        tick=tick,
                        states=known,
                        condition=BatchCondition.BATCH_FAILED,
                        message=event.message,
                    )
                    return
                elif event.status == "not_found":
                    logger.error(f"Batch {label} not found on the server")
                    yield TrackerSnapshot(
                        tick=tick,
                        states=known,
                        condition=BatchCondition.SESSION_EXPIRED,
                        message=event.message,
                    )
                    return
                else:
                    logger.warning(f"Ignoring progress event with status {event.status!r}")
        except SessionNotFoundError as e:
            if token.cancelled:
                return
            logger.error(f"Progress stream for batch {label} not found: {e}")
            yield TrackerSnapshot(
                tick=tick + 1,
                states=known,
                condition=BatchCondition.SESSION_EXPIRED,
                message=e.message,
            )
            return
        except DashboardError as e:
            if token.cancelled:
                return
            logger.warning(f"Progress stream for batch {label} lost: {e}")
            yield TrackerSnapshot(
                tick=tick + 1,
                states=known,
                condition=BatchCondition.CONNECTION_LOST,
                message=str(e),
            )
            return

        if not token.cancelled:
            logger.warning(f"Progress stream for batch {label} ended without a result")
            yield TrackerSnapshot(
                tick=tick + 1,
                states=known,
                condition=BatchCondition.CONNECTION_LOST,
            )
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()


class StreamTracker:
    """
    Cancellable follower of one batch progress stream.

    Same surface as JobTracker: snapshots(), cancel(), cancelled.
    """

    def __init__(
        self,
        events: AsyncIterator[Mapping[str, Any]],
        initial_states: Iterable[JobState] = (),
        batch_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ):
        self.events = events
        self.states = tuple(initial_states)
        self.batch_id = batch_id
        self.token = token or CancellationToken()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def snapshots(self) -> AsyncIterator[TrackerSnapshot]:
        return follow_progress_stream(self.events, self.token, self.states, self.batch_id)

    def cancel(self) -> None:
        self.token.cancel()
