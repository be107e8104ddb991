"""
Elapsed-time clock for a batch session.

One background task ticks at a fixed resolution and reports the batch
elapsed time and the time spent on the current item. The clock is an async
context manager so the task is released on every exit path, including
cancellation of the owning session.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_RESOLUTION = 0.1

TickCallback = Callable[[str, str], None]


def format_seconds(seconds: float) -> str:
    """Format a duration the way the progress panel shows it: '12.3s'."""
    return f"{max(seconds, 0.0):.1f}s"


class TimingClock:
    """
    Scoped batch timer.

    Usage:
        async with TimingClock(on_tick=render) as clock:
            ...
            clock.mark_new_item()
            ...
            clock.stop()

    stop() takes effect immediately: a completion flag is checked at the
    start of every tick, so a tick that was already scheduled when stop()
    ran does nothing even if the task has not been torn down yet.
    """

    def __init__(
        self,
        on_tick: Optional[TickCallback] = None,
        resolution: float = DEFAULT_RESOLUTION,
        time_source: Callable[[], float] = time.monotonic,
    ):
        if resolution <= 0:
            raise ValueError("resolution must be positive")
        self.on_tick = on_tick
        self.resolution = resolution
        self._now = time_source
        self._started_at: Optional[float] = None
        self._item_started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None
        self._completed = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._started_at is not None and not self._completed

    def start(self) -> None:
        """Start ticking. Calling start() on a running clock is a no-op."""
        if self._started_at is not None:
            return
        now = self._now()
        self._started_at = now
        self._item_started_at = now
        self._task = asyncio.get_running_loop().create_task(self._run())

    def elapsed_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._stopped_at if self._stopped_at is not None else self._now()
        return end - self._started_at

    def current_item_seconds(self) -> float:
        if self._item_started_at is None:
            return 0.0
        end = self._stopped_at if self._stopped_at is not None else self._now()
        return end - self._item_started_at

    def elapsed(self) -> str:
        """Batch elapsed time, frozen once stopped."""
        return format_seconds(self.elapsed_seconds())

    def current_item(self) -> str:
        """Time since the last mark_new_item(), for display only."""
        return format_seconds(self.current_item_seconds())

    def mark_new_item(self) -> None:
        """Reset the current-item zero point (a new unit of work began)."""
        if self._completed:
            return
        self._item_started_at = self._now()

    def stop(self) -> None:
        """Stop the clock. Idempotent and safe before start()."""
        if self._completed:
            return
        self._completed = True
        if self._started_at is not None:
            self._stopped_at = self._now()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _tick(self) -> None:
        if self._completed:
            return
        if self.on_tick is not None:
            self.on_tick(self.elapsed(), self.current_item())

    async def _run(self) -> None:
        while not self._completed:
            await asyncio.sleep(self.resolution)
            self._tick()

    async def __aenter__(self) -> "TimingClock":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
        task, self._task = self._task, None
        if task is not None:
            # The ticking task ends cancelled; only collect it
            await asyncio.gather(task, return_exceptions=True)
