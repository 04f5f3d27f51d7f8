# =============================================================================
# Poll Scheduler
# =============================================================================
# Drives poll cycles with fixed-DELAY semantics: the next cycle starts
# `interval` seconds after the previous one finished, never on a wall-clock
# grid. A slow cycle therefore pushes the next one back instead of
# overlapping it, and no locking between cycles is needed.
#
# State machine:
#
#            timer fires                 cycle finished
#   IDLE  ---------------->  POLLING  ------------------->  IDLE
#                              |  ^
#        transient connection  |  |  backoff delay elapsed
#        failure               v  |
#                             BACKOFF
#
#   any state --(fatal error | stop())--> STOPPED   (terminal)
#
# Backoff delays follow the retry policy's curve (doubling from the seed up
# to the ceiling) and reset after the first successful cycle.
# =============================================================================

import asyncio
import logging
from datetime import datetime
from enum import Enum, auto
from typing import Any, Awaitable, Callable

from mail_ingest.ingest.retry import FailureKind, RetryPolicy, RetryState, SleepFunc, classify

logger = logging.getLogger(__name__)


class SchedulerState(Enum):
    """Current state of the poll scheduler."""
    IDLE = auto()           # Waiting for the next cycle
    POLLING = auto()        # A cycle is running
    BACKOFF = auto()        # Waiting after a connection-level failure
    STOPPED = auto()        # Terminal: no further cycles


# Type for state observers: (old_state, new_state)
StateCallback = Callable[[SchedulerState, SchedulerState], None]


class PollScheduler:
    """
    Runs one cycle at a time, forever, until stopped.

    Usage:
        >>> scheduler = PollScheduler(pipeline.run_cycle, interval=50, backoff=policy)
        >>> task = asyncio.create_task(scheduler.run())
        >>> # ... later, e.g. from a signal handler ...
        >>> scheduler.stop()
        >>> await task

    Attributes:
        interval: Seconds between the end of one cycle and the start of the next.
        backoff: Policy whose delay curve is used in the BACKOFF state.
        max_backoff_rounds: Consecutive backoff rounds tolerated before giving
                            up (0 means never give up).
        cycles_run: Number of cycles started so far.
        last_result: Whatever the last successful cycle returned.
        last_error: The error that stopped the scheduler, if any.
    """

    def __init__(
        self,
        cycle: Callable[[], Awaitable[Any]],
        interval: float,
        backoff: RetryPolicy,
        *,
        max_backoff_rounds: int = 0,
        on_state_change: StateCallback | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        if interval < 0:
            raise ValueError("interval must not be negative")
        self.interval = interval
        self.backoff = backoff
        self.max_backoff_rounds = max_backoff_rounds
        self.on_state_change = on_state_change
        self.cycles_run = 0
        self.last_result: Any = None
        self.last_error: BaseException | None = None
        self.backoff_state = RetryState()
        self._cycle = cycle
        self._sleep = sleep
        self._state = SchedulerState.IDLE
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_stopped(self) -> bool:
        return self._state is SchedulerState.STOPPED

    @property
    def next_attempt_at(self) -> datetime | None:
        """When the next cycle may start after a failure (None when healthy)."""
        return self.backoff_state.next_eligible_at

    def _transition(self, new_state: SchedulerState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        if old_state is SchedulerState.STOPPED:
            # Terminal; late transitions from an in-flight cycle are ignored
            return
        self._state = new_state
        logger.debug(f"Scheduler {old_state.name} -> {new_state.name}")
        if self.on_state_change:
            self.on_state_change(old_state, new_state)

    def stop(self) -> None:
        """
        Request shutdown.

        Safe to call from signal handlers, from inside a cycle, or twice.
        A sleeping scheduler wakes up immediately; a running cycle finishes.
        """
        if not self.is_stopped:
            logger.info("Stopping poll scheduler")
        self._transition(SchedulerState.STOPPED)
        self._stop_event.set()

    async def _wait(self, delay: float) -> None:
        """Sleep for delay seconds, returning early when stop() is called."""
        if self._sleep is not None:
            await self._sleep(delay)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> Any:
        """Run exactly one cycle without scheduling another."""
        self.cycles_run += 1
        self.last_result = await self._cycle()
        return self.last_result

    async def run(self) -> None:
        """
        Run cycles until stop() or a fatal error.

        Returns normally after stop(). Re-raises the fatal error (or the last
        transient error once max_backoff_rounds is exceeded) after moving to
        STOPPED.
        """
        if self._running:
            raise RuntimeError("PollScheduler is already running")
        self._running = True
        logger.info(f"Poll scheduler started (every {self.interval}s after completion)")

        try:
            while not self.is_stopped:
                self._transition(SchedulerState.POLLING)
                try:
                    await self.run_once()
                except Exception as e:
                    if classify(e) is FailureKind.FATAL:
                        self._fail(e)
                        raise
                    if self.is_stopped:
                        break
                    await self._back_off(e)
                    continue

                self.backoff_state.reset()
                if self.is_stopped:
                    break
                self._transition(SchedulerState.IDLE)
                await self._wait(self.interval)
        finally:
            self._running = False

        logger.info(f"Poll scheduler stopped after {self.cycles_run} cycles")

    async def _back_off(self, error: Exception) -> None:
        rounds = self.backoff_state.attempts + 1

        if self.max_backoff_rounds and rounds > self.max_backoff_rounds:
            logger.error(f"Giving up after {self.max_backoff_rounds} backoff rounds: {error}")
            self._fail(error)
            raise error

        delay = self.backoff.delay_for(rounds)
        self.backoff_state.record_failure(delay)
        self._transition(SchedulerState.BACKOFF)
        logger.warning(
            f"Poll cycle failed ({error}); backing off {delay:.1f}s (round {rounds}, "
            f"next attempt at {self.next_attempt_at:%H:%M:%S})"
        )
        await self._wait(delay)

    def _fail(self, error: BaseException) -> None:
        self.last_error = error
        logger.error(f"Ingestion stopped: {error}")
        self._transition(SchedulerState.STOPPED)
        self._stop_event.set()
