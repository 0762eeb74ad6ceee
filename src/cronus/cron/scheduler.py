"""Trigger loop for scheduled jobs.

The scheduler computes the earliest upcoming trigger across all jobs,
sleeps until then, and hands every due job to the dispatcher. Registry
changes and shutdown requests wake it early so it never waits out a
stale deadline.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, tzinfo
from enum import Enum

from cronus.cron.executor import JobDispatcher
from cronus.cron.expression import next_trigger
from cronus.cron.registry import JobRegistry
from cronus.cron.types import CronJob, utcnow

logger = logging.getLogger(__name__)

# Upper bound on one sleep, so wall-clock jumps are noticed
DEFAULT_MAX_SLEEP = 60.0


class SchedulerState(str, Enum):
    """State of the scheduler loop.

    Attributes:
        IDLE_WAITING: Sleeping until the next deadline or a wake-up.
        COMPUTING: Computing next trigger times.
        DISPATCHING: Handing due jobs to the dispatcher.
        SHUTTING_DOWN: Stop requested; no new dispatches.
        STOPPED: Not running.
    """

    IDLE_WAITING = "idle_waiting"
    COMPUTING = "computing"
    DISPATCHING = "dispatching"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class Scheduler:
    """Single clock driver for all jobs.

    A job's next trigger is computed from its last fire time, or from its
    creation time if it never fired. A trigger missed while the daemon was
    down or busy fires once when detected; it is not replayed.

    Example:
        scheduler = Scheduler(registry, dispatcher)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        registry: JobRegistry,
        dispatcher: JobDispatcher,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_sleep: float = DEFAULT_MAX_SLEEP,
    ) -> None:
        """Initialize the scheduler.

        Args:
            registry: Source of jobs and fire bookkeeping.
            dispatcher: Executor for due jobs.
            tz: Zone cron expressions are evaluated in (local when None).
            clock: Returns the current aware time.
            max_sleep: Longest single wait in seconds.
        """
        self._registry = registry
        self._dispatcher = dispatcher
        self._tz = tz
        self._clock = clock
        self._max_sleep = max_sleep

        self._state = SchedulerState.STOPPED
        self._wakeup = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self._stopping = False
        self._never_triggers: set[str] = set()

        registry.add_listener(self._on_registry_change)

    @property
    def state(self) -> SchedulerState:
        """Get the current loop state."""
        return self._state

    @property
    def is_running(self) -> bool:
        """Check if the loop task is alive."""
        return self._task is not None and not self._task.done()

    def _on_registry_change(self, event: str, job_id: str) -> None:
        logger.debug(f"Registry {event} {job_id}; recomputing schedule")
        if event == "remove":
            self._never_triggers.discard(job_id)
        self.wake()

    def wake(self) -> None:
        """Interrupt the current wait. Safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    def next_trigger_for(self, job: CronJob) -> datetime | None:
        """Compute a job's next trigger instant.

        Returns:
            The trigger instant, or None if the expression never matches.
        """
        moment = next_trigger(job.expression, job.reference_time, self._tz)
        if moment is None and job.id not in self._never_triggers:
            self._never_triggers.add(job.id)
            logger.warning(f"Job {job.id} ({job.cron!r}) has no trigger in the search horizon")
        return moment

    def compute_deadline(self) -> datetime | None:
        """Get the earliest upcoming trigger across all jobs."""
        deadlines = [
            moment
            for moment in (self.next_trigger_for(job) for job in self._registry.list_jobs())
            if moment is not None
        ]
        return min(deadlines, default=None)

    def tick(self, now: datetime | None = None) -> list[str]:
        """Dispatch every job that is due at ``now``.

        Each due job has its last fire time set to ``now`` whether it was
        dispatched or skipped by the overlap policy. Must be called from
        within the event loop.

        Args:
            now: Current instant (defaults to the scheduler clock).

        Returns:
            IDs of the jobs that were dispatched.
        """
        now = now or self._clock()
        dispatched = []

        for job in self._registry.list_jobs():
            moment = self.next_trigger_for(job)
            if moment is None or moment > now:
                continue
            if not self._registry.record_fire(job.id, now):
                # Removed since the snapshot was taken
                continue
            if self._dispatcher.dispatch(job):
                dispatched.append(job.id)

        return dispatched

    async def _wait(self, deadline: datetime | None) -> bool:
        """Sleep until the deadline or a wake-up.

        Returns:
            True if woken early.
        """
        if deadline is None:
            timeout = self._max_sleep
        else:
            remaining = (deadline - self._clock()).total_seconds()
            timeout = min(max(remaining, 0.0), self._max_sleep)

        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_loop(self) -> None:
        """Main loop: compute, wait, dispatch."""
        logger.info("Scheduler started")

        while not self._stopping:
            self._state = SchedulerState.COMPUTING
            # Clear before reading the registry so no change is missed
            self._wakeup.clear()
            try:
                deadline = self.compute_deadline()
            except Exception:
                logger.exception("Error computing schedule")
                deadline = None

            self._state = SchedulerState.IDLE_WAITING
            if await self._wait(deadline) or self._stopping:
                continue

            if deadline is None or self._clock() < deadline:
                continue

            self._state = SchedulerState.DISPATCHING
            try:
                fired = self.tick()
                if fired:
                    logger.debug(f"Dispatched {len(fired)} jobs")
                # One snapshot for every fire recorded by this tick
                await asyncio.to_thread(self._registry.flush)
            except Exception:
                logger.exception("Error dispatching due jobs")

        self._state = SchedulerState.STOPPED
        logger.info("Scheduler stopped")

    async def start(self) -> None:
        """Start the scheduler loop in the background."""
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        self._loop = asyncio.get_running_loop()
        self._stopping = False
        self._task = asyncio.create_task(self._run_loop(), name="cronus_scheduler")

    async def stop(self) -> None:
        """Stop issuing dispatches and wait for the loop to exit."""
        if self._task is None:
            return

        self._stopping = True
        self._state = SchedulerState.SHUTTING_DOWN
        self._wakeup.set()
        try:
            await self._task
        finally:
            self._task = None
            self._state = SchedulerState.STOPPED
