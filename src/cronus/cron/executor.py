"""Job execution for the scheduler.

This module runs job commands as subprocesses, concurrently with each
other and with the scheduler loop. Each execution ends in an
ExecutionOutcome that is sent as a message to a result queue; a separate
result handler applies outcomes to the registry. Nothing an executed
command does is ever raised back to the scheduler.
"""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from datetime import datetime

from cronus.cron.registry import JobRegistry
from cronus.cron.types import OUTPUT_TAIL_CHARS, CronJob, ExecutionOutcome, OutcomeStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass
class OutcomeMessage:
    """An outcome on its way back to the registry.

    Attributes:
        job_id: ID of the job that ran.
        outcome: How the execution ended.
    """

    job_id: str
    outcome: ExecutionOutcome


class JobDispatcher:
    """Fire-and-forget executor for triggered jobs.

    Overlap policy: at most one execution per job. A job that is still
    running when it becomes due again is skipped for that trigger.

    Example:
        dispatcher = JobDispatcher(registry, timeout=300)
        results = asyncio.create_task(dispatcher.process_results())

        dispatcher.dispatch(job)  # returns immediately

        await dispatcher.drain(grace=10)
        await dispatcher.close_results()
        await results
    """

    def __init__(
        self,
        registry: JobRegistry,
        timeout: float | None = None,
        kill_wait: float = 5.0,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            registry: Registry that tracks running flags and outcomes.
            timeout: Seconds before a running command is killed (None = no limit).
            kill_wait: Seconds to wait for killed commands to be reaped.
        """
        self._registry = registry
        self._timeout = timeout
        self._kill_wait = kill_wait
        self._results: asyncio.Queue[OutcomeMessage | None] = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._terminated: set[str] = set()
        self._accepting = True

    @property
    def in_flight(self) -> int:
        """Get the number of executions still running."""
        return len(self._tasks)

    @property
    def accepting(self) -> bool:
        """Check whether new dispatches are accepted."""
        return self._accepting

    def dispatch(self, job: CronJob) -> bool:
        """Start a job's command without waiting for it.

        Args:
            job: The job to run.

        Returns:
            True if an execution was started, False if it was skipped.
        """
        if not self._accepting:
            logger.debug(f"Not dispatching {job.id}: dispatcher is draining")
            return False

        if not self._registry.try_mark_running(job.id):
            logger.info(f"Skipping job {job.id}: previous execution still running")
            return False

        task = asyncio.create_task(self._run(job), name=f"job_{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, job: CronJob) -> None:
        outcome = await self.execute(job)
        await self._results.put(OutcomeMessage(job_id=job.id, outcome=outcome))

    def _finish(
        self,
        job: CronJob,
        status: OutcomeStatus,
        started_at: datetime,
        started: float,
        exit_code: int | None = None,
        error: str | None = None,
        output: bytes = b"",
    ) -> ExecutionOutcome:
        duration_ms = (time.monotonic() - started) * 1000
        text = output.decode("utf-8", errors="replace")
        outcome = ExecutionOutcome(
            status=status,
            exit_code=exit_code,
            error=error,
            started_at=started_at,
            finished_at=utcnow(),
            duration_ms=duration_ms,
            output=text[-OUTPUT_TAIL_CHARS:],
        )

        if outcome.success:
            logger.info(f"Job completed: {job.id} in {duration_ms:.0f}ms")
        else:
            logger.warning(f"Job {status.value}: {job.id} - {error}")
        return outcome

    async def execute(self, job: CronJob) -> ExecutionOutcome:
        """Run a job's command to completion.

        Args:
            job: The job to run.

        Returns:
            The execution outcome. Launch failures, nonzero exits and
            timeouts are reported here, never raised.
        """
        started_at = utcnow()
        started = time.monotonic()

        logger.info(f"Executing job {job.id}: {job.argv}")

        try:
            process = await asyncio.create_subprocess_exec(
                *job.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            return self._finish(
                job,
                OutcomeStatus.LAUNCH_ERROR,
                started_at,
                started,
                error=f"{type(e).__name__}: {e}",
            )

        self._processes[job.id] = process
        try:
            if self._timeout is not None:
                output, _ = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
            else:
                output, _ = await process.communicate()
        except asyncio.TimeoutError:
            await self._kill(process)
            return self._finish(
                job,
                OutcomeStatus.TIMED_OUT,
                started_at,
                started,
                exit_code=process.returncode,
                error=f"Job timed out after {self._timeout} seconds",
            )
        except asyncio.CancelledError:
            await self._kill(process)
            raise
        finally:
            self._processes.pop(job.id, None)

        if job.id in self._terminated:
            self._terminated.discard(job.id)
            return self._finish(
                job,
                OutcomeStatus.TERMINATED,
                started_at,
                started,
                exit_code=process.returncode,
                error="Terminated at daemon shutdown",
                output=output,
            )

        if process.returncode == 0:
            return self._finish(
                job, OutcomeStatus.SUCCESS, started_at, started, exit_code=0, output=output
            )

        return self._finish(
            job,
            OutcomeStatus.FAILED,
            started_at,
            started,
            exit_code=process.returncode,
            error=f"Exited with status {process.returncode}",
            output=output,
        )

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        """Kill a command and everything it spawned, then reap it."""
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_wait)
        except asyncio.TimeoutError:
            logger.error(f"Process {process.pid} did not exit after SIGKILL")

    async def drain(self, grace: float) -> int:
        """Stop accepting dispatches and wait for running executions.

        Executions still running after ``grace`` seconds are killed and
        recorded as terminated.

        Args:
            grace: Seconds to wait before killing executions.

        Returns:
            Number of executions that had to be killed.
        """
        self._accepting = False
        pending = set(self._tasks)
        if not pending:
            return 0

        logger.info(f"Waiting up to {grace}s for {len(pending)} running jobs")
        _, pending = await asyncio.wait(pending, timeout=grace)
        if not pending:
            return 0

        running = list(self._processes.items())
        logger.warning(f"Terminating {len(running)} jobs still running after {grace}s")
        for job_id, process in running:
            self._terminated.add(job_id)
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

        await asyncio.wait(pending, timeout=self._kill_wait)
        return len(running)

    async def process_results(self) -> None:
        """Apply outcome messages to the registry until closed.

        Outcomes that are already queued are applied together and saved as
        one snapshot, written outside the event loop.
        """
        closed = False
        while not closed:
            batch = [await self._results.get()]
            while not self._results.empty():
                batch.append(self._results.get_nowait())

            for message in batch:
                if message is None:
                    closed = True
                elif not self._registry.record_outcome(message.job_id, message.outcome):
                    logger.info(f"Discarded outcome of deleted job {message.job_id}")

            await asyncio.to_thread(self._registry.flush)

    async def close_results(self) -> None:
        """Signal the result handler to stop after pending outcomes."""
        await self._results.put(None)
