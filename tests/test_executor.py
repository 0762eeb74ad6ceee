"""Tests for job execution and the dispatcher."""

import asyncio
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from cronus.cron.executor import JobDispatcher
from cronus.cron.registry import JobRegistry
from cronus.cron.types import JobKind, OutcomeStatus


async def wait_for_outcome(registry: JobRegistry, job_id: str, timeout: float = 10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = registry.get(job_id)
        if job.last_outcome is not None and not job.running:
            return job.last_outcome
        await asyncio.sleep(0.05)
    raise AssertionError(f"No outcome for {job_id}")


async def shutdown(dispatcher: JobDispatcher, results: asyncio.Task, grace: float = 5.0) -> None:
    await dispatcher.drain(grace)
    await dispatcher.close_results()
    await asyncio.wait_for(results, timeout=5)


class TestExecute:
    """Test running a single command to completion."""

    @pytest.mark.asyncio
    async def test_success(self, registry: JobRegistry) -> None:
        job = registry.add("echo", ["hello"], "* * * * *")
        outcome = await JobDispatcher(registry).execute(job)

        assert outcome.status == OutcomeStatus.SUCCESS
        assert outcome.success
        assert outcome.exit_code == 0
        assert "hello" in outcome.output
        assert outcome.finished_at >= outcome.started_at

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, registry: JobRegistry) -> None:
        job = registry.add("sh", ["-c", "echo oops >&2; exit 3"], "* * * * *")
        outcome = await JobDispatcher(registry).execute(job)

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.exit_code == 3
        assert "oops" in outcome.output

    @pytest.mark.asyncio
    async def test_launch_error(self, registry: JobRegistry) -> None:
        job = registry.add("/nonexistent/cronus-test-binary", [], "* * * * *")
        outcome = await JobDispatcher(registry).execute(job)

        assert outcome.status == OutcomeStatus.LAUNCH_ERROR
        assert outcome.exit_code is None
        assert outcome.error

    @pytest.mark.asyncio
    async def test_timeout(self, registry: JobRegistry) -> None:
        job = registry.add("sleep", ["30"], "* * * * *")
        started = time.monotonic()
        outcome = await JobDispatcher(registry, timeout=0.3).execute(job)

        assert outcome.status == OutcomeStatus.TIMED_OUT
        assert time.monotonic() - started < 10

    @pytest.mark.asyncio
    async def test_output_is_truncated(self, registry: JobRegistry) -> None:
        job = registry.add("sh", ["-c", "yes x | head -c 5000"], "* * * * *")
        outcome = await JobDispatcher(registry).execute(job)

        assert outcome.success
        assert len(outcome.output) == 500

    @pytest.mark.asyncio
    async def test_script(self, registry: JobRegistry) -> None:
        job = registry.add(
            "import sys; print('args', *sys.argv[1:])", ["a", "b"], "* * * * *", JobKind.SCRIPT
        )
        outcome = await JobDispatcher(registry).execute(job)

        assert outcome.status == OutcomeStatus.SUCCESS
        assert "args a b" in outcome.output

    @pytest.mark.asyncio
    async def test_script_file(self, registry: JobRegistry, tmp_path: Path) -> None:
        path = tmp_path / "job.py"
        path.write_text("import sys\nprint('from file')\nsys.exit(4)\n")
        job = registry.add(str(path), [], "* * * * *", JobKind.SCRIPT_FILE)
        outcome = await JobDispatcher(registry).execute(job)

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.exit_code == 4
        assert "from file" in outcome.output


class TestDispatch:
    """Test fire-and-forget dispatch and outcome recording."""

    @pytest.mark.asyncio
    async def test_outcome_recorded(self, registry: JobRegistry) -> None:
        dispatcher = JobDispatcher(registry)
        results = asyncio.create_task(dispatcher.process_results())
        job = registry.add("echo", ["hello"], "* * * * *")

        assert dispatcher.dispatch(job) is True
        outcome = await wait_for_outcome(registry, job.id)

        assert outcome.exit_code == 0
        assert registry.get(job.id).run_count == 1
        await shutdown(dispatcher, results)
        assert registry.storage.load()[0].last_outcome.exit_code == 0

    @pytest.mark.asyncio
    async def test_outcomes_saved_once_off_the_loop(self, registry: JobRegistry) -> None:
        dispatcher = JobDispatcher(registry)
        jobs = [registry.add("true", [], "* * * * *") for _ in range(5)]
        for job in jobs:
            dispatcher.dispatch(job)
        await dispatcher.drain(grace=5)
        await dispatcher.close_results()

        save_threads = []
        real_save = registry.storage.save

        def save(saved_jobs):
            save_threads.append(threading.current_thread())
            real_save(saved_jobs)

        with patch.object(registry.storage, "save", side_effect=save):
            await asyncio.wait_for(dispatcher.process_results(), timeout=5)

        assert len(save_threads) == 1
        assert save_threads[0] is not threading.current_thread()
        assert all(stored.last_outcome.success for stored in registry.storage.load())

    @pytest.mark.asyncio
    async def test_overlapping_dispatch_skipped(self, registry: JobRegistry) -> None:
        dispatcher = JobDispatcher(registry)
        results = asyncio.create_task(dispatcher.process_results())
        job = registry.add("sleep", ["0.5"], "* * * * *")

        assert dispatcher.dispatch(job) is True
        assert dispatcher.dispatch(job) is False
        assert dispatcher.in_flight == 1

        await wait_for_outcome(registry, job.id)
        assert registry.get(job.id).run_count == 1
        assert dispatcher.dispatch(job) is True
        await shutdown(dispatcher, results)

    @pytest.mark.asyncio
    async def test_jobs_run_concurrently(self, registry: JobRegistry) -> None:
        dispatcher = JobDispatcher(registry)
        results = asyncio.create_task(dispatcher.process_results())
        jobs = [registry.add("sleep", ["0.5"], "* * * * *") for _ in range(4)]

        started = time.monotonic()
        for job in jobs:
            dispatcher.dispatch(job)
        for job in jobs:
            await wait_for_outcome(registry, job.id)

        assert time.monotonic() - started < 1.9
        await shutdown(dispatcher, results)

    @pytest.mark.asyncio
    async def test_deleted_job_outcome_discarded(self, registry: JobRegistry) -> None:
        dispatcher = JobDispatcher(registry)
        results = asyncio.create_task(dispatcher.process_results())
        job = registry.add("sleep", ["0.3"], "* * * * *")

        dispatcher.dispatch(job)
        assert registry.remove(job.id) is True
        await shutdown(dispatcher, results)

        assert job.id not in registry
        assert registry.storage.load() == []


class TestDrain:
    """Test bounded shutdown of running executions."""

    @pytest.mark.asyncio
    async def test_drain_waits_for_short_jobs(self, registry: JobRegistry) -> None:
        dispatcher = JobDispatcher(registry)
        results = asyncio.create_task(dispatcher.process_results())
        job = registry.add("sleep", ["0.3"], "* * * * *")
        dispatcher.dispatch(job)

        assert await dispatcher.drain(grace=5) == 0
        await dispatcher.close_results()
        await results

        assert registry.get(job.id).last_outcome.status == OutcomeStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_drain_terminates_long_jobs(self, registry: JobRegistry) -> None:
        dispatcher = JobDispatcher(registry)
        results = asyncio.create_task(dispatcher.process_results())
        job = registry.add("sleep", ["30"], "* * * * *")
        dispatcher.dispatch(job)
        await asyncio.sleep(0.2)

        started = time.monotonic()
        assert await dispatcher.drain(grace=0.3) == 1
        await dispatcher.close_results()
        await results

        assert time.monotonic() - started < 10
        stored = registry.get(job.id)
        assert stored.last_outcome.status == OutcomeStatus.TERMINATED
        assert stored.running is False

    @pytest.mark.asyncio
    async def test_no_dispatch_after_drain(self, registry: JobRegistry) -> None:
        dispatcher = JobDispatcher(registry)
        job = registry.add("true", [], "* * * * *")

        await dispatcher.drain(grace=1)

        assert dispatcher.accepting is False
        assert dispatcher.dispatch(job) is False
        assert registry.get(job.id).running is False
