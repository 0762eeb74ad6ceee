"""Tests for the job registry."""

import sys
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from cronus.cron.registry import JobRegistry
from cronus.cron.storage import CronStorage
from cronus.cron.types import ExecutionOutcome, JobKind, OutcomeStatus, utcnow
from cronus.errors import CronParseError, JobNotFoundError, RegistryStorageError


class TestAddRemove:
    """Test adding, listing and removing jobs."""

    def test_add_and_list(self, registry: JobRegistry) -> None:
        job = registry.add("echo", ["hello"], "*/5 * * * *")

        assert job.id
        assert job.argv == ["echo", "hello"]
        assert [j.id for j in registry.list_jobs()] == [job.id]
        assert job.id in registry
        assert len(registry) == 1

    def test_ids_are_unique(self, registry: JobRegistry) -> None:
        ids = {registry.add("true", [], "* * * * *").id for _ in range(20)}
        assert len(ids) == 20

    def test_list_is_insertion_ordered(self, registry: JobRegistry) -> None:
        ids = [registry.add("true", [str(i)], "* * * * *").id for i in range(5)]
        assert [j.id for j in registry.list_jobs()] == ids

    def test_returned_jobs_are_copies(self, registry: JobRegistry) -> None:
        job = registry.add("echo", ["hello"], "* * * * *")
        job.args.append("mutated")
        registry.list_jobs()[0].args.append("mutated")

        assert registry.get(job.id).args == ["hello"]

    def test_invalid_cron_rejected(self, registry: JobRegistry) -> None:
        with pytest.raises(CronParseError):
            registry.add("echo", [], "61 * * * *")
        assert len(registry) == 0
        assert registry.storage.load() == []

    def test_empty_command_rejected(self, registry: JobRegistry) -> None:
        with pytest.raises(CronParseError):
            registry.add("  ", [], "* * * * *")

    def test_non_string_args_rejected(self, registry: JobRegistry) -> None:
        with pytest.raises(CronParseError):
            registry.add("echo", [1, 2], "* * * * *")  # type: ignore[list-item]

    def test_remove_is_idempotent(self, registry: JobRegistry) -> None:
        job = registry.add("true", [], "* * * * *")

        assert registry.remove(job.id) is True
        assert registry.remove(job.id) is False
        assert registry.remove("never-existed") is False
        assert len(registry) == 0

    def test_get_missing(self, registry: JobRegistry) -> None:
        with pytest.raises(JobNotFoundError):
            registry.get("missing")
        assert registry.find("missing") is None

    def test_changes_are_persisted(self, registry: JobRegistry, storage: CronStorage) -> None:
        kept = registry.add("echo", ["kept"], "0 * * * *")
        dropped = registry.add("echo", ["dropped"], "0 * * * *")
        registry.remove(dropped.id)

        reloaded = JobRegistry(CronStorage(storage.path))
        assert reloaded.load() == 1
        assert reloaded.get(kept.id).args == ["kept"]


class TestScriptJobs:
    """Test adding Python script jobs."""

    def test_script(self, registry: JobRegistry) -> None:
        job = registry.add("print('hi')", ["x"], "* * * * *", JobKind.SCRIPT)

        assert job.kind == JobKind.SCRIPT
        assert job.argv == [sys.executable, "-c", "print('hi')", "x"]
        assert registry.storage.load()[0].kind == JobKind.SCRIPT

    def test_script_must_compile(self, registry: JobRegistry) -> None:
        with pytest.raises(CronParseError, match="does not compile"):
            registry.add("def broken(:", [], "* * * * *", JobKind.SCRIPT)
        assert len(registry) == 0

    def test_script_file(self, registry: JobRegistry, tmp_path: Path) -> None:
        path = tmp_path / "job.py"
        job = registry.add(str(path), [], "* * * * *", "script_file")  # type: ignore[arg-type]

        assert job.kind == JobKind.SCRIPT_FILE
        assert job.argv == [sys.executable, str(path)]

    def test_script_file_must_be_absolute(self, registry: JobRegistry) -> None:
        with pytest.raises(CronParseError, match="absolute"):
            registry.add("jobs/report.py", [], "* * * * *", JobKind.SCRIPT_FILE)

    def test_unknown_kind(self, registry: JobRegistry) -> None:
        with pytest.raises(CronParseError, match="kind"):
            registry.add("echo", [], "* * * * *", "lua")  # type: ignore[arg-type]


class TestPersistenceFailure:
    """Test that failed writes leave the registry unchanged."""

    def test_add_rolled_back(self, registry: JobRegistry) -> None:
        with patch.object(registry.storage, "save", side_effect=RegistryStorageError("boom")):
            with pytest.raises(RegistryStorageError):
                registry.add("echo", [], "* * * * *")
        assert len(registry) == 0

    def test_remove_rolled_back(self, registry: JobRegistry) -> None:
        job = registry.add("echo", [], "* * * * *")
        with patch.object(registry.storage, "save", side_effect=RegistryStorageError("boom")):
            with pytest.raises(RegistryStorageError):
                registry.remove(job.id)
        assert job.id in registry

    def test_failed_flush_stays_pending(self, registry: JobRegistry) -> None:
        job = registry.add("echo", [], "* * * * *")
        now = utcnow()
        assert registry.record_fire(job.id, now) is True

        with patch.object(registry.storage, "save", side_effect=RegistryStorageError("boom")):
            assert registry.flush() is False
        assert registry.get(job.id).last_fire_at == now
        assert registry.dirty is True

        assert registry.flush() is True
        assert registry.storage.load()[0].last_fire_at == now


class TestListeners:
    """Test change notifications."""

    def test_add_and_remove_notify(self, registry: JobRegistry) -> None:
        events = []
        registry.add_listener(lambda event, job_id: events.append((event, job_id)))

        job = registry.add("true", [], "* * * * *")
        registry.remove(job.id)
        registry.remove(job.id)

        assert events == [("add", job.id), ("remove", job.id)]

    def test_failing_listener_does_not_break_add(self, registry: JobRegistry) -> None:
        def broken(event: str, job_id: str) -> None:
            raise RuntimeError("listener bug")

        registry.add_listener(broken)
        job = registry.add("true", [], "* * * * *")
        assert job.id in registry


class TestBookkeeping:
    """Test running flags, fire times and outcomes."""

    def test_try_mark_running(self, registry: JobRegistry) -> None:
        job = registry.add("true", [], "* * * * *")

        assert registry.try_mark_running(job.id) is True
        assert registry.try_mark_running(job.id) is False
        assert registry.get(job.id).running is True
        assert registry.get(job.id).run_count == 1
        assert registry.try_mark_running("missing") is False

    def test_record_outcome_clears_running(self, registry: JobRegistry) -> None:
        job = registry.add("true", [], "* * * * *")
        registry.try_mark_running(job.id)

        outcome = ExecutionOutcome(status=OutcomeStatus.SUCCESS, exit_code=0)
        assert registry.record_outcome(job.id, outcome) is True

        stored = registry.get(job.id)
        assert stored.running is False
        assert stored.last_outcome.exit_code == 0

        assert registry.storage.load()[0].last_outcome is None
        assert registry.flush() is True
        assert registry.storage.load()[0].last_outcome.status == OutcomeStatus.SUCCESS

    def test_outcome_of_removed_job_discarded(self, registry: JobRegistry) -> None:
        job = registry.add("true", [], "* * * * *")
        registry.try_mark_running(job.id)
        registry.remove(job.id)

        outcome = ExecutionOutcome(status=OutcomeStatus.SUCCESS, exit_code=0)
        assert registry.record_outcome(job.id, outcome) is False
        assert job.id not in registry

    def test_record_fire(self, registry: JobRegistry) -> None:
        job = registry.add("true", [], "* * * * *")
        now = utcnow()

        assert registry.record_fire(job.id, now) is True
        assert registry.get(job.id).last_fire_at == now
        assert registry.get(job.id).reference_time == now
        assert registry.record_fire("missing", now) is False

    def test_bookkeeping_does_not_write(self, registry: JobRegistry) -> None:
        jobs = [registry.add("true", [], "* * * * *") for _ in range(50)]
        now = utcnow()
        outcome = ExecutionOutcome(status=OutcomeStatus.FAILED, exit_code=1)

        with patch.object(registry.storage, "save") as save:
            for job in jobs:
                registry.record_fire(job.id, now)
                registry.try_mark_running(job.id)
                registry.record_outcome(job.id, outcome)
            save.assert_not_called()

            assert registry.flush() is True
            save.assert_called_once()
            assert len(save.call_args.args[0]) == 50

    def test_flush_without_changes(self, registry: JobRegistry) -> None:
        job = registry.add("true", [], "* * * * *")
        assert registry.dirty is False
        assert registry.flush() is False

        registry.record_fire(job.id, utcnow())
        assert registry.dirty is True
        # A full write for add or remove carries pending bookkeeping with it
        registry.add("true", [], "0 0 * * *")
        assert registry.dirty is False
        assert registry.storage.load()[0].last_fire_at is not None


class TestConcurrency:
    """Test concurrent mutation from several threads."""

    def test_concurrent_adds_and_removes(self, registry: JobRegistry) -> None:
        errors: list[BaseException] = []
        added: list[str] = []
        lock = threading.Lock()

        def worker(n: int) -> None:
            try:
                for i in range(10):
                    job = registry.add("echo", [f"{n}-{i}"], "* * * * *")
                    if i % 2:
                        assert registry.remove(job.id) is True
                        assert job.id not in {j.id for j in registry.list_jobs()}
                    else:
                        with lock:
                            added.append(job.id)
                        # An acknowledged add is visible to every later read
                        assert job.id in {j.id for j in registry.list_jobs()}
            except BaseException as e:
                errors.append(e)

        def reader() -> None:
            try:
                for _ in range(50):
                    for job in registry.list_jobs():
                        assert job.command == "echo"
                        assert len(job.args) == 1
                        assert job.created_at is not None
                        assert job.expression.source == "* * * * *"
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        threads += [threading.Thread(target=reader) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert sorted(j.id for j in registry.list_jobs()) == sorted(added)
        assert sorted(j.id for j in registry.storage.load()) == sorted(added)

    def test_flush_races_with_adds(self, registry: JobRegistry) -> None:
        errors: list[BaseException] = []
        job = registry.add("true", [], "* * * * *")
        stop = threading.Event()

        def flusher() -> None:
            try:
                while not stop.is_set():
                    registry.record_fire(job.id, utcnow())
                    registry.flush()
            except BaseException as e:
                errors.append(e)

        thread = threading.Thread(target=flusher)
        thread.start()
        try:
            added = [registry.add("echo", [str(i)], "0 0 * * *").id for i in range(30)]
        finally:
            stop.set()
            thread.join()
        registry.flush()

        # A bookkeeping snapshot never overwrites a newer add
        assert errors == []
        assert sorted(j.id for j in registry.storage.load()) == sorted([job.id, *added])
