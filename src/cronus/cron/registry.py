"""Durable registry of scheduled jobs.

The registry owns every job record. Callers only ever receive copies,
so a job handed to the scheduler or the dispatcher can never be mutated
behind the registry's back, and a concurrent delete cannot tear a record
someone else is reading.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from cronus.cron.expression import parse
from cronus.cron.storage import CronStorage
from cronus.cron.types import CronJob, ExecutionOutcome, JobKind, utcnow
from cronus.errors import CronParseError, JobNotFoundError, RegistryStorageError

logger = logging.getLogger(__name__)

# Called with (event, job_id) after a successful add or remove
ChangeListener = Callable[[str, str], None]


class JobRegistry:
    """Thread-safe mapping from job ID to job, backed by a CronStorage.

    A single reentrant lock guards the in-memory state; every operation
    holds it for its full duration, including the snapshot write for
    add and remove, so no caller observes a partially applied change.
    Fire times and outcomes are only marked dirty and reach storage with
    the next ``flush``. A second lock orders snapshot writes so an older
    snapshot never overwrites a newer one.

    Example:
        registry = JobRegistry(CronStorage("~/.cronus/jobs.json"))
        registry.load()
        job = registry.add("echo", ["hello"], "*/5 * * * *")
        registry.remove(job.id)
    """

    def __init__(self, storage: CronStorage) -> None:
        """Initialize the registry.

        Args:
            storage: Durable store for the job set.
        """
        self._storage = storage
        self._lock = threading.RLock()
        # Taken before _lock whenever both are held
        self._write_lock = threading.Lock()
        self._dirty = False
        self._jobs: dict[str, CronJob] = {}
        self._listeners: list[ChangeListener] = []

    @property
    def storage(self) -> CronStorage:
        """Get the backing store."""
        return self._storage

    def load(self) -> int:
        """Replace the in-memory job set with the stored one.

        Returns:
            Number of jobs loaded.

        Raises:
            StorageCorruptError: If the store holds invalid data.
            RegistryStorageError: If the store cannot be read.
        """
        jobs = self._storage.load()
        with self._lock:
            self._jobs = {job.id: job for job in jobs}
        logger.info(f"Loaded {len(jobs)} jobs from {self._storage.path}")
        return len(jobs)

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback for add/remove events."""
        self._listeners.append(listener)

    def _notify(self, event: str, job_id: str) -> None:
        for listener in self._listeners:
            try:
                listener(event, job_id)
            except Exception:
                logger.exception(f"Registry listener failed for {event} {job_id}")

    def _persist(self) -> None:
        self._storage.save(list(self._jobs.values()))
        self._dirty = False

    def _generate_id(self) -> str:
        """Generate a job ID not used by any current record."""
        while True:
            job_id = uuid.uuid4().hex
            if job_id not in self._jobs:
                return job_id

    def add(
        self,
        command: str,
        args: list[str],
        cron: str,
        kind: JobKind = JobKind.COMMAND,
    ) -> CronJob:
        """Validate, register and persist a new job.

        Script sources must compile and script paths must be absolute.

        Args:
            command: Program, script source or script path.
            args: Program or script arguments.
            cron: Cron expression text.
            kind: What ``command`` holds.

        Returns:
            A copy of the registered job.

        Raises:
            CronParseError: If the cron text or command is invalid.
            RegistryStorageError: If the job could not be persisted.
        """
        if not isinstance(command, str) or not command.strip():
            raise CronParseError("Command must be a non-empty string", str(command))
        if not all(isinstance(arg, str) for arg in args):
            raise CronParseError("Command arguments must be strings")
        try:
            kind = JobKind(kind)
        except ValueError as e:
            raise CronParseError(f"Unknown job kind: {kind!r}") from e
        if kind == JobKind.SCRIPT:
            try:
                compile(command, "<cronus script>", "exec")
            except (SyntaxError, ValueError) as e:
                raise CronParseError(f"Script does not compile: {e}", command) from e
        elif kind == JobKind.SCRIPT_FILE and not Path(command).is_absolute():
            raise CronParseError(f"Script file path must be absolute: {command!r}", command)
        expression = parse(cron)

        with self._write_lock, self._lock:
            job = CronJob(
                id=self._generate_id(),
                cron=cron,
                kind=kind,
                command=command,
                args=list(args),
                created_at=utcnow(),
            )
            self._jobs[job.id] = job
            try:
                self._persist()
            except RegistryStorageError:
                del self._jobs[job.id]
                raise
            snapshot = job.model_copy(deep=True)

        logger.info(f"Added job {job.id}: {expression.source!r} {job.argv}")
        self._notify("add", job.id)
        return snapshot

    def remove(self, job_id: str) -> bool:
        """Remove and persist the removal of a job.

        An execution of the job that is still in flight keeps running;
        its outcome is discarded when it arrives.

        Args:
            job_id: ID of the job to remove.

        Returns:
            True if the job existed.

        Raises:
            RegistryStorageError: If the removal could not be persisted.
        """
        with self._write_lock, self._lock:
            if job_id not in self._jobs:
                return False
            previous = dict(self._jobs)
            job = self._jobs.pop(job_id)
            try:
                self._persist()
            except RegistryStorageError:
                self._jobs = previous
                raise

        if job.running:
            logger.info(f"Removed job {job_id} while running; its outcome will be discarded")
        else:
            logger.info(f"Removed job {job_id}")
        self._notify("remove", job_id)
        return True

    def get(self, job_id: str) -> CronJob:
        """Get a copy of a job.

        Raises:
            JobNotFoundError: If no such job exists.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.model_copy(deep=True)

    def find(self, job_id: str) -> CronJob | None:
        """Get a copy of a job, or None if it doesn't exist."""
        try:
            return self.get(job_id)
        except JobNotFoundError:
            return None

    def list_jobs(self) -> list[CronJob]:
        """Get a consistent snapshot of all jobs in insertion order."""
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def try_mark_running(self, job_id: str) -> bool:
        """Mark a job as running unless it already is.

        Returns:
            True if the job exists and was not already running.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.running:
                return False
            job.running = True
            job.run_count += 1
            return True

    def record_fire(self, job_id: str, fired_at: datetime) -> bool:
        """Record that a job became due, whether or not it was dispatched.

        The change stays in memory until the next ``flush``.

        Returns:
            True if the job still exists.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            job.last_fire_at = fired_at
            self._dirty = True
            return True

    def record_outcome(self, job_id: str, outcome: ExecutionOutcome) -> bool:
        """Store an execution outcome and clear the running flag.

        The change stays in memory until the next ``flush``.

        Returns:
            False if the job was removed while it was executing.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                logger.debug(f"Discarding outcome of removed job {job_id}")
                return False
            job.running = False
            job.last_outcome = outcome
            self._dirty = True
            return True

    @property
    def dirty(self) -> bool:
        """Check if bookkeeping changes are waiting to be written."""
        with self._lock:
            return self._dirty

    def flush(self) -> bool:
        """Write pending bookkeeping changes as one snapshot.

        The snapshot is copied under the registry lock and written without
        it, so fires and outcomes keep flowing during the write. Blocks on
        disk; the daemon calls it through ``asyncio.to_thread``.

        Returns:
            True if a snapshot was written.
        """
        with self._write_lock:
            with self._lock:
                if not self._dirty:
                    return False
                jobs = [job.model_copy(deep=True) for job in self._jobs.values()]
                self._dirty = False
            try:
                self._storage.save(jobs)
            except RegistryStorageError as e:
                with self._lock:
                    self._dirty = True
                logger.error(f"Failed to persist job bookkeeping: {e}")
                return False
        logger.debug(f"Saved bookkeeping for {len(jobs)} jobs")
        return True
