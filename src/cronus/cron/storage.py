"""JSON file persistence for scheduled jobs.

This module handles loading and saving the job set to a JSON file,
with file locking for concurrent access safety. Writes replace the
file atomically so a crash never leaves a half-written store behind.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout
from pydantic import ValidationError

from cronus.cron.types import STORAGE_VERSION, CronJob, CronStorageData
from cronus.errors import RegistryStorageError, StorageCorruptError

logger = logging.getLogger(__name__)


class CronStorage:
    """JSON file-based storage for the job set.

    The whole job set is written on every save. Loading is strict: a file
    that cannot be parsed, or any single invalid record, fails the load
    instead of yielding a partial job set.

    Example:
        storage = CronStorage("/path/to/jobs.json")
        jobs = storage.load()
        storage.save(jobs)
    """

    def __init__(
        self,
        path: str | Path,
        create_if_missing: bool = True,
        lock_timeout: float = 10.0,
    ) -> None:
        """Initialize the job storage.

        Args:
            path: Path to the JSON storage file.
            create_if_missing: Create the file if it doesn't exist.
            lock_timeout: Seconds to wait for the file lock.
        """
        self._path = Path(path).expanduser()
        self._lock_path = self._path.with_suffix(".lock")
        self._lock_timeout = lock_timeout
        self._create_if_missing = create_if_missing

    @property
    def path(self) -> Path:
        """Get the storage file path."""
        return self._path

    def _lock(self) -> FileLock:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self._lock_path), timeout=self._lock_timeout)

    def _ensure_file_exists(self) -> None:
        """Ensure the storage file and parent directory exist."""
        if not self._path.exists():
            if self._create_if_missing:
                self._write_data(CronStorageData())
                logger.info(f"Created job storage file: {self._path}")
            else:
                raise RegistryStorageError(f"Job storage file not found: {self._path}")

    def _read_data(self) -> CronStorageData:
        """Read and parse the storage file.

        Returns:
            Parsed storage data.

        Raises:
            StorageCorruptError: If the file holds invalid JSON or records.
            RegistryStorageError: If the file cannot be read.
        """
        self._ensure_file_exists()

        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise RegistryStorageError(f"Cannot read {self._path}: {e}") from e

        if not content.strip():
            return CronStorageData()

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StorageCorruptError(f"Invalid JSON in {self._path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("jobs", []), list):
            raise StorageCorruptError(f"Unexpected layout in {self._path}")

        # Handle version migrations if needed
        version = data.get("version", 1)
        if version != STORAGE_VERSION:
            data = self._migrate_data(data, version)

        try:
            parsed = CronStorageData.model_validate(data)
        except (ValidationError, ValueError) as e:
            raise StorageCorruptError(f"Invalid job record in {self._path}: {e}") from e

        ids = [job.id for job in parsed.jobs]
        if len(ids) != len(set(ids)):
            raise StorageCorruptError(f"Duplicate job IDs in {self._path}")

        return parsed

    def _write_data(self, data: CronStorageData) -> None:
        """Atomically replace the storage file.

        Args:
            data: Data to write.

        Raises:
            RegistryStorageError: If the file cannot be written.
        """
        content = json.dumps(data.model_dump(mode="json"), indent=2)

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise RegistryStorageError(f"Cannot write {self._path}: {e}") from e

    def _migrate_data(self, data: dict[str, Any], from_version: int) -> dict[str, Any]:
        """Migrate data from another format version.

        Args:
            data: Raw data from file.
            from_version: Version of the stored data.

        Returns:
            Migrated data at current version.

        Raises:
            StorageCorruptError: If the version is unknown.
        """
        if not isinstance(from_version, int) or from_version > STORAGE_VERSION:
            raise StorageCorruptError(
                f"Unsupported storage version {from_version!r} in {self._path}"
            )
        logger.info(f"Migrating job storage from version {from_version} to {STORAGE_VERSION}")
        data["version"] = STORAGE_VERSION
        return data

    def load(self) -> list[CronJob]:
        """Load all jobs from storage.

        Returns:
            Jobs in insertion order.
        """
        try:
            with self._lock():
                data = self._read_data()
        except Timeout as e:
            raise RegistryStorageError(f"Timed out locking {self._lock_path}") from e
        logger.debug(f"Loaded {len(data.jobs)} jobs from {self._path}")
        return data.jobs

    def save(self, jobs: list[CronJob]) -> None:
        """Save the full job set to storage.

        Args:
            jobs: Jobs to save, in insertion order.
        """
        try:
            with self._lock():
                self._write_data(CronStorageData(jobs=jobs))
        except Timeout as e:
            raise RegistryStorageError(f"Timed out locking {self._lock_path}") from e
        logger.debug(f"Saved {len(jobs)} jobs to {self._path}")
