"""Shared fixtures for Cronus tests."""

import shutil
import tempfile
from pathlib import Path

import pytest

from cronus.config import Settings
from cronus.cron.registry import JobRegistry
from cronus.cron.storage import CronStorage


@pytest.fixture
def storage(tmp_path: Path) -> CronStorage:
    """Job storage in a temporary directory."""
    return CronStorage(tmp_path / "jobs.json")


@pytest.fixture
def registry(storage: CronStorage) -> JobRegistry:
    """Empty job registry backed by temporary storage."""
    registry = JobRegistry(storage)
    registry.load()
    return registry


@pytest.fixture
def socket_dir():
    """Short-lived directory for control sockets.

    Unix socket paths are limited to about 100 bytes, so this stays
    directly under the system temp dir rather than pytest's tmp_path.
    """
    path = Path(tempfile.mkdtemp(prefix="cronus-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def daemon_settings(tmp_path: Path, socket_dir: Path) -> Settings:
    """Settings for a daemon isolated in temporary directories."""
    return Settings(
        name="test",
        socket_dir=socket_dir,
        storage_path=tmp_path / "jobs.json",
        pid_file=tmp_path / "test.pid",
        log_file=tmp_path / "test.log",
        timezone="UTC",
        shutdown_grace_seconds=5.0,
    )
