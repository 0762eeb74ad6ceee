"""Cronus - A cron daemon controlled over a local socket."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("cronus")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from cronus.cron import CronJob, JobRegistry, Scheduler
from cronus.errors import CronusError

__all__ = ["CronJob", "JobRegistry", "Scheduler", "CronusError"]
