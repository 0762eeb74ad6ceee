"""Shared state of a running daemon."""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field

from cronus.config import Settings
from cronus.cron.executor import JobDispatcher
from cronus.cron.registry import JobRegistry
from cronus.cron.scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class DaemonContext:
    """Components of one daemon, owned by the lifecycle controller.

    The scheduler, the dispatcher and the control server all reach each
    other through this object; none of them holds global state.

    Attributes:
        settings: Effective configuration.
        registry: Job registry.
        dispatcher: Job executor.
        scheduler: Trigger loop.
        shutdown_requested: Set once shutdown has been committed.
        started: Monotonic start time.
        pid: Daemon process ID.
    """

    settings: Settings
    registry: JobRegistry
    dispatcher: JobDispatcher
    scheduler: Scheduler
    shutdown_requested: asyncio.Event = field(default_factory=asyncio.Event)
    started: float = field(default_factory=time.monotonic)
    pid: int = field(default_factory=os.getpid)

    @property
    def shutting_down(self) -> bool:
        """Check whether shutdown has been requested."""
        return self.shutdown_requested.is_set()

    @property
    def uptime(self) -> float:
        """Get seconds since the daemon started."""
        return time.monotonic() - self.started

    def request_shutdown(self, reason: str = "requested") -> None:
        """Commit to shutting down. Idempotent; call from the event loop."""
        if self.shutdown_requested.is_set():
            return
        logger.info(f"Shutdown {reason}")
        self.shutdown_requested.set()
        self.scheduler.wake()
