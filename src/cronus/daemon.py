"""Lifecycle of the Cronus daemon.

The daemon loads the job registry, binds the control socket, and runs the
scheduler until a STOP request or a SIGTERM/SIGINT arrives. Shutdown
closes the control socket and stops new dispatches first, then gives
running jobs a grace period before they are killed.
"""

import asyncio
import logging
import os
import signal
import sys
import time
from enum import Enum
from pathlib import Path

from cronus import __version__
from cronus.config import Settings, settings as default_settings
from cronus.context import DaemonContext
from cronus.control.server import ControlServer
from cronus.cron.executor import JobDispatcher
from cronus.cron.registry import JobRegistry
from cronus.cron.scheduler import Scheduler
from cronus.cron.storage import CronStorage

logger = logging.getLogger(__name__)


class DaemonState(str, Enum):
    """State of the daemon.

    Attributes:
        STARTING: Loading jobs and binding the control socket.
        RUNNING: Scheduling jobs and serving requests.
        STOPPING: Draining running jobs.
        STOPPED: Fully stopped.
    """

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class CronusDaemon:
    """Owns every component of one daemon instance.

    Example:
        daemon = CronusDaemon(Settings(name="test", socket_dir=tmp_path))
        await daemon.run()  # returns after STOP or SIGTERM
    """

    def __init__(self, settings: Settings | None = None, pid_file: Path | None = None) -> None:
        """Build the daemon's components without starting anything.

        Args:
            settings: Configuration (defaults to the global settings).
            pid_file: File to record the daemon's PID in while it runs.
        """
        self.settings = settings or default_settings
        self.pid_file = pid_file

        registry = JobRegistry(CronStorage(self.settings.get_storage_path()))
        dispatcher = JobDispatcher(registry, timeout=self.settings.job_timeout_seconds)
        scheduler = Scheduler(registry, dispatcher, tz=self.settings.get_tz())

        self.context = DaemonContext(
            settings=self.settings,
            registry=registry,
            dispatcher=dispatcher,
            scheduler=scheduler,
        )
        self.server = ControlServer(self.context, self.settings.get_socket_path())
        self._state = DaemonState.STOPPED
        self._results_task: asyncio.Task | None = None

    @property
    def state(self) -> DaemonState:
        """Get the current daemon state."""
        return self._state

    @property
    def socket_path(self) -> Path:
        """Get the control socket path."""
        return self.server.socket_path

    async def start(self) -> None:
        """Load jobs and start serving.

        Raises:
            StorageCorruptError: If the job store holds invalid data.
            RegistryStorageError: If the job store cannot be read.
            DaemonAlreadyRunningError: If another daemon owns the socket.
        """
        self._state = DaemonState.STARTING
        context = self.context

        try:
            count = await asyncio.to_thread(context.registry.load)
            await self.server.start()
        except BaseException:
            self._state = DaemonState.STOPPED
            raise

        self._results_task = asyncio.create_task(
            context.dispatcher.process_results(), name="cronus_results"
        )
        await context.scheduler.start()

        if self.pid_file is not None:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            self.pid_file.write_text(str(context.pid))

        self._state = DaemonState.RUNNING
        logger.info(
            f"Cronus {__version__} started (pid {context.pid}) with {count} jobs, "
            f"socket {self.socket_path}"
        )

    async def stop(self) -> None:
        """Shut down in order: control channel, scheduler, running jobs."""
        if self._state == DaemonState.STOPPED:
            return

        self._state = DaemonState.STOPPING
        context = self.context
        context.request_shutdown()

        # No new connections while running jobs are drained
        await self.server.close()
        await context.scheduler.stop()

        grace = self.settings.shutdown_grace_seconds
        killed = await context.dispatcher.drain(grace)
        if killed:
            logger.warning(f"Killed {killed} jobs still running after {grace}s")

        await context.dispatcher.close_results()
        if self._results_task is not None:
            await self._results_task
            self._results_task = None
        await asyncio.to_thread(context.registry.flush)

        if self.pid_file is not None:
            self.pid_file.unlink(missing_ok=True)
        self._state = DaemonState.STOPPED
        logger.info("Cronus stopped")

    def _setup_signals(self) -> None:
        """Set up Unix signal handlers."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)
        logger.debug("Signal handlers installed")

    def _remove_signals(self) -> None:
        """Remove signal handlers."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    def _handle_shutdown_signal(self, sig: signal.Signals) -> None:
        """Handle SIGTERM/SIGINT signal for shutdown."""
        logger.info(f"Received {sig.name}")
        self.context.request_shutdown(f"on {sig.name}")

    async def run(self) -> None:
        """Start, serve until shutdown is requested, then stop."""
        await self.start()
        self._setup_signals()
        try:
            await self.context.shutdown_requested.wait()
        finally:
            self._remove_signals()
            await self.stop()


def get_daemon_pid(pid_file: Path) -> int | None:
    """Get the PID recorded in a PID file if that process is alive."""
    if not pid_file.exists():
        return None
    try:
        pid = int(pid_file.read_text().strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError):
        pid_file.unlink(missing_ok=True)
        return None
    except PermissionError:
        # Alive, but owned by someone else
        return pid


def wait_for_exit(pid: int, timeout: float) -> bool:
    """Wait for a process to exit.

    Returns:
        True if the process exited within ``timeout`` seconds.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        time.sleep(0.2)
    return False


def daemonize(log_file: Path) -> None:
    """Fork the process to run in the background.

    The calling process exits; only the detached grandchild returns.

    Args:
        log_file: File that receives stdout and stderr.
    """
    # First fork
    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    os.chdir("/")
    os.setsid()
    os.umask(0o022)

    # Second fork
    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    # Redirect file descriptors
    sys.stdout.flush()
    sys.stderr.flush()

    log_file.parent.mkdir(parents=True, exist_ok=True)
    log_fd = os.open(str(log_file), os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
    null_fd = os.open(os.devnull, os.O_RDONLY)

    os.dup2(null_fd, sys.stdin.fileno())
    os.dup2(log_fd, sys.stdout.fileno())
    os.dup2(log_fd, sys.stderr.fileno())

    os.close(null_fd)
    os.close(log_fd)


def run_daemon(settings: Settings | None = None) -> None:
    """Run a daemon in the current process until it stops.

    Writes the PID file for the daemon's lifetime.

    Args:
        settings: Configuration (defaults to the global settings).

    Raises:
        CronusError: If the daemon could not start.
    """
    settings = settings or default_settings
    asyncio.run(CronusDaemon(settings, pid_file=settings.get_pid_file()).run())
