"""Unix socket server for controlling a running daemon.

Each connection carries newline-delimited JSON requests, answered in
order. Connections are served concurrently; a slow or broken client
only affects its own connection.
"""

import asyncio
import contextlib
import logging
from pathlib import Path

from cronus import __version__
from cronus.context import DaemonContext
from cronus.control.protocol import (
    MAX_MESSAGE_SIZE,
    AddReply,
    AddRequest,
    ControlRequest,
    DeleteReply,
    DeleteRequest,
    ErrorReply,
    JobInfo,
    ListReply,
    ListRequest,
    PingReply,
    PingRequest,
    Reply,
    StopReply,
    StopRequest,
    decode_request,
    encode,
)
from cronus.errors import (
    ChannelError,
    CronParseError,
    DaemonAlreadyRunningError,
    RegistryStorageError,
)

logger = logging.getLogger(__name__)

# Seconds a connection may sit idle between requests
READ_TIMEOUT = 60.0


async def _socket_in_use(path: Path) -> bool:
    """Check whether something is accepting connections on a socket path."""
    try:
        _, writer = await asyncio.open_unix_connection(str(path))
    except (ConnectionRefusedError, FileNotFoundError):
        return False
    except OSError as e:
        logger.debug(f"Probe of {path} failed: {e}")
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


class ControlServer:
    """Accepts ADD/DELETE/LIST/STOP/PING requests on a Unix socket.

    Example:
        server = ControlServer(context, Path("/tmp/cronus.sock"))
        await server.start()
        ...
        await server.close()
    """

    def __init__(self, context: DaemonContext, socket_path: Path) -> None:
        """Initialize the server.

        Args:
            context: Components of the running daemon.
            socket_path: Filesystem path of the control socket.
        """
        self._context = context
        self._socket_path = socket_path
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    @property
    def socket_path(self) -> Path:
        """Get the control socket path."""
        return self._socket_path

    async def start(self) -> None:
        """Bind the socket and start accepting connections.

        Raises:
            DaemonAlreadyRunningError: If a live daemon owns the socket.
            OSError: If the socket cannot be bound.
        """
        path = self._socket_path
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.exists() or path.is_symlink():
            if await _socket_in_use(path):
                raise DaemonAlreadyRunningError(f"A daemon is already listening on {path}")
            logger.info(f"Removing stale socket {path}")
            path.unlink(missing_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            path=str(path),
            limit=MAX_MESSAGE_SIZE,
        )
        path.chmod(0o600)
        logger.info(f"Control channel listening on {path}")

    async def close(self) -> None:
        """Stop accepting connections, drop open ones and remove the socket."""
        if self._server is None:
            return

        # Delete the socket first so no new client can connect
        self._socket_path.unlink(missing_ok=True)
        self._server.close()
        for writer in list(self._writers):
            writer.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Control channel closed")

    async def _send(self, writer: asyncio.StreamWriter, reply: Reply) -> None:
        writer.write(encode(reply))
        await writer.drain()

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self._writers.add(writer)
        try:
            while True:
                try:
                    line = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT)
                except asyncio.TimeoutError:
                    logger.debug("Closing idle control connection")
                    break
                except ValueError:
                    # StreamReader raises ValueError once a line exceeds the limit
                    await self._send(
                        writer,
                        ErrorReply(error=f"Request exceeds {MAX_MESSAGE_SIZE} bytes"),
                    )
                    break

                if not line:
                    break
                if not line.strip():
                    continue

                try:
                    request = decode_request(line)
                except ChannelError as e:
                    logger.warning(f"Rejected malformed control request: {e}")
                    await self._send(writer, ErrorReply(error=str(e)))
                    break

                reply = await self.handle_request(request)
                await self._send(writer, reply)
                if isinstance(request, StopRequest):
                    break
        except ConnectionError as e:
            logger.debug(f"Control connection lost: {e}")
        finally:
            self._writers.discard(writer)
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

    async def handle_request(self, request: ControlRequest) -> Reply:
        """Apply one request to the daemon.

        Args:
            request: A decoded request.

        Returns:
            The reply to send back.
        """
        context = self._context
        registry = context.registry

        if context.shutting_down and not isinstance(request, (StopRequest, PingRequest)):
            return ErrorReply(error="Daemon is shutting down")

        if isinstance(request, AddRequest):
            try:
                # Storage writes block, so keep them off the event loop
                job = await asyncio.to_thread(
                    registry.add, request.command, request.args, request.cron, request.kind
                )
            except CronParseError as e:
                return ErrorReply(error=str(e))
            except RegistryStorageError as e:
                logger.error(f"Failed to add job: {e}")
                return ErrorReply(error=f"Storage error: {e}")
            return AddReply(id=job.id)

        if isinstance(request, DeleteRequest):
            try:
                found = await asyncio.to_thread(registry.remove, request.id)
            except RegistryStorageError as e:
                logger.error(f"Failed to delete job {request.id}: {e}")
                return ErrorReply(error=f"Storage error: {e}")
            return DeleteReply(found=found)

        if isinstance(request, ListRequest):
            scheduler = context.scheduler
            jobs = [
                JobInfo.from_job(job, scheduler.next_trigger_for(job))
                for job in registry.list_jobs()
            ]
            return ListReply(jobs=jobs)

        if isinstance(request, StopRequest):
            context.request_shutdown("requested over control channel")
            return StopReply()

        if isinstance(request, PingRequest):
            return PingReply(
                status="stopping" if context.shutting_down else "running",
                pid=context.pid,
                version=__version__,
                jobs=len(registry),
                running=context.dispatcher.in_flight,
                uptime_seconds=round(context.uptime, 3),
                scheduler=context.scheduler.state.value,
            )

        return ErrorReply(error=f"Unsupported request: {request!r}")
