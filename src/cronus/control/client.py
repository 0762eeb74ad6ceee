"""Client side of the control channel."""

import asyncio
import contextlib
import logging
from pathlib import Path

from pydantic import BaseModel

from cronus.control.protocol import (
    MAX_MESSAGE_SIZE,
    AddReply,
    AddRequest,
    DeleteReply,
    DeleteRequest,
    JobInfo,
    ListReply,
    ListRequest,
    PingReply,
    PingRequest,
    ReplyT,
    StopReply,
    StopRequest,
    decode_reply,
    encode,
)
from cronus.cron.types import JobKind
from cronus.errors import ChannelError, DaemonNotRunningError

logger = logging.getLogger(__name__)


class ControlClient:
    """Sends requests to a daemon over its control socket.

    Each request uses its own connection.

    Example:
        client = ControlClient(Path("/tmp/cronus.sock"))
        job_id = await client.add("*/5 * * * *", "echo", ["hello"])
        jobs = await client.list_jobs()
    """

    def __init__(self, socket_path: Path, timeout: float = 10.0) -> None:
        """Initialize the client.

        Args:
            socket_path: Path of the daemon's control socket.
            timeout: Seconds to wait for connecting and for each reply.
        """
        self.socket_path = socket_path
        self.timeout = timeout

    async def request(self, message: BaseModel, reply_type: type[ReplyT]) -> ReplyT:
        """Send one request and wait for its reply.

        Args:
            message: Request model.
            reply_type: Expected reply model.

        Returns:
            The decoded reply.

        Raises:
            DaemonNotRunningError: If nothing is listening on the socket.
            RequestRejectedError: If the daemon replied with an error.
            ChannelError: If the exchange failed or the reply was malformed.
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(self.socket_path), limit=MAX_MESSAGE_SIZE),
                timeout=self.timeout,
            )
        except (FileNotFoundError, ConnectionRefusedError) as e:
            raise DaemonNotRunningError(f"No daemon listening on {self.socket_path}") from e
        except (OSError, asyncio.TimeoutError) as e:
            raise ChannelError(f"Cannot connect to {self.socket_path}: {e}") from e

        try:
            writer.write(encode(message))
            await writer.drain()
            line = await asyncio.wait_for(reader.readline(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ChannelError(f"No reply within {self.timeout} seconds") from e
        except (OSError, ValueError) as e:
            raise ChannelError(f"Control request failed: {e}") from e
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

        if not line:
            raise ChannelError("Daemon closed the connection without replying")
        return decode_reply(line, reply_type)

    async def add(
        self,
        cron: str,
        command: str,
        args: list[str] | None = None,
        kind: JobKind = JobKind.COMMAND,
    ) -> str:
        """Register a job and return its ID."""
        reply = await self.request(
            AddRequest(cron=cron, kind=kind, command=command, args=args or []), AddReply
        )
        logger.debug(f"Added job {reply.id}")
        return reply.id

    async def delete(self, job_id: str) -> bool:
        """Delete a job. Returns False if it did not exist."""
        reply = await self.request(DeleteRequest(id=job_id), DeleteReply)
        return reply.found

    async def list_jobs(self) -> list[JobInfo]:
        """List all jobs."""
        reply = await self.request(ListRequest(), ListReply)
        return reply.jobs

    async def stop(self) -> None:
        """Ask the daemon to shut down."""
        await self.request(StopRequest(), StopReply)

    async def ping(self) -> PingReply:
        """Get the daemon's status."""
        return await self.request(PingRequest(), PingReply)
