"""Control channel for a running daemon.

Example:
    from cronus.control import ControlClient

    client = ControlClient(settings.get_socket_path())
    job_id = await client.add("0 9 * * 1-5", "backup.sh", ["--full"])
"""

from cronus.control.client import ControlClient
from cronus.control.protocol import (
    AddRequest,
    DeleteRequest,
    JobInfo,
    ListRequest,
    PingReply,
    PingRequest,
    StopRequest,
)
from cronus.control.server import ControlServer

__all__ = [
    "ControlClient",
    "ControlServer",
    "AddRequest",
    "DeleteRequest",
    "ListRequest",
    "StopRequest",
    "PingRequest",
    "PingReply",
    "JobInfo",
]
