"""Wire format for the control channel.

Every request and reply is one JSON object on its own line. Requests are
tagged by ``type``; replies carry ``ok`` and, on failure, ``error``:

    -> {"type": "add", "cron": "*/5 * * * *", "command": "echo", "args": ["hi"]}
    <- {"ok": true, "id": "3f2a..."}
    -> {"type": "add", "cron": "0 3 * * *", "kind": "script", "command": "print(1)"}
    <- {"ok": true, "id": "9c41..."}
    -> {"type": "delete", "id": "3f2a..."}
    <- {"ok": true, "found": true}
    -> {"type": "bogus"}
    <- {"ok": false, "error": "Invalid request: ..."}
"""

import json
from datetime import datetime
from typing import Annotated, Literal, TypeVar, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from cronus.cron.types import CronJob, ExecutionOutcome, JobKind
from cronus.errors import ChannelError, RequestRejectedError

# Longest accepted line, in bytes
MAX_MESSAGE_SIZE = 1024 * 1024


class AddRequest(BaseModel):
    """Register a new job."""

    type: Literal["add"] = "add"
    cron: str = Field(..., description="Cron expression")
    kind: JobKind = Field(default=JobKind.COMMAND, description="What the job runs")
    command: str = Field(..., description="Program, script or script path")
    args: list[str] = Field(default_factory=list, description="Program arguments")


class DeleteRequest(BaseModel):
    """Remove a job by ID."""

    type: Literal["delete"] = "delete"
    id: str = Field(..., description="Job ID")


class ListRequest(BaseModel):
    """List all jobs."""

    type: Literal["list"] = "list"


class StopRequest(BaseModel):
    """Shut the daemon down."""

    type: Literal["stop"] = "stop"


class PingRequest(BaseModel):
    """Check that the daemon is alive."""

    type: Literal["ping"] = "ping"


ControlRequest = Annotated[
    Union[AddRequest, DeleteRequest, ListRequest, StopRequest, PingRequest],
    Field(discriminator="type"),
]

_request_adapter: TypeAdapter[ControlRequest] = TypeAdapter(ControlRequest)


class JobInfo(BaseModel):
    """A job as shown to control clients.

    Attributes:
        id: Job ID.
        cron: Cron expression source text.
        kind: What the job runs.
        command: Program, script source or script path.
        args: Program arguments.
        created_at: Creation time.
        last_fire: When the job last became due.
        next_fire: Next trigger instant, if any.
        last_outcome: Outcome of the last finished execution.
        running: Whether an execution is in flight.
    """

    id: str
    cron: str
    kind: JobKind = JobKind.COMMAND
    command: str
    args: list[str] = Field(default_factory=list)
    created_at: datetime
    last_fire: datetime | None = None
    next_fire: datetime | None = None
    last_outcome: ExecutionOutcome | None = None
    running: bool = False

    @classmethod
    def from_job(cls, job: CronJob, next_fire: datetime | None) -> "JobInfo":
        """Build the client view of a job."""
        return cls(
            id=job.id,
            cron=job.cron,
            kind=job.kind,
            command=job.command,
            args=job.args,
            created_at=job.created_at,
            last_fire=job.last_fire_at,
            next_fire=next_fire,
            last_outcome=job.last_outcome,
            running=job.running,
        )


class ErrorReply(BaseModel):
    ok: Literal[False] = False
    error: str


class AddReply(BaseModel):
    ok: Literal[True] = True
    id: str


class DeleteReply(BaseModel):
    ok: Literal[True] = True
    found: bool


class ListReply(BaseModel):
    ok: Literal[True] = True
    jobs: list[JobInfo] = Field(default_factory=list)


class StopReply(BaseModel):
    ok: Literal[True] = True


class PingReply(BaseModel):
    """Daemon status.

    Attributes:
        status: "running", or "stopping" once shutdown is committed.
        pid: Daemon process ID.
        version: Daemon version.
        jobs: Number of registered jobs.
        running: Number of executions in flight.
        uptime_seconds: Seconds since the daemon started.
        scheduler: Scheduler loop state.
    """

    ok: Literal[True] = True
    status: str = "running"
    pid: int
    version: str
    jobs: int
    running: int
    uptime_seconds: float
    scheduler: str


Reply = Union[ErrorReply, AddReply, DeleteReply, ListReply, StopReply, PingReply]

ReplyT = TypeVar("ReplyT", bound=BaseModel)


def encode(message: BaseModel) -> bytes:
    """Serialize a request or reply as one line."""
    return message.model_dump_json().encode("utf-8") + b"\n"


def decode_request(line: bytes) -> ControlRequest:
    """Parse one request line.

    Raises:
        ChannelError: If the line is not a valid request.
    """
    try:
        return _request_adapter.validate_json(line.strip())
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
            for err in e.errors()
        )
        raise ChannelError(f"Invalid request: {details}") from e


def decode_reply(line: bytes, reply_type: type[ReplyT]) -> ReplyT:
    """Parse one reply line.

    Args:
        line: Raw reply line.
        reply_type: Expected reply model for the request that was sent.

    Raises:
        RequestRejectedError: If the daemon replied with an error.
        ChannelError: If the reply is malformed.
    """
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ChannelError(f"Malformed reply: {e}") from e

    if not isinstance(data, dict):
        raise ChannelError(f"Malformed reply: {data!r}")

    if data.get("ok") is False:
        raise RequestRejectedError(str(data.get("error") or "request failed"))

    try:
        return reply_type.model_validate(data)
    except ValidationError as e:
        raise ChannelError(f"Unexpected reply: {e}") from e
