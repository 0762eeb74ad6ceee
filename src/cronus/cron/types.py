"""Type definitions for scheduled jobs.

This module defines the Pydantic models used for job definitions,
execution outcomes and the on-disk storage layout.
"""

import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr

from cronus.cron.expression import CronExpression, parse

# Storage format version for future migrations
STORAGE_VERSION = 1

# Maximum number of output characters kept on an outcome
OUTPUT_TAIL_CHARS = 500


def utcnow() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class OutcomeStatus(str, Enum):
    """How a job execution ended.

    Attributes:
        SUCCESS: The command exited with status 0.
        FAILED: The command exited with a nonzero status.
        LAUNCH_ERROR: The command could not be started.
        TIMED_OUT: The command exceeded the execution timeout and was killed.
        TERMINATED: The command was still running at shutdown and was killed.
    """

    SUCCESS = "success"
    FAILED = "failed"
    LAUNCH_ERROR = "launch_error"
    TIMED_OUT = "timed_out"
    TERMINATED = "terminated"


class JobKind(str, Enum):
    """What a job runs.

    Attributes:
        COMMAND: A program with arguments.
        SCRIPT: Python source run with the daemon's interpreter.
        SCRIPT_FILE: A Python file run with the daemon's interpreter.
    """

    COMMAND = "command"
    SCRIPT = "script"
    SCRIPT_FILE = "script_file"


class ExecutionOutcome(BaseModel):
    """Result of one execution of a job's command.

    Attributes:
        status: How the execution ended.
        exit_code: Process exit status, if the process ran.
        error: Failure reason for anything but a clean exit.
        started_at: When the process was launched.
        finished_at: When the outcome was recorded.
        duration_ms: Wall-clock duration in milliseconds.
        output: Tail of the combined stdout/stderr.
    """

    status: OutcomeStatus = Field(..., description="How the execution ended")
    exit_code: int | None = Field(default=None, description="Process exit status")
    error: str | None = Field(default=None, description="Failure reason")
    started_at: datetime = Field(default_factory=utcnow, description="Launch time")
    finished_at: datetime = Field(default_factory=utcnow, description="Completion time")
    duration_ms: float = Field(default=0, description="Duration in milliseconds")
    output: str = Field(default="", description="Tail of combined output")

    @property
    def success(self) -> bool:
        """Check whether the command ran and exited cleanly."""
        return self.status == OutcomeStatus.SUCCESS


class CronJob(BaseModel):
    """A scheduled command.

    Attributes:
        id: Unique job identifier, assigned at add time.
        cron: Cron expression source text.
        kind: What ``command`` holds.
        command: Program, script source or script path, depending on ``kind``.
        args: Ordered program or script arguments.
        created_at: Job creation timestamp.
        last_fire_at: When the job last became due, if ever.
        last_outcome: Outcome of the last finished execution.
        run_count: Number of executions started.
        running: Whether an execution is in flight. Never persisted.
    """

    id: str = Field(..., description="Unique job identifier")
    cron: str = Field(..., description="Cron expression (e.g., '0 9 * * *')")
    kind: JobKind = Field(default=JobKind.COMMAND, description="What the job runs")
    command: str = Field(..., min_length=1, description="Program, script or script path")
    args: list[str] = Field(default_factory=list, description="Program arguments")
    created_at: datetime = Field(default_factory=utcnow, description="Job creation timestamp")
    last_fire_at: datetime | None = Field(default=None, description="Last trigger time")
    last_outcome: ExecutionOutcome | None = Field(
        default=None,
        description="Outcome of the last finished execution",
    )
    run_count: int = Field(default=0, ge=0, description="Executions started")
    running: bool = Field(default=False, exclude=True, description="Execution in flight")

    _expression: CronExpression = PrivateAttr()

    def model_post_init(self, __context: Any) -> None:
        """Parse the cron text; an invalid expression invalidates the job."""
        self._expression = parse(self.cron)

    @property
    def expression(self) -> CronExpression:
        """Get the parsed cron expression."""
        return self._expression

    @property
    def reference_time(self) -> datetime:
        """Instant the next trigger is computed from."""
        return self.last_fire_at or self.created_at

    @property
    def argv(self) -> list[str]:
        """Get the full command line.

        Scripts run under the interpreter that runs the daemon.
        """
        if self.kind == JobKind.SCRIPT:
            return [sys.executable, "-c", self.command, *self.args]
        if self.kind == JobKind.SCRIPT_FILE:
            return [sys.executable, self.command, *self.args]
        return [self.command, *self.args]


class CronStorageData(BaseModel):
    """Root structure of the job storage file.

    Attributes:
        version: Storage format version.
        jobs: Stored jobs in insertion order.
    """

    version: int = Field(default=STORAGE_VERSION, description="Storage format version")
    jobs: list[CronJob] = Field(default_factory=list, description="Stored jobs")
