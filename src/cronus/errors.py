"""Exception types shared across Cronus.

Execution failures of scheduled commands are not exceptions: they are
recorded as outcomes on the job. The classes below cover everything that
can go wrong around the scheduling engine itself.
"""


class CronusError(Exception):
    """Base class for all Cronus errors."""


class CronParseError(CronusError, ValueError):
    """A cron expression or job command could not be parsed.

    Attributes:
        text: The offending input.
        field: Name of the cron field that failed, if any.
    """

    def __init__(self, message: str, text: str = "", field: str | None = None) -> None:
        super().__init__(message)
        self.text = text
        self.field = field


class JobNotFoundError(CronusError, KeyError):
    """No job with the requested ID exists."""

    def __init__(self, job_id: str) -> None:
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Job not found: {self.job_id}"


class RegistryStorageError(CronusError):
    """The durable job store could not be read or written."""


class StorageCorruptError(RegistryStorageError):
    """The durable job store exists but holds invalid data."""


class ChannelError(CronusError):
    """A control channel request or reply was malformed or lost."""


class DaemonNotRunningError(ChannelError):
    """No daemon is listening on the control socket."""


class DaemonAlreadyRunningError(CronusError):
    """Another daemon is already listening on the control socket."""


class RequestRejectedError(ChannelError):
    """The daemon answered a control request with an error reply."""
