"""Configuration management for Cronus."""

from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Cronus config directory
CRONUS_DIR = Path.home() / ".cronus"
CRONUS_ENV_FILE = CRONUS_DIR / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CRONUS_",
        # Load from multiple locations (later files override earlier)
        # 1. ~/.cronus/.env (user config)
        # 2. .env in current directory (project-specific override)
        env_file=(str(CRONUS_ENV_FILE), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Daemon identity
    name: str = Field(
        default="cronus",
        description="Daemon name; the control socket is <socket_dir>/<name>.sock",
    )
    socket_dir: Path = Field(
        default=Path("/tmp"),
        description="Directory holding the control socket",
    )

    # Job storage
    storage_path: Path | None = Field(
        default=None,
        description="Path for job storage (default: ~/.cronus/jobs.json)",
    )

    # Scheduling
    timezone: str | None = Field(
        default=None,
        description="IANA zone cron expressions are evaluated in (default: local time)",
    )

    # Execution
    job_timeout_seconds: float | None = Field(
        default=None,
        description="Kill a job command after this many seconds (unset = no limit)",
    )
    shutdown_grace_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Time running jobs get to finish at shutdown before being killed",
    )

    # Service files
    pid_file: Path | None = Field(
        default=None,
        description="PID file for the daemon (default: ~/.cronus/<name>.pid)",
    )
    log_file: Path | None = Field(
        default=None,
        description="Log file for a daemonized process (default: ~/.cronus/logs/<name>.log)",
    )

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not value or "/" in value:
            raise ValueError("name must be non-empty and contain no '/'")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str | None) -> str | None:
        if value:
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"unknown timezone: {value}") from e
        return value or None

    def get_socket_path(self) -> Path:
        """Get the control socket path."""
        return self.socket_dir.expanduser() / f"{self.name}.sock"

    def get_storage_path(self) -> Path:
        """Get the job storage path, using default if not set."""
        if self.storage_path:
            return self.storage_path.expanduser()
        return CRONUS_DIR / "jobs.json"

    def get_pid_file(self) -> Path:
        """Get the PID file path, using default if not set."""
        if self.pid_file:
            return self.pid_file.expanduser()
        return CRONUS_DIR / f"{self.name}.pid"

    def get_log_file(self) -> Path:
        """Get the daemon log file path, using default if not set."""
        if self.log_file:
            return self.log_file.expanduser()
        return CRONUS_DIR / "logs" / f"{self.name}.log"

    def get_tz(self) -> tzinfo | None:
        """Get the scheduling zone, or None for local time."""
        return ZoneInfo(self.timezone) if self.timezone else None


# Global settings instance
settings = Settings()
