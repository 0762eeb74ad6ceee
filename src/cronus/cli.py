"""Command-line interface for Cronus.

Cronus runs shell commands on cron schedules.

CONCEPTS:
---------
- DAEMON: The long-running process that owns the job set and runs jobs.
          Started with `cronus start` (or `cronus run` in the foreground).

- JOB:    A command plus arguments, triggered by a cron expression
          (e.g., "*/5 * * * *"). Jobs survive daemon restarts.

- SOCKET: Every other command talks to the daemon over a Unix socket at
          <path>/<name>.sock, so several daemons can run side by side.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn

import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from cronus import __version__
from cronus.config import Settings, settings
from cronus.control.client import ControlClient
from cronus.control.protocol import JobInfo
from cronus.cron.expression import describe, parse, upcoming
from cronus.cron.types import JobKind, utcnow
from cronus.daemon import daemonize, get_daemon_pid, run_daemon, wait_for_exit
from cronus.errors import (
    ChannelError,
    CronParseError,
    CronusError,
    DaemonNotRunningError,
    RequestRejectedError,
)

console = Console()

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, level: int | None = None) -> None:
    """Configure logging."""
    if level is None:
        level = logging.DEBUG if verbose else logging.WARNING
    fmt = "%(name)s: %(message)s" if verbose else "%(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=[RichHandler(rich_tracebacks=True, console=console, show_path=verbose)],
    )


def get_settings(args: argparse.Namespace) -> Settings:
    """Get settings with command-line overrides applied."""
    overrides: dict[str, Any] = {}
    if getattr(args, "name", None):
        overrides["name"] = args.name
    if getattr(args, "path", None):
        overrides["socket_dir"] = args.path
    if not overrides:
        return settings
    return Settings(**overrides)


def _client(args: argparse.Namespace) -> ControlClient:
    return ControlClient(get_settings(args).get_socket_path())


def _run_request(coro: Any) -> Any:
    """Run a control request, exiting with status 1 on failure."""
    try:
        return asyncio.run(coro)
    except DaemonNotRunningError as e:
        console.print(f"[red]Cronus is not running:[/red] {e}")
        sys.exit(1)
    except RequestRejectedError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except ChannelError as e:
        console.print(f"[red]Control channel error:[/red] {e}")
        sys.exit(1)


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def _format_time(moment: datetime | None) -> str:
    if moment is None:
        return "-"
    return moment.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _format_command(job: JobInfo) -> str:
    words = " ".join([job.command, *job.args])
    if job.kind == JobKind.COMMAND:
        return words
    return f"{job.kind.value}: {words}"


def _format_outcome(job: JobInfo) -> str:
    outcome = job.last_outcome
    if outcome is None:
        return "[dim]-[/dim]"
    if outcome.success:
        return f"[green]ok[/green] ({outcome.duration_ms:.0f}ms)"
    detail = f"exit {outcome.exit_code}" if outcome.exit_code is not None else outcome.status.value
    return f"[red]{outcome.status.value}[/red] ({detail})"


def _daemon_running(args: argparse.Namespace) -> bool:
    """Check whether a daemon answers on the control socket."""
    client = ControlClient(get_settings(args).get_socket_path(), timeout=2.0)
    try:
        asyncio.run(client.ping())
        return True
    except CronusError:
        return False


def cmd_start(args: argparse.Namespace) -> None:
    """Start the daemon, in the background with --detach."""
    config = get_settings(args)

    if _daemon_running(args):
        console.print(f"[yellow]Cronus is already running[/yellow] on {config.get_socket_path()}")
        sys.exit(1)

    if not args.detach:
        cmd_run(args)
        return

    log_file = config.get_log_file()
    console.print(f"[green]Starting Cronus in background[/green] ({config.name})")
    console.print(f"  Socket: {config.get_socket_path()}")
    console.print(f"  Log: {log_file}")
    console.print("  Stop with: [bold]cronus stop[/bold]")

    daemonize(log_file)

    # Now in the daemon process; stdout and stderr go to the log file
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
        force=True,
    )
    print(f"\n{'=' * 60}")
    print(f"Cronus {__version__} started at {datetime.now().isoformat()}")
    print(f"{'=' * 60}\n", flush=True)

    try:
        run_daemon(config)
    except CronusError as e:
        logger.error(f"Cronus failed to start: {e}")
        sys.exit(1)


def cmd_run(args: argparse.Namespace) -> None:
    """Run the daemon in the foreground."""
    config = get_settings(args)
    setup_logging(args.verbose, level=logging.DEBUG if args.verbose else logging.INFO)

    console.print(f"[bold]Starting Cronus[/bold] v{__version__} ({config.name})")
    console.print(f"  Socket: {config.get_socket_path()}")
    console.print(f"  Jobs: {config.get_storage_path()}")
    console.print("[dim]Press Ctrl+C to stop.[/dim]\n")

    try:
        run_daemon(config)
    except CronusError as e:
        console.print(f"[red]Cronus failed to start:[/red] {e}")
        sys.exit(1)
    except OSError as e:
        console.print(f"[red]Cannot bind control socket:[/red] {e}")
        sys.exit(1)

    console.print("[dim]Cronus stopped.[/dim]")


def cmd_stop(args: argparse.Namespace) -> None:
    """Stop the daemon and wait for it to exit."""
    config = get_settings(args)
    client = _client(args)

    async def _stop() -> int:
        status = await client.ping()
        await client.stop()
        return status.pid

    console.print(f"Stopping Cronus ({config.name})...")
    pid = _run_request(_stop())
    # The socket closes right away; the process exits once running jobs are drained
    if wait_for_exit(pid, config.shutdown_grace_seconds + 10):
        console.print("[green]Cronus stopped[/green]")
    else:
        console.print("[yellow]Cronus may still be shutting down[/yellow]")


def cmd_status(args: argparse.Namespace) -> None:
    """Show daemon status."""
    config = get_settings(args)
    client = ControlClient(config.get_socket_path(), timeout=5.0)

    try:
        status = asyncio.run(client.ping())
    except DaemonNotRunningError:
        if args.json:
            _print_json({"status": "stopped", "socket": str(config.get_socket_path())})
        else:
            console.print(f"[yellow]Cronus is not running[/yellow] ({config.get_socket_path()})")
            pid = get_daemon_pid(config.get_pid_file())
            if pid:
                console.print(f"  [dim]PID file names live process {pid}[/dim]")
        sys.exit(1)
    except ChannelError as e:
        console.print(f"[red]Control channel error:[/red] {e}")
        sys.exit(1)

    if args.json:
        _print_json(status.model_dump(mode="json"))
        return

    color = "green" if status.status == "running" else "yellow"
    console.print(f"[{color}]Cronus is {status.status}[/{color}] (PID {status.pid})")
    console.print(f"  Version: {status.version}")
    console.print(f"  Socket: {config.get_socket_path()}")
    console.print(f"  Jobs: {status.jobs} ({status.running} running)")
    console.print(f"  Scheduler: {status.scheduler}")
    console.print(f"  Uptime: {status.uptime_seconds:.0f}s")


def job_from_args(args: argparse.Namespace) -> tuple[JobKind, str, list[str]]:
    """Get the kind, command and arguments of a job from ``add`` options.

    With ``--script`` or ``--script-file`` every positional word is a
    script argument. Script paths are made absolute.

    Raises:
        CronusError: If neither a program nor a script was given.
    """
    positional = [args.command, *args.args] if args.command is not None else []
    if args.script is not None:
        return JobKind.SCRIPT, args.script, positional
    if args.script_file is not None:
        path = args.script_file.expanduser().resolve()
        return JobKind.SCRIPT_FILE, str(path), positional
    if args.command is None:
        raise CronusError("Give a program to run, --script or --script-file")
    return JobKind.COMMAND, args.command, list(args.args)


def cmd_add(args: argparse.Namespace) -> None:
    """Add a job."""
    try:
        parse(args.cron)
    except CronParseError as e:
        console.print(f"[red]Invalid cron expression:[/red] {e}")
        sys.exit(1)

    try:
        kind, command, job_args = job_from_args(args)
    except CronusError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    job_id = _run_request(_client(args).add(args.cron, command, job_args, kind))

    if args.json:
        _print_json({"id": job_id})
        return
    console.print(f"[green]Added job:[/green] {job_id}")


def cmd_delete(args: argparse.Namespace) -> None:
    """Delete a job."""
    found = _run_request(_client(args).delete(args.id))

    if args.json:
        _print_json({"id": args.id, "found": found})
        return
    if found:
        console.print(f"[green]Deleted:[/green] {args.id}")
    else:
        console.print(f"[yellow]No such job:[/yellow] {args.id}")


def cmd_list(args: argparse.Namespace) -> None:
    """List jobs."""
    jobs: list[JobInfo] = _run_request(_client(args).list_jobs())

    if args.json:
        _print_json([job.model_dump(mode="json") for job in jobs])
        return

    if not jobs:
        console.print("[yellow]No scheduled jobs.[/yellow]")
        return

    table = Table(title="Scheduled Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Cron", style="yellow")
    table.add_column("Command", style="white")
    table.add_column("Next Fire", style="blue")
    table.add_column("Last Fire", style="blue")
    table.add_column("Last Outcome")
    table.add_column("Running", style="magenta")

    for job in jobs:
        table.add_row(
            job.id,
            job.cron,
            _format_command(job),
            _format_time(job.next_fire),
            _format_time(job.last_fire),
            _format_outcome(job),
            "Yes" if job.running else "",
        )

    console.print(table)


def load_jobs_file(path: Path) -> list[dict[str, Any]]:
    """Load job definitions from a YAML file.

    The file holds a ``jobs`` list; each entry needs ``cron`` and
    ``command`` and may give ``args`` and ``kind`` (``command``,
    ``script`` or ``script_file``).

    Raises:
        CronusError: If the file is unreadable or not in that layout.
    """
    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except OSError as e:
        raise CronusError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise CronusError(f"Invalid YAML: {e}") from e

    if not isinstance(config, dict) or not isinstance(config.get("jobs"), list):
        raise CronusError(f"{path} must contain a 'jobs' list")
    return config["jobs"]


def cmd_import(args: argparse.Namespace) -> None:
    """Add every job defined in a YAML file."""
    path = Path(args.file)
    try:
        entries = load_jobs_file(path)
    except CronusError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if not entries:
        console.print("[yellow]No jobs defined in configuration[/yellow]")
        return

    client = _client(args)
    console.print(f"\n[bold]Importing {len(entries)} jobs from {path.name}[/bold]\n")

    async def _import() -> int:
        imported = 0
        for index, entry in enumerate(entries, start=1):
            if not isinstance(entry, dict) or not entry.get("cron") or not entry.get("command"):
                console.print(f"  [red]Skipping entry {index}:[/red] needs 'cron' and 'command'")
                continue
            job_args = [str(arg) for arg in entry.get("args") or []]
            try:
                kind = JobKind(entry.get("kind", JobKind.COMMAND))
            except ValueError:
                console.print(
                    f"  [red]Skipping entry {index}:[/red] unknown kind {entry['kind']!r}"
                )
                continue
            command = str(entry["command"])
            if kind == JobKind.SCRIPT_FILE:
                # Relative script paths are relative to the jobs file
                command = str((path.parent / Path(command).expanduser()).resolve())
            try:
                job_id = await client.add(str(entry["cron"]), command, job_args, kind)
            except RequestRejectedError as e:
                console.print(f"  [red]Skipping entry {index}:[/red] {e}")
                continue
            imported += 1
            console.print(f"  [green]✓[/green] {entry['command']} ({entry['cron']}) -> {job_id}")
        return imported

    imported = _run_request(_import())
    console.print(f"\n[green]Imported {imported} jobs[/green]")


def cmd_next(args: argparse.Namespace) -> None:
    """Show the upcoming triggers of a cron expression."""
    try:
        expr = parse(args.cron)
    except CronParseError as e:
        console.print(f"[red]Invalid cron expression:[/red] {e}")
        sys.exit(1)

    config = get_settings(args)
    moments = upcoming(expr, utcnow(), args.count, config.get_tz())

    if args.json:
        _print_json([moment.isoformat() for moment in moments])
        return

    console.print(f"[bold]{expr.source}[/bold]: {describe(expr)}")
    if not moments:
        console.print("[yellow]No upcoming triggers.[/yellow]")
    for moment in moments:
        console.print(f"  {moment.isoformat()}")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    output = argparse.ArgumentParser(add_help=False)
    output.add_argument(
        "-v", "--verbose", action="store_true",
        help="Show debug output",
    )
    output.add_argument(
        "--json", action="store_true",
        help="Print machine-readable JSON",
    )

    common = argparse.ArgumentParser(add_help=False, parents=[output])
    common.add_argument(
        "-n", "--name",
        help="Daemon name; selects the control socket (default: cronus)",
    )
    common.add_argument(
        "-p", "--path",
        type=Path,
        help="Directory of the control socket (default: /tmp)",
    )

    parser = argparse.ArgumentParser(
        prog="cronus",
        description="Scheduled task execution manager.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command_name", metavar="COMMAND")

    start_parser = subparsers.add_parser(
        "start", parents=[common], help="Start the Cronus daemon"
    )
    start_parser.add_argument(
        "-d", "--detach", action="store_true",
        help="Run in background as a daemon"
    )
    start_parser.set_defaults(func=cmd_start)

    run_parser = subparsers.add_parser(
        "run", parents=[common], help="Run the Cronus daemon in the foreground"
    )
    run_parser.set_defaults(func=cmd_run)

    stop_parser = subparsers.add_parser(
        "stop", parents=[common], help="Stop the Cronus daemon"
    )
    stop_parser.set_defaults(func=cmd_stop)

    status_parser = subparsers.add_parser(
        "status", parents=[common], help="Get Cronus daemon status"
    )
    status_parser.set_defaults(func=cmd_status)

    add_parser = subparsers.add_parser(
        "add",
        parents=[common],
        help="Add a job",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cronus add -c '*/5 * * * *' /usr/bin/backup --incremental
  cronus add -c '0 3 * * *' --script 'import shutil; shutil.rmtree("/tmp/cache")'
  cronus add -c '0 * * * *' --script-file ~/jobs/report.py team --weekly
""",
    )
    add_parser.add_argument(
        "-c", "--cron", required=True,
        help="Cron expression (e.g., '0 9 * * 1-5')"
    )
    script = add_parser.add_mutually_exclusive_group()
    script.add_argument(
        "-s", "--script", metavar="CODE",
        help="Python source to run instead of a program"
    )
    script.add_argument(
        "-f", "--script-file", metavar="PATH", type=Path,
        help="Python file to run instead of a program"
    )
    add_parser.add_argument("command", nargs="?", help="Program to run")
    add_parser.add_argument(
        "args", nargs=argparse.REMAINDER,
        help="Program arguments (script arguments with --script/--script-file)"
    )
    add_parser.set_defaults(func=cmd_add)

    delete_parser = subparsers.add_parser(
        "delete", parents=[common], help="Delete a job"
    )
    delete_parser.add_argument("-i", "--id", required=True, help="Job ID")
    delete_parser.set_defaults(func=cmd_delete)

    list_parser = subparsers.add_parser(
        "list", parents=[common], help="List jobs"
    )
    list_parser.set_defaults(func=cmd_list)

    import_parser = subparsers.add_parser(
        "import",
        parents=[common],
        help="Add jobs from a YAML file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""YAML file format:
  jobs:
    - cron: "*/5 * * * *"
      command: /usr/local/bin/sync-mail

    - cron: "0 3 * * SUN"
      command: /usr/bin/backup
      args: ["--full", "/home"]""",
    )
    import_parser.add_argument("file", help="Path to YAML file")
    import_parser.set_defaults(func=cmd_import)

    next_parser = subparsers.add_parser(
        "next", parents=[output], help="Preview the next triggers of a cron expression"
    )
    next_parser.add_argument("-c", "--cron", required=True, help="Cron expression")
    next_parser.add_argument(
        "-n", "--count", type=int, default=5,
        help="Number of triggers to show (default: 5)"
    )
    next_parser.set_defaults(func=cmd_next)

    return parser


def main() -> NoReturn:
    """Main entry point for the Cronus CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command_name is None:
        parser.print_help()
        sys.exit(0)

    if args.command_name not in ("run", "start"):
        setup_logging(args.verbose)

    args.func(args)
    sys.exit(0)


if __name__ == "__main__":
    main()
