"""fanout CLI - Main entry point."""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from fanout import __version__
from fanout.aggregator import Summary, summarize
from fanout.config import CONFIG_FILE, build_config, get_config_dir, load_defaults
from fanout.coordinator import Coordinator, join_command
from fanout.errors import ConfigurationError, RoundError
from fanout.history import RunRecorder
from fanout.models import ExecutionResult, HostKeyPolicy
from fanout.remote.ssh import run_on_host

console = Console()
error_console = Console(stderr=True)

EXIT_FAILED = 1
EXIT_CONFIG = 2


def configure_logging(verbosity: int) -> None:
    """Send log records to stderr through rich.

    Args:
        verbosity: 0 for warnings, 1 for info, 2 or more for debug.
    """
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    handler = RichHandler(console=error_console, show_path=False, rich_tracebacks=True)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
    # paramiko's transport chatter is only useful when debugging
    logging.getLogger("paramiko").setLevel(logging.DEBUG if verbosity > 2 else logging.WARNING)


class OutputFormatter:
    """Handles output formatting for CLI."""

    def __init__(self, json_output: bool = False):
        self.json_output = json_output

    def print_round(
        self,
        command: str,
        results: list[ExecutionResult],
        error: Optional[RoundError] = None,
    ) -> None:
        """Print per-host results and the round summary."""
        summary = summarize(results)

        if self.json_output:
            data = {
                "command": command,
                "summary": {
                    "succeeded": summary.succeeded,
                    "total": summary.total,
                    "overall_succeeded": summary.overall_succeeded,
                },
                "results": [r.to_dict() for r in results],
                "error": str(error) if error else None,
            }
            console.print_json(json.dumps(data, default=str))
            return

        console.print("[bold]Execution Results:[/bold]")
        for result in results:
            self.print_result(result)
        self.print_summary(summary)

    def print_result(self, result: ExecutionResult) -> None:
        """Print one host's result."""
        status = "[green]✓[/green]" if result.succeeded else "[red]✗[/red]"
        duration = f" [dim]({result.duration:.2f}s)[/dim]" if result.duration is not None else ""
        console.print(f"{status} [cyan]{escape(result.host)}[/cyan]{duration}")

        if result.output:
            console.print(escape(result.output.rstrip("\n")), highlight=False)
        if result.diagnostic:
            console.print(f"[red]Error:[/red] {escape(result.diagnostic)}", highlight=False)
        console.print()

    def print_summary(self, summary: Summary) -> None:
        """Print the succeeded/total line."""
        style = "green" if summary.overall_succeeded else "red"
        console.print(f"[bold {style}]Summary: {summary}[/bold {style}]")

    def print_history(self, history: list[dict[str, Any]]) -> None:
        """Print recorded rounds."""
        if self.json_output:
            console.print_json(json.dumps(history, indent=2, default=str))
            return

        if not history:
            console.print("[yellow]No execution history found.[/yellow]")
            return

        table = Table(title="Execution History")
        table.add_column("Round", style="dim")
        table.add_column("Command", style="cyan")
        table.add_column("Mode", style="magenta")
        table.add_column("Result", style="bold")
        table.add_column("Duration")

        for entry in history:
            ok = entry.get("overall_succeeded")
            result = f"{entry.get('succeeded', '-')}/{entry.get('total', '-')}"
            result = f"[green]✓ {result}[/green]" if ok else f"[red]✗ {result}[/red]"

            duration = entry.get("duration", "-")
            if isinstance(duration, (int, float)):
                duration = f"{duration:.2f}s"

            table.add_row(
                str(entry.get("id", "-")),
                escape(entry.get("command", "-")),
                entry.get("mode", "-"),
                result,
                duration,
            )

        console.print(table)

    def print_error(self, message: str) -> None:
        """Print error message."""
        if self.json_output:
            error_console.print_json(json.dumps({"error": message}))
        else:
            error_console.print(f"[red]✗[/red] {escape(message)}")


def _split_hosts(values: tuple[str, ...]) -> list[str]:
    """Flatten repeated and comma separated --hosts values, keeping order."""
    hosts = []
    for value in values:
        hosts.extend(h.strip() for h in value.split(",") if h.strip())
    return hosts


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--config-dir", type=click.Path(file_okay=False), help="Custom configuration directory")
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v, -vv)")
@click.version_option(version=__version__, prog_name="fanout")
@click.pass_context
def cli(
    ctx: click.Context,
    json_output: bool,
    config_dir: Optional[str],
    verbose: int,
) -> None:
    """fanout - Distributed command execution over SSH.

    Run one shell command on many hosts and report per-host results.
    """
    configure_logging(verbose)

    ctx.ensure_object(dict)
    ctx.obj["formatter"] = OutputFormatter(json_output)
    ctx.obj["config_dir"] = Path(config_dir) if config_dir else get_config_dir()
    ctx.obj["logs_dir"] = ctx.obj["config_dir"] / "logs"

    # Ensure directories exist
    ctx.obj["logs_dir"].mkdir(parents=True, exist_ok=True)


@cli.command("run", context_settings={"allow_interspersed_args": False})
@click.argument("command", nargs=-1, required=True)
@click.option("--hosts", "-H", multiple=True, help="Target hosts (comma-separated, repeatable)")
@click.option("--user", "-u", default=None, help="SSH username (default: root)")
@click.option("--key", "-k", type=click.Path(), default=None, help="SSH private key path")
@click.option("--key-passphrase", default=None, envvar="FANOUT_KEY_PASSPHRASE", help="Private key passphrase")
@click.option("--password", "-p", default=None, envvar="FANOUT_PASSWORD", help="SSH password")
@click.option("--parallel/--sequential", "-P/-S", default=None, help="Run hosts concurrently (default) or in order")
@click.option("--max-workers", "-w", type=int, default=None, help="Maximum concurrent hosts")
@click.option("--port", type=int, default=None, help="SSH port when a host does not name one")
@click.option("--connect-timeout", type=float, default=None, help="Connect timeout in seconds")
@click.option("--timeout", "-T", type=float, default=None, help="Per-host time limit in seconds")
@click.option("--round-timeout", type=float, default=None, help="Time limit for the whole round in seconds")
@click.option("--insecure-host-keys", is_flag=True, help="Accept any host key without verification")
@click.option("--known-hosts", type=click.Path(), default=None, help="Extra known_hosts file")
@click.option("--no-history", is_flag=True, help="Do not record this round")
@click.pass_context
def run_command(
    ctx: click.Context,
    command: tuple[str, ...],
    hosts: tuple[str, ...],
    user: Optional[str],
    key: Optional[str],
    key_passphrase: Optional[str],
    password: Optional[str],
    parallel: Optional[bool],
    max_workers: Optional[int],
    port: Optional[int],
    connect_timeout: Optional[float],
    timeout: Optional[float],
    round_timeout: Optional[float],
    insecure_host_keys: bool,
    known_hosts: Optional[str],
    no_history: bool,
) -> None:
    """Execute COMMAND on multiple remote hosts.

    Use -- before the command if it starts with an option, e.g.
    fanout run -H web1,web2 -- ls -la /srv
    """
    formatter: OutputFormatter = ctx.obj["formatter"]
    command_line = join_command(command)

    try:
        defaults = load_defaults(ctx.obj["config_dir"] / CONFIG_FILE)
        config = build_config(
            _split_hosts(hosts),
            defaults,
            username=user,
            key_file=key,
            key_passphrase=key_passphrase,
            password=password,
            parallel=parallel,
            max_workers=max_workers,
            port=port,
            connect_timeout=connect_timeout,
            command_timeout=timeout,
            round_timeout=round_timeout,
            host_key_policy=HostKeyPolicy.ACCEPT_ANY if insecure_host_keys else None,
            known_hosts_file=known_hosts,
        )
        if config.host_key_policy == HostKeyPolicy.ACCEPT_ANY:
            logging.getLogger(__name__).warning(
                "Host key verification is disabled; any host key will be accepted"
            )

        recorder = None if no_history else RunRecorder(ctx.obj["logs_dir"])
        coordinator = Coordinator(runner=run_on_host, recorder=recorder)
        results, error = coordinator.execute(config, command_line)
    except ConfigurationError as e:
        formatter.print_error(f"Configuration error: {e}")
        sys.exit(EXIT_CONFIG)

    formatter.print_round(command_line, results, error)

    if error:
        sys.exit(EXIT_FAILED)


@cli.command("history")
@click.option("--limit", "-l", default=10, help="Number of entries to show")
@click.option("--command", "-c", "command_filter", default=None, help="Filter by command text")
@click.option("--failed", is_flag=True, help="Only rounds with failed hosts")
@click.option(
    "--prune",
    type=click.IntRange(min=0),
    default=None,
    metavar="DAYS",
    help="Delete round logs older than DAYS first",
)
@click.pass_context
def show_history(
    ctx: click.Context,
    limit: int,
    command_filter: Optional[str],
    failed: bool,
    prune: Optional[int],
) -> None:
    """Show recent execution rounds."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    recorder = RunRecorder(ctx.obj["logs_dir"])

    if prune is not None:
        deleted = recorder.cleanup_old_logs(max_age_days=prune)
        if not formatter.json_output:
            console.print(f"[dim]Deleted {deleted} old round log(s)[/dim]")

    history = recorder.get_history(limit=limit, command=command_filter, failed_only=failed)
    formatter.print_history(history)


@cli.command("show")
@click.argument("round_id", required=False)
@click.pass_context
def show_round(ctx: click.Context, round_id: Optional[str]) -> None:
    """Show per-host results of a recorded round (default: latest)."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    recorder = RunRecorder(ctx.obj["logs_dir"])

    data = recorder.get_round(round_id)
    if data is None:
        formatter.print_error(f"Round '{round_id}' not found" if round_id else "No rounds recorded")
        sys.exit(EXIT_FAILED)

    results = [ExecutionResult.from_dict(r) for r in data.get("results", [])]
    if not formatter.json_output:
        console.print(f"[bold]{escape(data.get('command', ''))}[/bold] [dim]({data.get('timestamp')})[/dim]")
    formatter.print_round(data.get("command", ""), results)


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
