"""CLI commands for pomodoro-log using Typer."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pomodoro_log import __version__
from pomodoro_log.core.config import get_config
from pomodoro_log.core.orchestrator import Orchestrator, run_daemon, write_control
from pomodoro_log.focus.state import TimerState, TimerType, badge_text
from pomodoro_log.history.utils import format_timezone_offset, timezone_offset

T = TypeVar("T")

# Initialize Typer app
app = typer.Typer(
    name="pomodoro-log",
    help="Pomodoro timer with a mergeable, timezone-aware session history.",
    add_completion=False,
)

console = Console()


def setup_logging(log_level: str, log_file: Path | None = None) -> None:
    """Configure logging for the application."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )

    # Reduce noise from external libraries
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def format_remaining(seconds: int | None) -> str:
    """Format seconds as MM:SS."""
    if seconds is None:
        return "-"
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes:02d}:{seconds:02d}"


def _run_with_orchestrator(fn: Callable[[Orchestrator], Awaitable[T]]) -> T:
    """Run ``fn`` against an in-process orchestrator without a background tick."""
    config = get_config()
    # A running daemon owns the tick; only reconcile when there is none
    reconcile = not Orchestrator.is_daemon_running(config)

    async def runner() -> T:
        orchestrator = Orchestrator(config)
        await orchestrator.start(tick=False, reconcile=reconcile)
        try:
            return await fn(orchestrator)
        finally:
            await orchestrator.stop()

    try:
        return asyncio.run(runner())
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _dispatch(message: dict[str, Any]) -> dict[str, Any]:
    async def send(orchestrator: Orchestrator) -> dict[str, Any]:
        return await orchestrator.dispatcher.dispatch(message)

    result = _run_with_orchestrator(send)
    if "error" in result:
        console.print(f"[red]Error: {result['error']}[/red]")
        raise typer.Exit(1)
    return result


def _print_timer(state: TimerState) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    status_color = {"running": "green", "paused": "yellow", "stopped": "red"}[state.timer_status.value]
    table.add_row("Status", f"[{status_color} bold]{state.timer_status.value.upper()}[/{status_color} bold]")
    table.add_row("Phase", state.timer_type.value if state.timer_type else "-")
    table.add_row("Remaining", format_remaining(state.remaining_time))
    table.add_row("Badge", badge_text(state) or "-")
    table.add_row("Sessions Today", str(state.sessions_today))
    table.add_row("Since Long Break", str(state.sessions_since_last_long_break))
    table.add_row(
        "Last Completed",
        state.last_completed_phase_type.value if state.last_completed_phase_type else "-",
    )

    console.print(Panel(table, title="Pomodoro Timer", border_style=status_color))


def _timer_command(action: str) -> None:
    """Forward to a running daemon, or run in-process."""
    config = get_config()
    pid = Orchestrator.get_daemon_pid(config)
    if pid is not None:
        write_control(config.control_file, {"action": action})
        console.print(f"[green]Sent {action} to daemon (PID: {pid})[/green]")
        return

    result = _dispatch({"action": action})
    _print_timer(TimerState.model_validate(result["state"]))


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        "-l",
        help="Log level (DEBUG, INFO, WARNING, ERROR)",
    ),
) -> None:
    """Pomodoro timer with a mergeable session history."""
    setup_logging(log_level)


@app.command()
def run(
    log_level: str = typer.Option("INFO", "--log-level", "-l", help="Daemon log level"),
) -> None:
    """Run the timer in the foreground; other commands are forwarded to it."""
    config = get_config()

    if Orchestrator.is_daemon_running(config):
        pid = Orchestrator.get_daemon_pid(config)
        console.print(f"[yellow]pomodoro-log is already running (PID: {pid}), via run or serve[/yellow]")
        raise typer.Exit(1)

    setup_logging(log_level, config.log_dir / "daemon.log")

    console.print("[green]Starting pomodoro-log in foreground...[/green]")
    console.print("Press Ctrl+C to stop\n")

    def announce(phase: TimerType, state: TimerState) -> None:
        console.print(
            f"\a[bold green]{phase.value} complete[/bold green] ({state.sessions_today} sessions today)"
        )

    try:
        asyncio.run(run_daemon(config, on_phase_complete=announce))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@app.command()
def toggle() -> None:
    """Pause if running, resume if paused, otherwise start the next phase."""
    _timer_command("toggleTimer")


@app.command()
def start(
    phase: TimerType = typer.Argument(TimerType.FOCUS, help="Phase to start"),
) -> None:
    """Start (or restart) a phase."""
    action = {
        TimerType.FOCUS: "startFocus",
        TimerType.SHORT_BREAK: "startShortBreak",
        TimerType.LONG_BREAK: "startLongBreak",
    }[phase]
    _timer_command(action)


@app.command()
def pause() -> None:
    """Pause the running phase."""
    _timer_command("pause")


@app.command()
def resume() -> None:
    """Resume the paused phase."""
    _timer_command("resume")


@app.command()
def stop() -> None:
    """Stop the current phase."""
    _timer_command("stop")


@app.command(name="reset-cycle")
def reset_cycle() -> None:
    """Reset long-break progress and start a fresh focus phase."""
    _timer_command("resetCycle")


@app.command()
def status() -> None:
    """Show the timer state and the next phase."""
    config = get_config()

    async def get_status(orchestrator: Orchestrator) -> tuple[dict[str, Any], dict[str, Any]]:
        current = await orchestrator.dispatcher.dispatch({"action": "getCurrentTimer"})
        next_phase = await orchestrator.dispatcher.dispatch({"action": "getNextPhaseInfo"})
        return current, next_phase

    current, next_phase = _run_with_orchestrator(get_status)
    _print_timer(TimerState.model_validate(current["state"]))
    console.print(f"Next phase: [bold]{next_phase['type']}[/bold]")

    pid = Orchestrator.get_daemon_pid(config)
    if pid is not None:
        console.print(f"[dim]Daemon running (PID: {pid})[/dim]")


@app.command()
def stats() -> None:
    """Show session counts and averages."""
    result = _dispatch({"action": "getHistoricalStats"})

    table = Table(title="Focus Sessions", show_header=True, header_style="bold cyan")
    table.add_column("Period")
    table.add_column("Count", justify="right")
    table.add_column("Average", justify="right")

    table.add_row("Today", str(result["daily"]), f"{result['daily_avg']:.2f}/day")
    table.add_row("This Week", str(result["weekly"]), f"{result['weekly_avg']:.2f}/week")
    table.add_row("This Month", str(result["monthly"]), f"{result['monthly_avg']:.2f}/month")

    console.print(table)


@app.command()
def history(
    days: int = typer.Option(14, "--days", "-d", min=1, help="Number of days to show"),
) -> None:
    """Show focus sessions per day."""
    result = _dispatch({"action": "getDailyGroups", "days": days})
    groups: dict[int, int] = result["groups"]

    if not any(groups.values()):
        console.print("[dim]No sessions recorded in this period[/dim]")
        return

    peak = max(groups.values())
    table = Table(title=f"Last {days} Days", show_header=True, header_style="bold cyan")
    table.add_column("Date")
    table.add_column("Sessions", justify="right")
    table.add_column("")

    for day_ms, count in sorted(groups.items()):
        day = datetime.fromtimestamp(day_ms / 1000).strftime("%a %Y-%m-%d")
        bar = "█" * round(20 * count / peak) if count else ""
        table.add_row(day, str(count), f"[red]{bar}[/red]")

    console.print(table)


@app.command()
def export(
    csv: bool = typer.Option(False, "--csv", help="Export as CSV instead of JSON"),
    output: Path = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout"),
) -> None:
    """Export the session history."""
    if csv:
        content = _dispatch({"action": "exportCsv"})["csv"]
    else:
        content = json.dumps(_dispatch({"action": "exportHistory"}))

    if output is None:
        typer.echo(content, nl=not csv)
        return

    output.write_text(content)
    console.print(f"[green]History exported to {output}[/green]")


@app.command(name="import")
def import_history(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Exported JSON history"),
) -> None:
    """Merge an exported history into the local one."""
    try:
        data = json.loads(file.read_text())
    except ValueError as e:
        console.print(f"[red]Error: {file} is not valid JSON: {e}[/red]")
        raise typer.Exit(1)

    result = _dispatch({"action": "importHistory", "data": data})
    console.print(f"[green]Imported {result['added']} new sessions[/green]")


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete the whole session history."""
    if not yes and not typer.confirm("Delete all recorded sessions?"):
        console.print("[yellow]Aborted[/yellow]")
        raise typer.Exit(1)

    async def backup_and_clear(orchestrator: Orchestrator) -> tuple[Path, dict[str, Any]]:
        backup_path = await orchestrator.db.backup()
        return backup_path, await orchestrator.dispatcher.dispatch({"action": "clearHistory"})

    backup_path, result = _run_with_orchestrator(backup_and_clear)
    if "error" in result:
        console.print(f"[red]Error: {result['error']}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]History cleared[/green] (backup: {backup_path})")


@app.command()
def dedup() -> None:
    """Remove duplicate session timestamps."""
    result = _dispatch({"action": "deduplicateHistory"})
    console.print(f"[green]Removed {result['removed']} duplicate sessions[/green]")


@app.command()
def settings(
    phase: TimerType = typer.Option(None, "--phase", "-p", help="Phase whose setting to change"),
    field: str = typer.Option(None, "--field", "-f", help="Field, e.g. duration or notifications.tab"),
    value: str = typer.Option(None, "--value", "-v", help="New value (JSON literal or string)"),
) -> None:
    """Show the timer settings, or change one field."""
    updating = any(option is not None for option in (phase, field, value))
    if updating and None in (phase, field, value):
        console.print("[red]--phase, --field and --value must be given together[/red]")
        raise typer.Exit(1)

    async def apply(orchestrator: Orchestrator) -> dict[str, Any]:
        if updating:
            try:
                parsed = json.loads(value)
            except ValueError:
                parsed = value
            await orchestrator.settings.update_setting(phase, field, parsed)
        return orchestrator.settings.get_settings().to_dict()

    current = _run_with_orchestrator(apply)

    table = Table(title="Timer Settings", show_header=True, header_style="bold cyan")
    table.add_column("Phase")
    table.add_column("Duration", justify="right")
    table.add_column("Sound")
    table.add_column("Notifications")
    table.add_column("Interval", justify="right")

    for timer_type in TimerType:
        phase_settings = current[timer_type.value]
        notifications = phase_settings["notifications"]
        enabled = [name for name in ("desktop", "tab") if notifications[name]]
        table.add_row(
            timer_type.value,
            f"{phase_settings['duration']} min",
            phase_settings["timer_sound"] or "-",
            ", ".join(enabled) or "-",
            str(phase_settings.get("interval", "")),
        )

    console.print(table)
    if updating:
        console.print(f"[green]Updated {phase.value}.{field}[/green]")


@app.command()
def config_show() -> None:
    """Show current configuration."""
    config = get_config()

    table = Table(title="pomodoro-log Configuration", show_header=True, header_style="bold cyan")
    table.add_column("Setting")
    table.add_column("Value")

    # Paths
    table.add_row("[bold]Paths[/bold]", "")
    table.add_row("  Data Directory", str(config.data_dir))
    table.add_row("  Log Directory", str(config.log_dir))
    table.add_row("  Config Directory", str(config.config_dir))
    table.add_row("  Database", str(config.db_path))

    # Timer defaults
    table.add_row("[bold]Timer Defaults[/bold]", "")
    table.add_row("  Focus", f"{config.timer.focus_minutes} min")
    table.add_row("  Short Break", f"{config.timer.short_break_minutes} min")
    table.add_row("  Long Break", f"{config.timer.long_break_minutes} min")
    table.add_row("  Long Break Interval", str(config.timer.long_break_interval))
    table.add_row("  Tick", f"{config.timer.tick_interval_seconds}s")

    # Web
    table.add_row("[bold]Web API[/bold]", "")
    table.add_row("  Enabled", str(config.web.enabled))
    table.add_row("  URL", f"http://{config.web.host}:{config.web.port}")

    table.add_row("[bold]Local Timezone[/bold]", "")
    table.add_row("  UTC Offset", f"UTC{format_timezone_offset(timezone_offset())}")

    console.print(table)


@app.command()
def serve(
    host: str = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: int = typer.Option(None, "--port", "-p", help="Port to bind to"),
) -> None:
    """Serve the command surface over HTTP."""
    config = get_config()

    if Orchestrator.is_daemon_running(config):
        pid = Orchestrator.get_daemon_pid(config)
        console.print(f"[yellow]pomodoro-log is already running (PID: {pid}), via run or serve[/yellow]")
        raise typer.Exit(1)

    # Use config values if not overridden
    host = host or config.web.host
    port = port or config.web.port

    console.print("[green]Starting pomodoro-log API...[/green]")
    console.print(f"Open [blue]http://{host}:{port}/docs[/blue] in your browser")
    console.print("Press Ctrl+C to stop\n")

    try:
        import uvicorn

        uvicorn.run(
            "pomodoro_log.web.app:create_app",
            host=host,
            port=port,
            factory=True,
            log_level="info",
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]API stopped[/yellow]")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"pomodoro-log v{__version__}")


if __name__ == "__main__":
    app()
