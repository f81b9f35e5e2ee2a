import os
import subprocess
import time
from datetime import datetime
from pathlib import Path

import typer
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from sleep_well.apps import list_selectable_apps
from sleep_well.lock_state import INACTIVE, format_remaining, is_expired, remaining
from sleep_well.scheduler import next_fire_time
from sleep_well.schema import AlarmSettings
from sleep_well.settings import load_settings, settings
from sleep_well.store import JsonSettingsStore, StoreWriteError
from sleep_well.utils.logging import setup_logging
from sleep_well.utils.permissions import Capability, all_required_granted, check_capabilities
from sleep_well.utils.state import is_daemon_running, read_state
from sleep_well.utils.time import format_clock, format_duration_seconds, parse_time_string

app = typer.Typer(help="SleepWell - wake-up alarm that locks distracting apps")
console = Console()

SERVICE_NAME = "sleepwell.service"


def get_store() -> JsonSettingsStore:
    return JsonSettingsStore(settings.data_dir)


def process_apps_list(apps: list[str] | None) -> list[str]:
    """Processes a list of strings potentially containing commas into a clean list of app names."""
    if not apps:
        return []
    processed = []
    for a in apps:
        parts = [x.strip() for x in a.split(",") if x.strip()]
        processed.extend(parts)
    return processed


def with_changes(current: AlarmSettings, **changes) -> AlarmSettings:
    """Returns a validated copy of current with changes applied."""
    return AlarmSettings.model_validate({**current.model_dump(), **changes})


def print_alarm(alarm: AlarmSettings) -> None:
    table = Table(title="Alarm")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row(
        "Enabled",
        "[green]Yes[/green]" if alarm.is_enabled else "[red]No[/red]",
    )
    table.add_row("Alarm Time", f"{alarm.alarm_hour:02d}:{alarm.alarm_minute:02d}")
    table.add_row("Lockout Duration", format_duration_seconds(alarm.lockout_duration_minutes * 60))
    table.add_row(
        "Locked Apps", ", ".join(sorted(alarm.selected_apps)) or "None"
    )
    if alarm.is_enabled:
        next_fire = next_fire_time(alarm, datetime.now())
        table.add_row("Next Alarm", f"{next_fire:%a %d %b} {format_clock(next_fire)}")
    console.print(table)


def print_capabilities(capabilities: list[Capability]) -> None:
    table = Table(title="Capabilities")
    table.add_column("Capability", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Details", style="dim")
    for cap in capabilities:
        if cap.is_granted:
            status_text = "[green]✔ Granted[/green]"
        elif cap.is_required:
            status_text = "[red]✖ Missing[/red]"
        else:
            status_text = "[yellow]○ Missing[/yellow]"
        details = cap.description if cap.is_granted else f"{cap.description} {cap.hint}"
        table.add_row(cap.title, status_text, details.strip())
    console.print(table)


def update_alarm(store: JsonSettingsStore, **changes) -> AlarmSettings:
    try:
        return store.update_alarm_settings(lambda s: with_changes(s, **changes))
    except ValidationError as e:
        console.print(f"[red]Error:[/red] {e.errors()[0]['msg']}")
        raise typer.Exit(1) from None
    except StoreWriteError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


def clear_lock(store: JsonSettingsStore) -> None:
    try:
        store.update_lock_state(lambda s: INACTIVE if s.is_active else None)
    except StoreWriteError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


@app.command()
def alarm(
    at: str | None = typer.Option(None, "--at", "-t", help="Alarm time (e.g. 7am, 7:30am, 06:45)"),
    duration: int | None = typer.Option(
        None, "--duration", "-d", help="Lockout duration in minutes"
    ),
    enable: bool | None = typer.Option(
        None, "--enable/--disable", help="Turn the alarm on or off"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Set the alarm time and lockout duration."""
    setup_logging(verbose=verbose, log_to_file=False)
    store = get_store()
    changes = {}

    if at is not None:
        try:
            alarm_time = parse_time_string(at)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from None
        changes["alarm_hour"] = alarm_time.hour
        changes["alarm_minute"] = alarm_time.minute

    if duration is not None:
        if duration > settings.max_lockout_minutes:
            console.print(
                f"[red]Error:[/red] Lockout duration ({duration}m) exceeds the maximum "
                f"allowed ({settings.max_lockout_minutes}m). "
                "This is a guardrail to prevent runaway lockouts."
            )
            raise typer.Exit(1)
        changes["lockout_duration_minutes"] = duration

    if enable is not None:
        changes["is_enabled"] = enable

    current = update_alarm(store, **changes) if changes else store.read_alarm_settings()
    if enable is False:
        clear_lock(store)
    print_alarm(current)


@app.command()
def enable(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Turn the alarm on."""
    setup_logging(verbose=verbose, log_to_file=False)
    current = update_alarm(get_store(), is_enabled=True)
    if not current.selected_apps:
        console.print(
            "[yellow]Warning:[/yellow] No apps selected; the alarm will ring without a lockout. "
            "Use `sleepwell apps --add NAME`."
        )
    capabilities = check_capabilities()
    if not all_required_granted(capabilities):
        console.print(
            "[yellow]Warning:[/yellow] Locked apps cannot be blocked on this desktop yet. "
            "Run `sleepwell check` for details."
        )
    print_alarm(current)


@app.command()
def disable(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Turn the alarm off and end any active lockout."""
    setup_logging(verbose=verbose, log_to_file=False)
    store = get_store()
    current = update_alarm(store, is_enabled=False)
    clear_lock(store)
    console.print("[green]Alarm disabled.[/green]")
    print_alarm(current)


@app.command()
def apps(
    add: list[str] | None = typer.Option(
        None, "--add", "-a", help="Apps to lock (comma separated process names)"
    ),
    remove: list[str] | None = typer.Option(
        None, "--remove", "-r", help="Apps to stop locking (comma separated)"
    ),
    show_all: bool = typer.Option(
        False, "--all", help="Include desktop and system processes"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List running apps and choose which ones the alarm locks."""
    setup_logging(verbose=verbose, log_to_file=False)
    store = get_store()
    to_add = set(process_apps_list(add))
    to_remove = set(process_apps_list(remove))

    if to_add or to_remove:
        current = store.read_alarm_settings()
        selected = (set(current.selected_apps) | to_add) - to_remove
        current = update_alarm(store, selected_apps=selected)
        console.print(
            f"[green]Locked apps:[/green] {', '.join(sorted(current.selected_apps)) or 'None'}"
        )
        return

    current = store.read_alarm_settings()
    entries = list_selectable_apps(
        selected_apps=current.selected_apps,
        own_app_ids=settings.own_app_ids,
        include_system=show_all,
    )
    if not entries:
        console.print("[yellow]No apps found.[/yellow]")
        return

    table = Table(title="Apps")
    table.add_column("Locked", justify="center", style="green")
    table.add_column("App", style="magenta")
    table.add_column("Processes", justify="right", style="blue")
    for entry in entries:
        table.add_row(
            "✔" if entry.is_selected else "",
            entry.app_id,
            str(entry.process_count) if entry.process_count else "-",
        )
    console.print(table)


@app.command()
def config(
    poll_interval: float | None = typer.Option(
        None, "--poll", help="Seconds between foreground checks"
    ),
    cooldown: float | None = typer.Option(
        None, "--cooldown", help="Seconds before re-blocking the same app"
    ),
    kill: bool | None = typer.Option(
        None, "--kill/--no-kill", help="Close blocked apps when they come to the front"
    ),
    max_lockout_mins: int | None = typer.Option(
        None, "--max-lockout", "-m", help="Maximum lockout duration in minutes (guardrail)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure the daemon's monitoring behaviour."""
    setup_logging(verbose=verbose, log_to_file=False)
    current_settings = load_settings()

    if poll_interval is not None:
        if poll_interval <= 0:
            console.print("[red]Error:[/red] Poll interval must be positive.")
            raise typer.Exit(1)
        current_settings.poll_interval_seconds = poll_interval
    if cooldown is not None:
        if cooldown < 0:
            console.print("[red]Error:[/red] Cooldown cannot be negative.")
            raise typer.Exit(1)
        current_settings.cooldown_seconds = cooldown
    if kill is not None:
        current_settings.kill_blocked_apps = kill
    if max_lockout_mins is not None:
        if max_lockout_mins < 1:
            console.print("[red]Error:[/red] Maximum lockout duration must be at least 1 minute.")
            raise typer.Exit(1)
        current_settings.max_lockout_minutes = max_lockout_mins

    current_settings.save()

    table = Table(title="Current Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Poll Interval (s)", str(current_settings.poll_interval_seconds))
    table.add_row("Cooldown (s)", str(current_settings.cooldown_seconds))
    table.add_row("Close Blocked Apps", "Yes" if current_settings.kill_blocked_apps else "No")
    table.add_row("Max Lockout Duration (m)", str(current_settings.max_lockout_minutes))
    console.print(table)
    console.print("[green]Configuration saved![/green]")


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Check the daemon, the alarm and any active lockout."""
    setup_logging(verbose=verbose, log_to_file=False)
    store = get_store()

    console.print("[bold cyan]SleepWell - Status[/bold cyan]")
    running = is_daemon_running()
    status_text = (
        "[bold green]● Running[/bold green]" if running else "[bold red]○ Stopped[/bold red]"
    )
    console.print(f"Daemon Status: {status_text}")
    if running:
        state = read_state() or {}
        console.print(f"Daemon PID: [magenta]{state.get('pid')}[/magenta]")

    print_alarm(store.read_alarm_settings())

    lock = store.read_lock_state()
    now = datetime.now()
    if not is_expired(lock, now):
        console.print("\n[bold yellow]⚠️ LOCKOUT ACTIVE[/bold yellow]")
        console.print(f"Unlocks at: {format_clock(lock.end_time)}")
        console.print(format_remaining(remaining(lock, now)) or "Less than a minute remaining")
        console.print(f"Locked: [magenta]{', '.join(sorted(lock.locked_apps))}[/magenta]")
    else:
        console.print("\nNo lockout currently active.")

    if not running:
        console.print(
            "\n[dim]To start the daemon, run: [bold]sleepwell start[/bold] or use systemd.[/dim]"
        )


@app.command()
def check(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Check that this desktop supports blocking apps."""
    setup_logging(verbose=verbose, log_to_file=False)
    capabilities = check_capabilities()
    print_capabilities(capabilities)
    if not all_required_granted(capabilities):
        console.print("[red]Some required capabilities are missing.[/red]")
        raise typer.Exit(1)
    console.print("[green]All required capabilities are available.[/green]")


@app.command()
def start(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    daemonize: bool = typer.Option(
        False,
        "--daemonize",
        hidden=True,
        help="Internal flag for systemd to run the daemon directly.",
    ),
    force: bool = typer.Option(
        False, "--force", help="Start even if locked apps cannot be blocked"
    ),
) -> None:
    """Starts the SleepWell daemon using systemd."""
    setup_logging(verbose=verbose)

    capabilities = check_capabilities()
    if not all_required_granted(capabilities):
        missing = [c.title for c in capabilities if c.is_required and not c.is_granted]
        if daemonize or force:
            logger.warning(f"Starting without required capabilities: {', '.join(missing)}")
        else:
            print_capabilities(capabilities)
            console.print(
                "[red]Error:[/red] Locked apps cannot be blocked on this desktop. "
                "Fix the missing capabilities or pass --force."
            )
            raise typer.Exit(1)

    if daemonize:
        # Execution path for systemd: the daemon runs in the foreground.
        from sleep_well.daemon import run_daemon

        console.print("Daemon process started directly.")
        run_daemon()
        return

    service_file = Path(os.path.expanduser(f"~/.config/systemd/user/{SERVICE_NAME}"))
    if not service_file.exists():
        console.print(
            "[red]Error:[/red] systemd service file not found. "
            "Install it or run `sleepwell start --daemonize` directly."
        )
        raise typer.Exit(1)

    if is_daemon_running():
        console.print("[yellow]Daemon is already running.[/yellow]")
        return

    console.print("Daemon is not running. Attempting to start it via systemd...")

    try:
        subprocess.run(
            ["systemctl", "--user", "start", SERVICE_NAME],
            check=True,
            capture_output=True,
            text=True,
        )

        console.print("Waiting for daemon to initialize...")
        time.sleep(2)

        if is_daemon_running():
            console.print("[bold green]✔ Daemon started successfully via systemd.[/bold green]")
        else:
            console.print(
                "[bold red]✖ Error:[/bold red] Failed to start daemon. Check service "
                f"status with `systemctl --user status {SERVICE_NAME}` or logs with "
                f"`journalctl --user -u {SERVICE_NAME}`."
            )
    except FileNotFoundError:
        console.print(
            "[red]Error:[/red] `systemctl` command not found. "
            "This command requires a systemd-based OS."
        )
        raise typer.Exit(1)
    except subprocess.CalledProcessError as e:
        console.print("[red]Error starting systemd service:[/red]")
        console.print(f"[dim]{e.stderr}[/dim]")
        raise typer.Exit(1)


@app.callback()
def main():
    """
    SleepWell - a wake-up alarm that locks distracting apps for a while.

    Use 'alarm' to set the time, 'apps' to choose what gets locked,
    'enable' to arm it and 'start' to run the daemon.
    """


if __name__ == "__main__":
    app()
