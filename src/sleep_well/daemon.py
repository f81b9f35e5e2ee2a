import signal
import threading
from dataclasses import dataclass

from loguru import logger
from pydantic import BaseModel
from rich.console import Console

from sleep_well.clock import Clock, SystemClock
from sleep_well.controller import LockExpired, LockoutController, SettingsChanged, WakeFired
from sleep_well.monitor import ForegroundMonitor
from sleep_well.presenter import TerminalBlockPresenter
from sleep_well.probe import ForegroundProbe, XdotoolProbe
from sleep_well.scheduler import AlarmScheduler, ThreadWakeTimer, WakeTimer
from sleep_well.settings import Settings, load_settings
from sleep_well.store import ALARM_SETTINGS, JsonSettingsStore
from sleep_well.utils.state import cleanup_state, write_state

console = Console()


@dataclass
class Runtime:
    store: JsonSettingsStore
    timer: WakeTimer
    scheduler: AlarmScheduler
    presenter: TerminalBlockPresenter
    controller: LockoutController


def build_runtime(
    config: Settings,
    store: JsonSettingsStore | None = None,
    clock: Clock | None = None,
    probe: ForegroundProbe | None = None,
    timer: WakeTimer | None = None,
) -> Runtime:
    """Wires the store, scheduler, presenter and controller together."""
    clock = clock or SystemClock()
    store = store or JsonSettingsStore(config.data_dir)
    probe = probe or XdotoolProbe(timeout=config.probe_timeout_seconds)
    timer = timer or ThreadWakeTimer(
        clock=clock, inexact_check_seconds=config.inexact_slack_seconds
    )
    scheduler = AlarmScheduler(timer, clock=clock, exact=config.exact_alarms)
    presenter = TerminalBlockPresenter(
        store,
        clock=clock,
        poll_seconds=config.presenter_poll_seconds,
        kill_blocked=config.kill_blocked_apps,
    )

    def make_monitor(on_expired) -> ForegroundMonitor:
        return ForegroundMonitor(
            store,
            probe,
            presenter,
            clock=clock,
            on_expired=on_expired,
            poll_interval=config.poll_interval_seconds,
            cooldown=config.cooldown_seconds,
            lookback=config.lookback_seconds,
            probe_timeout=config.probe_timeout_seconds,
            own_app_ids=config.own_app_ids,
        )

    controller = LockoutController(store, scheduler, make_monitor, clock=clock)
    scheduler.on_wake = lambda: controller.dispatch(WakeFired())
    presenter.on_expired = lambda: controller.dispatch(LockExpired())

    def on_store_change(record: str, value: BaseModel) -> None:
        if record == ALARM_SETTINGS:
            controller.dispatch(SettingsChanged(value))

    store.add_listener(on_store_change)
    return Runtime(store, timer, scheduler, presenter, controller)


def run_daemon(config: Settings | None = None, stop_event: threading.Event | None = None):
    """Main loop for the lockout daemon."""
    config = config or load_settings()
    stop_event = stop_event or threading.Event()
    runtime = build_runtime(config)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}.")
        stop_event.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, handle_signal)

    console.print("[bold green]SleepWell daemon started...[/bold green]")
    console.print(f"Data directory: [cyan]{config.data_dir}[/cyan]")

    try:
        runtime.controller.recover()
        write_state(runtime.controller.status())

        while not stop_event.wait(timeout=config.daemon_refresh_seconds):
            try:
                # Settings edited through the CLI arrive as file changes.
                runtime.store.refresh()
                write_state(runtime.controller.status())
            except Exception:
                logger.exception("Error in daemon loop")
    except KeyboardInterrupt:
        pass
    finally:
        console.print("\n[yellow]Stopping daemon...[/yellow]")
        runtime.controller.shutdown()
        runtime.timer.cancel_all()
        runtime.presenter.close()
        cleanup_state()
