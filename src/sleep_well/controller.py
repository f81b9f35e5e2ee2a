import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from loguru import logger

from sleep_well.clock import Clock, SystemClock
from sleep_well.lock_state import INACTIVE, begin_lock, is_expired, remaining
from sleep_well.monitor import ForegroundMonitor
from sleep_well.scheduler import AlarmScheduler
from sleep_well.schema import AlarmSettings, LockState
from sleep_well.store import JsonSettingsStore, StoreWriteError
from sleep_well.utils.notifications import send_notification
from sleep_well.utils.time import format_clock


class ControllerState(str, Enum):
    IDLE = "IDLE"
    LOCKED = "LOCKED"


@dataclass(frozen=True)
class WakeFired:
    pass


@dataclass(frozen=True)
class SettingsChanged:
    settings: AlarmSettings


@dataclass(frozen=True)
class UserDisabled:
    pass


@dataclass(frozen=True)
class LockExpired:
    start_time: datetime | None = None


Event = WakeFired | SettingsChanged | UserDisabled | LockExpired

# Builds a monitor for a lock window; the argument is its expiry callback.
MonitorFactory = Callable[[Callable[[], None]], ForegroundMonitor]


class LockoutController:
    """
    Idle/Locked state machine driving the lockout lifecycle.

    All events go through dispatch(), which is serialized, so the wake
    callback, the monitor's expiry signal and a user disabling the alarm
    can arrive from different threads.
    """

    def __init__(
        self,
        store: JsonSettingsStore,
        scheduler: AlarmScheduler,
        monitor_factory: MonitorFactory,
        clock: Clock | None = None,
        notify: Callable[[str, str], None] = send_notification,
    ):
        self.store = store
        self.scheduler = scheduler
        self.monitor_factory = monitor_factory
        self.clock = clock or SystemClock()
        self.notify = notify
        self.state = ControllerState.IDLE
        self.monitor: ForegroundMonitor | None = None
        self._lock = threading.RLock()
        self._handlers = {
            WakeFired: self._on_wake,
            SettingsChanged: self._on_settings_changed,
            UserDisabled: self._on_user_disabled,
            LockExpired: self._on_lock_expired,
        }

    def dispatch(self, event: Event) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unknown event: {event!r}")
        with self._lock:
            logger.debug(f"Dispatching {event!r} in state {self.state.value}")
            handler(event)

    # --- Event handlers ---

    def _on_wake(self, event: WakeFired) -> None:
        alarm = self.store.read_alarm_settings()
        if not alarm.is_enabled:
            logger.info("Alarm fired while disabled; ignoring.")
            return

        now = self.clock.now()
        # Daily alarm: tomorrow's wake is armed before anything else.
        self.scheduler.schedule_alarm(alarm, now)

        if not is_expired(self.store.read_lock_state(), now):
            logger.warning("Alarm fired again during an active lock; ignoring.")
            return

        self._announce(alarm)

        if not alarm.selected_apps:
            logger.info("No apps selected; alarm rang without a lockout.")
            return

        lock = begin_lock(alarm, now)
        try:
            self.store.write_lock_state(lock)
        except StoreWriteError as e:
            logger.error(f"Lockout did not start, lock state was not saved: {e}")
            return

        logger.info(
            f"Lockout started until {lock.end_time:%H:%M:%S} "
            f"for {sorted(lock.locked_apps)}"
        )
        self._start_monitor(lock)

    def _on_settings_changed(self, event: SettingsChanged) -> None:
        if not event.settings.is_enabled:
            self._disable()
            return
        # A running lock keeps the apps and end time it started with.
        self.scheduler.schedule_alarm(event.settings)

    def _on_user_disabled(self, event: UserDisabled) -> None:
        self.store.update_alarm_settings(
            lambda s: s.model_copy(update={"is_enabled": False}) if s.is_enabled else None
        )
        self._disable()

    def _on_lock_expired(self, event: LockExpired) -> None:
        now = self.clock.now()

        def clear(state: LockState) -> LockState | None:
            if not state.is_active or not is_expired(state, now):
                return None
            if event.start_time is not None and state.start_time != event.start_time:
                return None
            return INACTIVE

        try:
            self.store.update_lock_state(clear)
        except StoreWriteError as e:
            # Readers still see the stored window as expired.
            logger.error(f"Failed to clear expired lock state: {e}")

        if self.state is ControllerState.LOCKED:
            self._stop_monitor()
            self.state = ControllerState.IDLE
            logger.info("Lockout finished.")
            self.notify("Lockout Finished", "You can now use your apps again.")

    # --- Transitions ---

    def _disable(self) -> None:
        self.scheduler.cancel_alarm()
        if self.state is ControllerState.LOCKED:
            logger.info("Alarm disabled; ending the active lockout.")
        try:
            self.store.update_lock_state(lambda s: INACTIVE if s.is_active else None)
        except StoreWriteError as e:
            logger.error(f"Failed to clear lock state while disabling: {e}")
            self.notify(
                "SleepWell Error",
                "The lockout was stopped but could not be cleared on disk.",
            )
            raise
        finally:
            self._stop_monitor()
            self.state = ControllerState.IDLE

    def _start_monitor(self, lock: LockState) -> None:
        self._stop_monitor()

        def on_expired():
            self.dispatch(LockExpired(start_time=lock.start_time))

        self.monitor = self.monitor_factory(on_expired)
        self.monitor.start()
        self.state = ControllerState.LOCKED

    def _stop_monitor(self) -> None:
        if self.monitor is not None:
            # The loop may be waiting on this lock to report expiry.
            self.monitor.stop(wait=False)
            self.monitor = None

    def _announce(self, alarm: AlarmSettings) -> None:
        if alarm.selected_apps:
            body = (
                f"Good morning! {len(alarm.selected_apps)} app(s) are locked for "
                f"{alarm.lockout_duration_minutes} minutes."
            )
        else:
            body = "Good morning! No apps are selected for lockout."
        self.notify("SleepWell Alarm", body)

    # --- Lifecycle ---

    def recover(self) -> None:
        """Re-arms the alarm and resumes or clears a lock left by a previous run."""
        with self._lock:
            now = self.clock.now()
            alarm = self.store.read_alarm_settings()
            if alarm.is_enabled:
                self.scheduler.schedule_alarm(alarm, now)

            lock = self.store.read_lock_state()
            if not lock.is_active:
                return
            if not alarm.is_enabled:
                logger.info("Clearing a lockout left behind after the alarm was disabled.")
                self.store.update_lock_state(lambda s: INACTIVE if s == lock else None)
                return
            if is_expired(lock, now):
                logger.info("Clearing a lockout that ended while the daemon was down.")
                self.store.update_lock_state(
                    lambda s: INACTIVE if s == lock else None
                )
                return

            logger.info(f"Resuming lockout until {format_clock(lock.end_time)}.")
            self._start_monitor(lock)

    def shutdown(self) -> None:
        """Stops monitoring and drops the pending wake without touching stored state."""
        with self._lock:
            self._stop_monitor()
            self.scheduler.cancel_alarm()

    def status(self) -> dict:
        with self._lock:
            now = self.clock.now()
            alarm = self.store.read_alarm_settings()
            lock = self.store.read_lock_state()
            next_fire = self.scheduler.next_fire
            active_lock = None
            if not is_expired(lock, now):
                active_lock = {
                    "start_time": lock.start_time.isoformat(),
                    "end_time": lock.end_time.isoformat(),
                    "locked_apps": sorted(lock.locked_apps),
                    "remaining_secs": int(remaining(lock, now).total_seconds()),
                }
            return {
                "state": self.state.value,
                "alarm_enabled": alarm.is_enabled,
                "next_alarm": next_fire.isoformat() if next_fire else None,
                "active_lock": active_lock,
            }
