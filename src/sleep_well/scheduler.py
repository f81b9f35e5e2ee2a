import threading
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from loguru import logger

from sleep_well.clock import Clock, SystemClock
from sleep_well.schema import AlarmSettings
from sleep_well.utils.time import next_occurrence

ALARM_ID = "sleep_well.alarm"


class ExactTimingDenied(Exception):
    """The timer facility refuses exact wake-ups."""


class WakeTimer(Protocol):
    def schedule_wake(
        self,
        at: datetime,
        callback_id: str,
        callback: Callable[[], None],
        exact: bool = True,
    ) -> None: ...

    def cancel_wake(self, callback_id: str) -> None: ...

    def cancel_all(self) -> None: ...


class _PendingWake:
    def __init__(
        self,
        at: datetime,
        callback: Callable[[], None],
        check_seconds: float,
        clock: Clock,
    ):
        self.at = at
        self.callback = callback
        self.check_seconds = check_seconds
        self.clock = clock
        self.cancelled = threading.Event()
        self.thread = threading.Thread(target=self._run, name="wake-timer", daemon=True)

    def _run(self):
        # Waits in slices and re-reads the clock so suspend/resume and clock
        # changes are noticed.
        while True:
            remaining = (self.at - self.clock.now()).total_seconds()
            if remaining <= 0:
                break
            if self.cancelled.wait(timeout=min(remaining, self.check_seconds)):
                return

        if self.cancelled.is_set():
            return
        try:
            self.callback()
        except Exception:
            logger.exception("Wake callback failed")


class ThreadWakeTimer:
    """
    In-process wake timer: one daemon thread per pending callback.

    Exact wakes re-check the clock every second. Inexact wakes re-check every
    ``inexact_check_seconds`` and may be late by up to that much after a
    suspend. Scheduling an id that is already pending replaces it.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        allow_exact: bool = True,
        exact_check_seconds: float = 1.0,
        inexact_check_seconds: float = 60.0,
    ):
        self.clock = clock or SystemClock()
        self.allow_exact = allow_exact
        self.exact_check_seconds = exact_check_seconds
        self.inexact_check_seconds = inexact_check_seconds
        self._lock = threading.Lock()
        self._pending: dict[str, _PendingWake] = {}

    def schedule_wake(
        self,
        at: datetime,
        callback_id: str,
        callback: Callable[[], None],
        exact: bool = True,
    ) -> None:
        if exact and not self.allow_exact:
            raise ExactTimingDenied("Exact wake-ups are not permitted")

        check_seconds = self.exact_check_seconds if exact else self.inexact_check_seconds

        def fire():
            with self._lock:
                if self._pending.get(callback_id) is wake:
                    del self._pending[callback_id]
            callback()

        wake = _PendingWake(at, fire, check_seconds, self.clock)
        with self._lock:
            previous = self._pending.pop(callback_id, None)
            if previous:
                previous.cancelled.set()
            self._pending[callback_id] = wake
        wake.thread.start()

    def cancel_wake(self, callback_id: str) -> None:
        with self._lock:
            wake = self._pending.pop(callback_id, None)
        if wake:
            wake.cancelled.set()

    def cancel_all(self) -> None:
        with self._lock:
            wakes = list(self._pending.values())
            self._pending.clear()
        for wake in wakes:
            wake.cancelled.set()


def next_fire_time(alarm: AlarmSettings, now: datetime) -> datetime:
    """Next alarm_hour:alarm_minute strictly after now."""
    return next_occurrence(alarm.alarm_hour, alarm.alarm_minute, now)


class AlarmScheduler:
    """Keeps at most one wake callback outstanding for the daily alarm."""

    def __init__(
        self,
        timer: WakeTimer,
        clock: Clock | None = None,
        exact: bool = True,
        on_wake: Callable[[], None] | None = None,
    ):
        self.timer = timer
        self.clock = clock or SystemClock()
        self.exact = exact
        self.on_wake = on_wake
        self._lock = threading.RLock()
        self._next_fire: datetime | None = None

    @property
    def next_fire(self) -> datetime | None:
        return self._next_fire

    @property
    def pending(self) -> bool:
        return self._next_fire is not None

    def schedule_alarm(self, alarm: AlarmSettings, now: datetime | None = None) -> datetime:
        """Replaces any pending wake with one at the next alarm time."""
        if now is None:
            now = self.clock.now()
        fire_at = next_fire_time(alarm, now)

        def fire():
            self._fire(fire_at)

        with self._lock:
            self.timer.cancel_wake(ALARM_ID)
            try:
                self.timer.schedule_wake(fire_at, ALARM_ID, fire, exact=self.exact)
            except ExactTimingDenied as e:
                logger.warning(f"Exact alarm denied ({e}); falling back to inexact timing.")
                self.timer.schedule_wake(fire_at, ALARM_ID, fire, exact=False)
            self._next_fire = fire_at

        logger.info(f"Alarm scheduled for {fire_at:%Y-%m-%d %H:%M}")
        return fire_at

    def cancel_alarm(self) -> None:
        """Removes the pending wake. Safe to call when nothing is pending."""
        with self._lock:
            self.timer.cancel_wake(ALARM_ID)
            if self._next_fire is not None:
                logger.info("Alarm cancelled.")
            self._next_fire = None

    def _fire(self, fire_at: datetime) -> None:
        with self._lock:
            if self._next_fire == fire_at:
                self._next_fire = None
        logger.info(f"Alarm fired (scheduled for {fire_at:%H:%M}).")
        if self.on_wake:
            self.on_wake()
