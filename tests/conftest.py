import threading
from datetime import datetime, timedelta

import pytest

from sleep_well.scheduler import ExactTimingDenied
from sleep_well.store import JsonSettingsStore


class FakeClock:
    def __init__(self, now: datetime):
        self._now = now
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, now: datetime) -> None:
        with self._lock:
            self._now = now

    def advance(self, **kwargs) -> None:
        with self._lock:
            self._now += timedelta(**kwargs)


class ScriptedProbe:
    """Returns the scripted foreground apps in order, repeating the last one."""

    def __init__(self, *apps):
        self.apps = list(apps)
        self.calls = []

    def query_foreground_app(self, window_start, window_end):
        self.calls.append((window_start, window_end))
        app = self.apps.pop(0) if len(self.apps) > 1 else self.apps[0]
        if isinstance(app, Exception):
            raise app
        return app


class RecordingPresenter:
    def __init__(self):
        self.presented = []

    def present(self, app_id):
        self.presented.append(app_id)


class FakeWakeTimer:
    def __init__(self, allow_exact=True):
        self.allow_exact = allow_exact
        self.pending = {}

    def schedule_wake(self, at, callback_id, callback, exact=True):
        if exact and not self.allow_exact:
            raise ExactTimingDenied("denied in test")
        self.pending[callback_id] = (at, callback, exact)

    def cancel_wake(self, callback_id):
        self.pending.pop(callback_id, None)

    def cancel_all(self):
        self.pending.clear()

    def fire(self, callback_id):
        _, callback, _ = self.pending.pop(callback_id)
        callback()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 6, 6, 0, 0))


@pytest.fixture
def store(tmp_path):
    return JsonSettingsStore(tmp_path)
