import threading
from datetime import datetime

import pytest

from conftest import FakeClock, FakeWakeTimer
from sleep_well.controller import ControllerState
from sleep_well.daemon import build_runtime, run_daemon
from sleep_well.scheduler import ALARM_ID
from sleep_well.schema import AlarmSettings
from sleep_well.settings import Settings, settings
from sleep_well.store import JsonSettingsStore


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "data_dir", tmp_path)
    return Settings(data_dir=tmp_path, log_dir=tmp_path / "logs")


def test_saved_settings_reschedule_the_alarm(config, tmp_path):
    timer = FakeWakeTimer()
    store = JsonSettingsStore(tmp_path)
    runtime = build_runtime(
        config, store=store, clock=FakeClock(datetime(2024, 5, 6, 6, 0)), timer=timer
    )

    store.write_alarm_settings(AlarmSettings(is_enabled=True, alarm_hour=6, alarm_minute=30))
    assert timer.pending[ALARM_ID][0] == datetime(2024, 5, 6, 6, 30)

    store.update_alarm_settings(lambda s: s.model_copy(update={"is_enabled": False}))
    assert timer.pending == {}
    assert runtime.controller.state is ControllerState.IDLE


def test_settings_written_by_another_process_are_picked_up(config, tmp_path):
    timer = FakeWakeTimer()
    runtime = build_runtime(
        config, clock=FakeClock(datetime(2024, 5, 6, 6, 0)), timer=timer
    )
    runtime.store.read_alarm_settings()

    JsonSettingsStore(tmp_path).write_alarm_settings(AlarmSettings(is_enabled=True))

    assert runtime.store.refresh() == ["alarm_settings"]
    assert timer.pending[ALARM_ID][0] == datetime(2024, 5, 6, 7, 0)


def test_run_daemon_cleans_up_state_file(config):
    stop_event = threading.Event()
    stop_event.set()

    run_daemon(config, stop_event=stop_event)

    assert not settings.state_file.exists()
