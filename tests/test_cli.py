from datetime import datetime, timedelta

import shutil

import pytest
from typer.testing import CliRunner

from sleep_well.cli import app
from sleep_well.schema import AlarmSettings, LockState
from sleep_well.settings import settings
from sleep_well.store import JsonSettingsStore, StoreWriteError

runner = CliRunner()


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "data_dir", tmp_path)
    monkeypatch.setattr(settings, "log_dir", tmp_path / "logs")
    return tmp_path


@pytest.fixture
def store(data_dir):
    return JsonSettingsStore(data_dir)


def test_alarm_sets_time_and_duration(store):
    result = runner.invoke(app, ["alarm", "--at", "6:45am", "--duration", "20"])

    assert result.exit_code == 0, result.output
    assert "06:45" in result.output
    alarm = store.read_alarm_settings()
    assert (alarm.alarm_hour, alarm.alarm_minute) == (6, 45)
    assert alarm.lockout_duration_minutes == 20
    assert alarm.is_enabled is False


def test_alarm_rejects_duration_over_guardrail(store):
    result = runner.invoke(
        app, ["alarm", "--duration", str(settings.max_lockout_minutes + 1)]
    )

    assert result.exit_code == 1
    assert "guardrail" in result.output
    assert store.read_alarm_settings() == AlarmSettings()


def test_alarm_rejects_bad_time(store):
    result = runner.invoke(app, ["alarm", "--at", "25:99"])

    assert result.exit_code == 1
    assert store.read_alarm_settings() == AlarmSettings()


def test_alarm_rejects_zero_duration(store):
    result = runner.invoke(app, ["alarm", "--duration", "0"])

    assert result.exit_code == 1
    assert store.read_alarm_settings().lockout_duration_minutes == 30


def test_apps_add_and_remove(store):
    result = runner.invoke(app, ["apps", "--add", "steam,discord", "-a", "firefox"])
    assert result.exit_code == 0, result.output
    assert store.read_alarm_settings().selected_apps == {"steam", "discord", "firefox"}

    result = runner.invoke(app, ["apps", "--remove", "discord"])
    assert result.exit_code == 0, result.output
    assert "firefox, steam" in result.output
    assert store.read_alarm_settings().selected_apps == {"steam", "firefox"}


def test_enable_warns_without_apps(store):
    result = runner.invoke(app, ["enable"])

    assert result.exit_code == 0, result.output
    assert "No apps selected" in result.output
    assert store.read_alarm_settings().is_enabled


def test_disable_clears_active_lock(store):
    store.write_alarm_settings(AlarmSettings(is_enabled=True))
    start = datetime.now()
    store.write_lock_state(
        LockState(
            is_active=True,
            start_time=start,
            end_time=start + timedelta(minutes=30),
            locked_apps=frozenset({"steam"}),
        )
    )

    result = runner.invoke(app, ["disable"])

    assert result.exit_code == 0, result.output
    assert "Alarm disabled." in result.output
    assert store.read_alarm_settings().is_enabled is False
    assert store.read_lock_state() == LockState()


def test_status_reports_active_lockout(store):
    start = datetime.now()
    store.write_lock_state(
        LockState(
            is_active=True,
            start_time=start,
            end_time=start + timedelta(minutes=30),
            locked_apps=frozenset({"steam"}),
        )
    )

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0, result.output
    assert "Stopped" in result.output
    assert "LOCKOUT ACTIVE" in result.output
    assert "steam" in result.output


def test_status_without_lockout():
    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0, result.output
    assert "No lockout currently active." in result.output


def test_alarm_disable_reports_failed_lock_clear(store, monkeypatch):
    def fail(self, fn):
        raise StoreWriteError("disk full")

    monkeypatch.setattr(JsonSettingsStore, "update_lock_state", fail)

    result = runner.invoke(app, ["alarm", "--disable"])

    assert result.exit_code == 1
    assert "disk full" in result.output


@pytest.fixture
def desktop(monkeypatch):
    """An X11 session where every tool is installed unless listed in ``missing``."""
    missing = set()
    monkeypatch.setenv("DISPLAY", ":0")
    monkeypatch.delenv("XDG_SESSION_TYPE", raising=False)
    monkeypatch.setattr(
        shutil, "which", lambda name: None if name in missing else f"/usr/bin/{name}"
    )
    return missing


def test_check_passes_on_complete_desktop(desktop):
    result = runner.invoke(app, ["check"])

    assert result.exit_code == 0, result.output
    assert "All required capabilities are available." in result.output


def test_check_fails_without_xdotool(desktop):
    desktop.add("xdotool")

    result = runner.invoke(app, ["check"])

    assert result.exit_code == 1
    assert "Some required capabilities are missing." in result.output


def test_check_fails_on_wayland(desktop, monkeypatch):
    monkeypatch.setenv("XDG_SESSION_TYPE", "wayland")

    result = runner.invoke(app, ["check"])

    assert result.exit_code == 1


def test_optional_capabilities_do_not_fail_check(desktop):
    desktop.update({"notify-send", "kitty", "gnome-terminal", "konsole", "xfce4-terminal", "xterm"})

    result = runner.invoke(app, ["check"])

    assert result.exit_code == 0, result.output


def test_start_refuses_when_blocking_cannot_work(desktop):
    desktop.add("xdotool")

    result = runner.invoke(app, ["start"])

    assert result.exit_code == 1
    assert "--force" in result.output


def test_enable_warns_when_blocking_cannot_work(desktop, store):
    desktop.add("xdotool")

    result = runner.invoke(app, ["enable"])

    assert result.exit_code == 0, result.output
    assert "Locked apps cannot be blocked" in result.output
    assert store.read_alarm_settings().is_enabled
