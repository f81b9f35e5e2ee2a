import threading
import time
from datetime import datetime, timedelta

import pytest

from conftest import FakeClock, RecordingPresenter, ScriptedProbe
from sleep_well.monitor import ForegroundMonitor
from sleep_well.schema import LockState

START = datetime(2024, 5, 6, 7, 0, 0)
SOCIAL = "com.x.social"


@pytest.fixture
def locked_store(store):
    store.write_lock_state(
        LockState(
            is_active=True,
            start_time=START,
            end_time=START + timedelta(minutes=30),
            locked_apps=frozenset({SOCIAL, "steam"}),
        )
    )
    return store


def make_monitor(store, probe, clock, **kwargs):
    presenter = kwargs.pop("presenter", RecordingPresenter())
    options = dict(poll_interval=0.01, cooldown=1.0, lookback=2.0, probe_timeout=0.5)
    options.update(kwargs)
    return ForegroundMonitor(store, probe, presenter, clock=clock, **options), presenter


def test_presents_once_within_cooldown(locked_store):
    clock = FakeClock(START + timedelta(minutes=1))
    monitor, presenter = make_monitor(locked_store, ScriptedProbe(SOCIAL), clock)

    assert monitor.tick()
    clock.advance(milliseconds=500)
    assert monitor.tick()

    assert presenter.presented == [SOCIAL]


def test_presents_again_after_cooldown(locked_store):
    clock = FakeClock(START + timedelta(minutes=1))
    monitor, presenter = make_monitor(locked_store, ScriptedProbe(SOCIAL), clock)

    monitor.tick()
    clock.advance(milliseconds=500)
    monitor.tick()
    clock.advance(milliseconds=600)
    monitor.tick()

    assert presenter.presented == [SOCIAL, SOCIAL]
    assert monitor.session.last_blocked_app == SOCIAL
    assert monitor.session.last_block_shown_at == clock.now()


def test_switching_locked_apps_skips_cooldown(locked_store):
    clock = FakeClock(START + timedelta(minutes=1))
    monitor, presenter = make_monitor(locked_store, ScriptedProbe(SOCIAL, "steam"), clock)

    monitor.tick()
    clock.advance(milliseconds=100)
    monitor.tick()

    assert presenter.presented == [SOCIAL, "steam"]


def test_unlocked_app_resets_session(locked_store):
    clock = FakeClock(START + timedelta(minutes=1))
    probe = ScriptedProbe(SOCIAL, "org.calendar", SOCIAL)
    monitor, presenter = make_monitor(locked_store, probe, clock)

    monitor.tick()
    clock.advance(milliseconds=100)
    monitor.tick()
    assert monitor.session.last_blocked_app is None
    clock.advance(milliseconds=100)
    monitor.tick()

    assert presenter.presented == [SOCIAL, SOCIAL]


def test_own_app_is_never_blocked(store):
    store.write_lock_state(
        LockState(
            is_active=True,
            start_time=START,
            end_time=START + timedelta(minutes=30),
            locked_apps=frozenset({"sleepwell"}),
        )
    )
    clock = FakeClock(START)
    monitor, presenter = make_monitor(
        store, ScriptedProbe("sleepwell"), clock, own_app_ids=["sleepwell"]
    )

    assert monitor.tick()
    assert presenter.presented == []


def test_probe_failure_is_a_no_op_tick(locked_store):
    clock = FakeClock(START)
    probe = ScriptedProbe(PermissionError("usage access revoked"), None, SOCIAL)
    monitor, presenter = make_monitor(locked_store, probe, clock)

    assert monitor.tick()
    assert monitor.tick()
    assert presenter.presented == []
    assert monitor.tick()
    assert presenter.presented == [SOCIAL]


def test_probe_receives_lookback_window(locked_store):
    clock = FakeClock(START + timedelta(minutes=5))
    probe = ScriptedProbe(None)
    monitor, _ = make_monitor(locked_store, probe, clock)

    monitor.tick()

    assert probe.calls == [(clock.now() - timedelta(seconds=2), clock.now())]


def test_slow_probe_counts_as_unknown(locked_store):
    release = threading.Event()

    class SlowProbe:
        calls = 0

        def query_foreground_app(self, window_start, window_end):
            SlowProbe.calls += 1
            release.wait(timeout=5)
            return SOCIAL

    clock = FakeClock(START)
    monitor, presenter = make_monitor(locked_store, SlowProbe(), clock, probe_timeout=0.05)

    assert monitor.tick()
    # The overrunning query is still pending, so no new one is started.
    assert monitor.tick()
    assert SlowProbe.calls == 1
    assert presenter.presented == []

    release.set()
    time.sleep(0.1)
    assert monitor.tick()
    assert presenter.presented == [SOCIAL]


def test_presenter_failure_does_not_stop_monitoring(locked_store):
    class BrokenPresenter:
        calls = 0

        def present(self, app_id):
            BrokenPresenter.calls += 1
            raise RuntimeError("no overlay permission")

    clock = FakeClock(START)
    monitor, _ = make_monitor(
        locked_store, ScriptedProbe(SOCIAL), clock, presenter=BrokenPresenter()
    )

    assert monitor.tick()
    clock.advance(seconds=2)
    assert monitor.tick()
    assert BrokenPresenter.calls == 2


def test_expiry_scenario(locked_store):
    clock = FakeClock(datetime(2024, 5, 6, 7, 29, 59))
    expired = []
    monitor, presenter = make_monitor(
        locked_store, ScriptedProbe(SOCIAL), clock, on_expired=lambda: expired.append(1)
    )

    assert monitor.tick()
    assert presenter.presented == [SOCIAL]

    clock.set(datetime(2024, 5, 6, 7, 30, 1))
    assert not monitor.tick()
    assert not monitor.tick()

    assert presenter.presented == [SOCIAL]
    assert expired == [1]
    assert monitor.stopped


def test_inactive_lock_stops_immediately(store):
    clock = FakeClock(START)
    monitor, presenter = make_monitor(store, ScriptedProbe(SOCIAL), clock)

    assert not monitor.tick()
    assert presenter.presented == []


def test_loop_ends_within_one_interval_of_expiry(locked_store):
    clock = FakeClock(START + timedelta(minutes=29))
    expired = threading.Event()
    monitor, _ = make_monitor(
        locked_store, ScriptedProbe(None), clock, poll_interval=0.05, on_expired=expired.set
    )
    monitor.start()
    assert monitor.running

    clock.advance(minutes=1)
    assert expired.wait(timeout=0.5)
    monitor._thread.join(timeout=0.5)
    assert not monitor._thread.is_alive()


def test_no_presentation_after_stop_returns(locked_store):
    clock = FakeClock(START)
    presenter = RecordingPresenter()
    monitor, _ = make_monitor(
        locked_store, ScriptedProbe(SOCIAL), clock, cooldown=0.0, presenter=presenter
    )
    monitor.start()
    deadline = time.time() + 2
    while not presenter.presented and time.time() < deadline:
        time.sleep(0.01)

    stopper = threading.Thread(target=monitor.stop)
    stopper.start()
    stopper.join()
    count = len(presenter.presented)
    time.sleep(0.1)

    assert count > 0
    assert len(presenter.presented) == count
    assert not monitor.running


def test_stop_is_idempotent(locked_store):
    monitor, _ = make_monitor(locked_store, ScriptedProbe(None), FakeClock(START))
    monitor.stop()
    monitor.start()
    monitor.stop()
    monitor.stop()
    assert not monitor.running


def test_stop_without_wait_returns_while_expiry_callback_blocks(locked_store):
    gate = threading.Lock()
    gate.acquire()
    entered = threading.Event()

    def on_expired():
        entered.set()
        with gate:
            pass

    clock = FakeClock(START + timedelta(minutes=31))
    monitor, _ = make_monitor(
        locked_store, ScriptedProbe(None), clock, poll_interval=0.05, on_expired=on_expired
    )
    monitor.start()
    assert entered.wait(timeout=1)

    started = time.monotonic()
    monitor.stop(wait=False)
    assert time.monotonic() - started < 0.5
    assert monitor.stopped

    gate.release()
    monitor._thread.join(timeout=1)
    assert not monitor._thread.is_alive()
