import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger

from sleep_well.clock import Clock, SystemClock
from sleep_well.lock_state import is_app_locked, is_expired
from sleep_well.presenter import BlockPresenter
from sleep_well.probe import ForegroundProbe
from sleep_well.store import JsonSettingsStore


@dataclass
class MonitorSession:
    """Debounce state for the block surface. Only the monitor touches it."""

    last_blocked_app: str | None = None
    last_block_shown_at: datetime | None = None

    def reset(self) -> None:
        self.last_blocked_app = None
        self.last_block_shown_at = None


class ForegroundMonitor:
    """
    Polls the foreground app while a lock window is open and blocks locked apps.

    Runs as a single background thread. Each tick re-reads the lock state,
    samples the foreground app (bounded by ``probe_timeout``) and presents
    the block surface, at most once per ``cooldown`` for the same app. The
    loop ends on its own once the lock is observed expired, calling
    ``on_expired`` once, or when stop() is called.
    """

    def __init__(
        self,
        store: JsonSettingsStore,
        probe: ForegroundProbe,
        presenter: BlockPresenter,
        clock: Clock | None = None,
        on_expired: Callable[[], None] | None = None,
        poll_interval: float = 0.5,
        cooldown: float = 1.0,
        lookback: float = 2.0,
        probe_timeout: float = 1.0,
        own_app_ids: Iterable[str] = (),
    ):
        self.store = store
        self.probe = probe
        self.presenter = presenter
        self.clock = clock or SystemClock()
        self.on_expired = on_expired
        self.poll_interval = poll_interval
        self.cooldown = timedelta(seconds=cooldown)
        self.lookback = timedelta(seconds=lookback)
        self.probe_timeout = probe_timeout
        self.own_app_ids = frozenset(own_app_ids)

        self.session = MonitorSession()
        self._stop_event = threading.Event()
        # Guards presentation so that nothing is presented once stop() returns.
        self._present_lock = threading.RLock()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._pending_query: Future | None = None
        self._expired_signalled = False

    @property
    def running(self) -> bool:
        return (
            self._thread is not None
            and self._thread.is_alive()
            and not self._stop_event.is_set()
        )

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        """Starts the polling loop in a background thread."""
        if self.running:
            logger.warning("ForegroundMonitor is already running.")
            return

        self._stop_event.clear()
        self._expired_signalled = False
        self.session.reset()
        self._thread = threading.Thread(
            target=self._run, name="foreground-monitor", daemon=True
        )
        self._thread.start()

    def stop(self, wait: bool = True) -> None:
        """
        Stops the loop. Safe to call from any thread, including the loop's own.

        Nothing is presented once this returns, whether or not ``wait`` joins
        the loop thread.
        """
        with self._present_lock:
            already_stopped = self._stop_event.is_set()
            self._stop_event.set()
        if not already_stopped:
            logger.info("Stopping ForegroundMonitor...")

        thread = self._thread
        if (
            wait
            and thread
            and thread.is_alive()
            and thread is not threading.current_thread()
        ):
            thread.join(timeout=self.probe_timeout + self.poll_interval + 1.0)

    def _run(self) -> None:
        logger.info(
            f"Foreground monitor started (interval={self.poll_interval}s, "
            f"cooldown={self.cooldown.total_seconds()}s)."
        )
        try:
            while not self._stop_event.is_set():
                try:
                    if not self.tick():
                        break
                except Exception:
                    logger.exception("Error in foreground monitor tick")
                if self._stop_event.wait(timeout=self.poll_interval):
                    break
        finally:
            self._shutdown_executor()
            self.session.reset()
            logger.info("Foreground monitor stopped.")

    def tick(self) -> bool:
        """Runs one polling step. Returns False once the loop should end."""
        if self._stop_event.is_set():
            return False

        now = self.clock.now()
        try:
            state = self.store.read_lock_state()
        except Exception as e:
            logger.warning(f"Could not read lock state: {e}")
            return True

        if is_expired(state, now):
            logger.info("Lock window has expired.")
            with self._present_lock:
                self._stop_event.set()
            self._signal_expired()
            return False

        app_id = self._query_foreground(now)
        if app_id is None:
            return True

        if not is_app_locked(state, app_id, now):
            self.session.reset()
            return True

        if app_id in self.own_app_ids:
            return True

        if not self._cooldown_passed(app_id, now):
            return True

        with self._present_lock:
            if self._stop_event.is_set():
                return False
            logger.info(f"Blocking app: {app_id}")
            try:
                self.presenter.present(app_id)
            except Exception as e:
                logger.error(f"Failed to present block surface for {app_id}: {e}")
            self.session.last_blocked_app = app_id
            self.session.last_block_shown_at = now
        return True

    def _cooldown_passed(self, app_id: str, now: datetime) -> bool:
        if app_id != self.session.last_blocked_app:
            return True
        if self.session.last_block_shown_at is None:
            return True
        return now - self.session.last_block_shown_at >= self.cooldown

    def _query_foreground(self, now: datetime) -> str | None:
        """Asks the probe for the foreground app; any failure or overrun is None."""
        if self._pending_query is not None:
            if not self._pending_query.done():
                logger.debug("Previous foreground query still running; skipping.")
                return None
            self._pending_query = None

        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="foreground-probe"
            )

        future = self._executor.submit(
            self.probe.query_foreground_app, now - self.lookback, now
        )
        try:
            return future.result(timeout=self.probe_timeout)
        except FutureTimeout:
            logger.warning(
                f"Foreground query exceeded {self.probe_timeout}s; treating as unknown."
            )
            self._pending_query = future
            return None
        except Exception as e:
            logger.debug(f"Failed to get current foreground app: {e}")
            return None

    def _signal_expired(self) -> None:
        if self._expired_signalled:
            return
        self._expired_signalled = True
        if self.on_expired:
            self.on_expired()

    def _shutdown_executor(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self._pending_query = None
