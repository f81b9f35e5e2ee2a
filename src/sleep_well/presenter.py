import os
import subprocess
import threading
from collections.abc import Callable
from typing import Protocol

from loguru import logger

from sleep_well.clock import Clock, SystemClock
from sleep_well.lock_state import is_expired
from sleep_well.store import JsonSettingsStore
from sleep_well.utils.notifications import launch_overlay, send_notification
from sleep_well.utils.processes import kill_processes
from sleep_well.utils.time import format_clock


class BlockPresenter(Protocol):
    def present(self, app_id: str) -> None: ...


class _Presentation:
    """One blocking surface for one app, watching the lock on its own thread."""

    def __init__(self, app_id: str, overlay: subprocess.Popen | None):
        self.app_id = app_id
        self.overlay = overlay
        self.cancelled = threading.Event()
        self.thread: threading.Thread | None = None

    @property
    def overlay_alive(self) -> bool:
        return self.overlay is not None and self.overlay.poll() is None

    def close_overlay(self) -> None:
        if self.overlay_alive:
            self.overlay.terminate()
            try:
                self.overlay.wait(timeout=1)
            except subprocess.TimeoutExpired:
                self.overlay.kill()


class TerminalBlockPresenter:
    """
    Blocks an app by closing it and covering the screen with the overlay.

    Each presentation polls the stored lock state independently of the
    foreground monitor and calls ``on_expired`` exactly once when it sees
    the lock end. Presenting an app that is still being presented re-applies
    the block to the live presentation instead of opening a second one.
    """

    def __init__(
        self,
        store: JsonSettingsStore,
        clock: Clock | None = None,
        on_expired: Callable[[], None] | None = None,
        poll_seconds: float = 5.0,
        kill_blocked: bool = True,
        launch: Callable[[str], subprocess.Popen | None] = launch_overlay,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.on_expired = on_expired
        self.poll_seconds = poll_seconds
        self.kill_blocked = kill_blocked
        self.launch = launch
        self._lock = threading.Lock()
        self._presentations: dict[str, _Presentation] = {}

    def present(self, app_id: str) -> None:
        if self.kill_blocked:
            kill_processes([app_id], exclude_pids={os.getpid()})

        with self._lock:
            current = self._presentations.get(app_id)
            if current is not None:
                if not current.overlay_alive:
                    current.overlay = self.launch(app_id)
                return

            state = self.store.read_lock_state()
            unlock_at = format_clock(state.end_time) if state.end_time else "later"
            send_notification(
                f"{app_id} is locked",
                f"This app is locked until {unlock_at}.",
                urgency="critical",
            )
            presentation = _Presentation(app_id, self.launch(app_id))
            presentation.thread = threading.Thread(
                target=self._watch,
                args=(presentation,),
                name=f"block-{app_id}",
                daemon=True,
            )
            self._presentations[app_id] = presentation
        presentation.thread.start()

    def _watch(self, presentation: _Presentation) -> None:
        while not presentation.cancelled.wait(timeout=self.poll_seconds):
            try:
                state = self.store.read_lock_state()
            except Exception as e:
                logger.debug(f"Block surface could not read lock state: {e}")
                continue
            if is_expired(state, self.clock.now()):
                break

        with self._lock:
            if self._presentations.get(presentation.app_id) is presentation:
                del self._presentations[presentation.app_id]
        presentation.close_overlay()

        if presentation.cancelled.is_set():
            return
        logger.info(f"Lock ended; released block on {presentation.app_id}.")
        if self.on_expired:
            self.on_expired()

    @property
    def active_apps(self) -> set[str]:
        with self._lock:
            return set(self._presentations)

    def close(self) -> None:
        """Dismisses every presentation without reporting expiry."""
        with self._lock:
            presentations = list(self._presentations.values())
            self._presentations.clear()
        for presentation in presentations:
            presentation.cancelled.set()
            presentation.close_overlay()
