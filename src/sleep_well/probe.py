import subprocess
from datetime import datetime
from typing import Protocol

import psutil
from loguru import logger


class ForegroundProbe(Protocol):
    def query_foreground_app(
        self, window_start: datetime, window_end: datetime
    ) -> str | None:
        """Returns the app in front during the window, or None if unknown."""
        ...


def safe_process_name(pid: int | None) -> str | None:
    if not pid:
        return None
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None


class XdotoolProbe:
    """
    Reads the focused X11 window's owning process through xdotool.

    The focused window is sampled at query time, which always falls inside
    the requested window; app ids are process names as reported by psutil.
    """

    def __init__(self, timeout: float = 1.0):
        self.timeout = timeout
        self._missing_tool_logged = False

    def get_foreground_pid(self) -> int | None:
        try:
            result = subprocess.run(
                ["xdotool", "getactivewindow", "getwindowpid"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            if not self._missing_tool_logged:
                logger.error("xdotool not found. Install xdotool to enable app blocking.")
                self._missing_tool_logged = True
            return None
        except subprocess.TimeoutExpired:
            logger.debug("xdotool timed out.")
            return None

        if result.returncode != 0:
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None

    def query_foreground_app(
        self, window_start: datetime, window_end: datetime
    ) -> str | None:
        return safe_process_name(self.get_foreground_pid())
