"""Checks the desktop facilities SleepWell relies on before anything runs.

Each capability is reported as granted or missing. Required ones must be
present for a lockout to be enforced at all; the rest degrade it.
"""

import os
import shutil

import psutil
from pydantic import BaseModel

from sleep_well.utils.notifications import OVERLAY_TERMINALS


class Capability(BaseModel):
    title: str
    description: str
    is_granted: bool
    is_required: bool = True
    hint: str = ""


def has_x11_display(env: dict | None = None) -> bool:
    env = os.environ if env is None else env
    if env.get("XDG_SESSION_TYPE", "").lower() == "wayland":
        return False
    return bool(env.get("DISPLAY"))


def can_list_processes() -> bool:
    try:
        return any(True for _ in psutil.process_iter(["name"]))
    except psutil.Error:
        return False


def check_capabilities(env: dict | None = None) -> list[Capability]:
    overlay_terminal = next((t for t in OVERLAY_TERMINALS if shutil.which(t)), None)
    return [
        Capability(
            title="X11 display",
            description="Needed to see which window is in front.",
            is_granted=has_x11_display(env),
            hint="Log in to an X11 session; Wayland windows cannot be inspected.",
        ),
        Capability(
            title="Foreground window access",
            description="Reads the app in front so locked apps can be blocked.",
            is_granted=shutil.which("xdotool") is not None,
            hint="Install xdotool.",
        ),
        Capability(
            title="Process access",
            description="Lists and closes running apps.",
            is_granted=can_list_processes(),
        ),
        Capability(
            title="Block overlay",
            description="Covers the screen when a locked app is opened.",
            is_granted=overlay_terminal is not None,
            is_required=False,
            hint=f"Install one of: {', '.join(OVERLAY_TERMINALS)}.",
        ),
        Capability(
            title="Notifications",
            description="Shows the alarm and lockout notifications.",
            is_granted=shutil.which("notify-send") is not None,
            is_required=False,
            hint="Install libnotify-bin.",
        ),
    ]


def all_required_granted(capabilities: list[Capability]) -> bool:
    return all(c.is_granted for c in capabilities if c.is_required)
