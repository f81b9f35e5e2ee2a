"""Lists the applications a user can pick for the lockout.

One policy only: running processes, one entry per process name, minus our own
process names and the desktop/system components that must never be blocked.
"""

import os
from collections.abc import Iterable

import psutil
from pydantic import BaseModel

# Blocking any of these would take down the session or the ability to recover it.
EXCLUDED_PROCESSES = frozenset(
    {
        "systemd",
        "init",
        "dbus-daemon",
        "dbus-broker",
        "Xorg",
        "Xwayland",
        "gnome-shell",
        "gnome-session-binary",
        "plasmashell",
        "kwin_x11",
        "kwin_wayland",
        "xfwm4",
        "xfce4-session",
        "mutter",
        "pipewire",
        "pulseaudio",
        "wireplumber",
        "gdm",
        "sddm",
        "lightdm",
        "polkitd",
        "NetworkManager",
        "xdg-desktop-portal",
    }
)


class AppInfo(BaseModel):
    app_id: str
    process_count: int = 1
    is_selected: bool = False


def list_selectable_apps(
    selected_apps: Iterable[str] = (),
    own_app_ids: Iterable[str] = (),
    include_system: bool = False,
) -> list[AppInfo]:
    """
    Returns selectable apps sorted by name.

    Selected apps that are not running are still listed so they can be
    deselected. Kernel threads (no executable) are always skipped.
    """
    selected = set(selected_apps)
    excluded = set(own_app_ids)
    if not include_system:
        excluded |= EXCLUDED_PROCESSES

    counts: dict[str, int] = {}
    own_pid = os.getpid()
    for proc in psutil.process_iter(["name", "exe"]):
        try:
            name = proc.info["name"]
            if proc.pid == own_pid or not name or not proc.info["exe"]:
                continue
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if name in excluded:
            continue
        counts[name] = counts.get(name, 0) + 1

    for name in selected:
        counts.setdefault(name, 0)

    return sorted(
        (
            AppInfo(app_id=name, process_count=count, is_selected=name in selected)
            for name, count in counts.items()
        ),
        key=lambda app: app.app_id.lower(),
    )
