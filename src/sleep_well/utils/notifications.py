import shutil
import subprocess
import sys

from loguru import logger

from sleep_well.settings import settings

OVERLAY_TITLE = "SleepWell - App Locked"

# Terminal emulators the overlay can open in, in order of preference.
OVERLAY_TERMINALS = ("kitty", "gnome-terminal", "konsole", "xfce4-terminal", "xterm")


def send_notification(summary: str, body: str, urgency: str = "normal"):
    """Sends a desktop notification using notify-send."""
    logger.info(f"Sending notification: {summary} | {body}")
    cmd = [
        "notify-send",
        summary,
        body,
        "-a",
        settings.app_name,
        "-u",
        urgency,
        "-i",
        settings.icon_path,
    ]
    try:
        subprocess.run(cmd, check=False, timeout=5)
    except FileNotFoundError:
        logger.error("notify-send not found. Install libnotify-bin.")
    except Exception as e:
        logger.error(f"Failed to send notification: {e}")


def launch_overlay(app_id: str) -> subprocess.Popen | None:
    """Opens a fullscreen terminal running the block overlay for app_id."""
    script_cmd = [sys.executable, "-m", "sleep_well.overlay", app_id]

    # Try common terminals with fullscreen/maximize flags
    terminals = [
        ["kitty", "--start-as=fullscreen", "--title", OVERLAY_TITLE] + script_cmd,
        ["gnome-terminal", "--full-screen", "--wait", "--"] + script_cmd,
        ["konsole", "--fullscreen", "-e"] + script_cmd,
        ["xfce4-terminal", "--fullscreen", "--disable-server", "-x"] + script_cmd,
        # xterm is basic and might not render Rich colors well, but it's a fallback
        ["xterm", "-fullscreen", "-title", OVERLAY_TITLE, "-e"] + script_cmd,
    ]

    for cmd in terminals:
        if shutil.which(cmd[0]) is None:
            continue
        try:
            logger.info(f"Launching block overlay for {app_id} via {cmd[0]}")
            return subprocess.Popen(
                cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
        except OSError as e:
            logger.debug(f"Failed to launch terminal {cmd[0]}: {e}")

    logger.warning("No suitable terminal emulator found to show the block overlay.")
    return None
