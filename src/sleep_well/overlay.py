"""Full-screen terminal surface shown while a locked app is blocked.

Runs in its own process (``python -m sleep_well.overlay <app_id>``) and
watches the persisted lock state itself, exiting once the lock has ended.
"""

import sys
import time
from datetime import datetime

import pyfiglet
from rich.align import Align
from rich.console import Console, Group
from rich.text import Text

from sleep_well.lock_state import format_remaining, is_expired, remaining
from sleep_well.schema import LockState
from sleep_well.settings import settings
from sleep_well.store import JsonSettingsStore
from sleep_well.utils.time import format_clock


def render(
    app_id: str, state: LockState, now: datetime, height: int | None = None
) -> Align:
    font = pyfiglet.Figlet(font="block")
    art = Text(font.renderText("LOCKED"), style="bold red", justify="center")

    unlock_at = format_clock(state.end_time) if state.end_time else "soon"
    subtext = Text(
        f"\n{app_id} is locked until {unlock_at}.\n"
        f"{format_remaining(remaining(state, now))}\n\n"
        "Get up, stretch, and start your day.",
        justify="center",
        style="bold yellow",
    )
    return Align.center(Group(art, subtext), vertical="middle", height=height)


def display(app_id: str, store: JsonSettingsStore | None = None) -> None:
    """Redraws the overlay until the lock state is observed expired."""
    console = Console()
    store = store or JsonSettingsStore(settings.data_dir)

    while True:
        state = store.read_lock_state()
        now = datetime.now()
        if is_expired(state, now):
            break
        console.clear()
        console.print(render(app_id, state, now, height=console.height))
        time.sleep(settings.presenter_poll_seconds)

    console.clear()
    console.print(Align.center(Text("Lock ended. Welcome back!", style="bold green")))
    time.sleep(1)


if __name__ == "__main__":
    display(sys.argv[1] if len(sys.argv) > 1 else "This app")
