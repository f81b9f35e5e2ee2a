"""Expiry rules for lock windows.

Everything here is a pure function of a ``LockState`` and a point in time.
Callers pass ``now`` explicitly on every check; nothing is cached.
"""

from datetime import datetime, timedelta

from sleep_well.schema import AlarmSettings, LockState

INACTIVE = LockState()


def is_expired(state: LockState, now: datetime) -> bool:
    return not state.is_active or now >= state.end_time


def remaining(state: LockState, now: datetime) -> timedelta:
    """Time left in the window, zero once expired."""
    if is_expired(state, now):
        return timedelta(0)
    return max(timedelta(0), state.end_time - now)


def is_app_locked(state: LockState, app_id: str, now: datetime) -> bool:
    return not is_expired(state, now) and app_id in state.locked_apps


def begin_lock(settings: AlarmSettings, now: datetime) -> LockState:
    """Opens a window at ``now`` that snapshots the currently selected apps."""
    return LockState(
        is_active=True,
        start_time=now,
        end_time=now + timedelta(minutes=settings.lockout_duration_minutes),
        locked_apps=frozenset(settings.selected_apps),
    )


def format_remaining(delta: timedelta) -> str:
    """
    Formats the time left as '1h 5m remaining' or '12m remaining'.
    Returns an empty string when nothing is left.
    """
    if delta <= timedelta(0):
        return ""
    minutes = int(delta.total_seconds()) // 60
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m remaining"
    return f"{minutes}m remaining"
