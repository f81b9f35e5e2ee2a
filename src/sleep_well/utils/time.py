from datetime import datetime, time, timedelta


def parse_time_string(time_str: str) -> time:
    """Parses time strings like '7am', '7:30am', '07:00', '19:30'."""
    formats = ["%I%p", "%I:%M%p", "%H:%M", "%H:%M:%S"]
    cleaned = time_str.lower().replace(" ", "").replace(".", "")
    for fmt in formats:
        try:
            return datetime.strptime(cleaned, fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Could not parse time: {time_str}")


def next_occurrence(hour: int, minute: int, now: datetime) -> datetime:
    """
    Returns the next hour:minute (seconds zeroed) strictly after now.
    If today's slot is now or already past, the slot rolls to tomorrow.
    """
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def format_clock(moment: datetime | time) -> str:
    """Formats a wall-clock time as '7:05 AM'."""
    return moment.strftime("%I:%M %p").lstrip("0")


def format_duration_seconds(seconds: int) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 30m' or '45m').
    """
    minutes = seconds // 60
    if minutes == 0 and seconds > 0:  # Handle durations less than a minute
        return "<1m"
    elif minutes <= 60:
        return f"{minutes}m"
    else:
        hours = minutes // 60
        remaining_minutes = minutes % 60
        return f"{hours}h {remaining_minutes}m"
