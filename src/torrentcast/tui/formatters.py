"""
Utility formatting functions for the TUI.
"""

from typing import Optional

SECONDS_PER_DAY = 86400


def format_seconds(seconds: float) -> str:
    """Format seconds into a human-readable time string."""
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours:d}h {minutes:02d}m {secs:02d}s"
    return f"{minutes:d}m {secs:02d}s"


def format_size(size_bytes: Optional[int]) -> str:
    """Format bytes into a human-readable size string."""
    if size_bytes is None:
        return "?"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{size:.2f} PB"


def format_speed(bytes_per_sec: float) -> str:
    return f"{format_size(int(bytes_per_sec))}/s"


def humanize_duration(seconds: float) -> str:
    """
    Describe a duration the way people say it ("a few seconds", "3 hours",
    "a month").
    """
    seconds = abs(seconds)
    minutes = seconds / 60
    hours = minutes / 60
    days = hours / 24

    if seconds < 45:
        return "a few seconds"
    if seconds < 90:
        return "a minute"
    if minutes < 45:
        return f"{round(minutes)} minutes"
    if minutes < 90:
        return "an hour"
    if hours < 22:
        return f"{round(hours)} hours"
    if hours < 36:
        return "a day"
    if days < 26:
        return f"{round(days)} days"
    if days < 45:
        return "a month"
    if days < 320:
        return f"{round(days / 30.4)} months"
    if days < 548:
        return "a year"
    return f"{round(days / 365)} years"


def format_runtime(seconds: int) -> str:
    """Exact seconds for the first five minutes, a rough duration afterwards."""
    if seconds > 300:
        return humanize_duration(seconds)
    return f"{seconds} seconds"


def format_estimate(seconds: Optional[float]) -> str:
    if not seconds:
        return "N/A"
    return humanize_duration(seconds)
