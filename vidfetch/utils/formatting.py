"""
Helper functions for formatting data into human-readable strings.
"""

from datetime import datetime
from typing import Optional


def format_duration(seconds: float) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 34m 12s').
    """
    s = int(seconds)
    hours, remainder = divmod(s, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def sanitize_url(url: str) -> str:
    """Drops the query string so tokens in URLs never reach the logs."""
    return url.split("?", 1)[0]


def format_timestamp(value: Optional[datetime]) -> str:
    """Formats an optional timestamp for display, using 'never' when unset."""
    if value is None:
        return "never"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def truncate(text: Optional[str], limit: int = 48) -> str:
    """Shortens text for table cells, marking the cut with an ellipsis."""
    if not text:
        return ""
    return text if len(text) <= limit else text[: limit - 1] + "…"
