#!/usr/bin/env python3
"""
Small helpers shared by the fetcher, scheduler and CLI.
"""

from datetime import datetime, timezone
from typing import Optional


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string like "1.2s", "2m 30s" or "1h 5m"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        remaining_seconds = int(seconds % 60)
        return f"{minutes}m {remaining_seconds}s"
    else:
        hours = int(seconds // 3600)
        remaining_minutes = int((seconds % 3600) // 60)
        return f"{hours}h {remaining_minutes}m"


def truncate_string(text: Optional[str], max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, appending a suffix when cut."""
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)] + suffix


def format_timestamp(timestamp: Optional[int]) -> str:
    """Render a unix timestamp as an ISO-8601 UTC string, or '-' when missing."""
    if not timestamp:
        return "-"
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return str(timestamp)
