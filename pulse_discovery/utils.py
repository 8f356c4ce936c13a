"""Utility functions for discovery and backup analysis."""

import fnmatch
import time
from datetime import datetime, timezone
from typing import Any, List, Optional

SECONDS_PER_DAY = 24 * 60 * 60


def format_bytes(bytes_value: Optional[int]) -> str:
    """Convert bytes to human-readable format.

    Args:
        bytes_value: Size in bytes

    Returns:
        Formatted string (e.g., "32.00 GB")
    """
    if bytes_value is None:
        return "N/A"

    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_value < 1024.0:
            return f"{bytes_value:.2f} {unit}"
        bytes_value /= 1024.0
    return f"{bytes_value:.2f} PB"


def parse_tags(tags_str: Optional[str]) -> List[str]:
    """Parse tags string into list.

    Args:
        tags_str: Semicolon-separated tags string

    Returns:
        List of individual tags
    """
    if not tags_str:
        return []
    return [tag.strip() for tag in tags_str.split(';') if tag.strip()]


def utc_day(epoch_seconds: int) -> str:
    """Calendar day (UTC) of an epoch timestamp, e.g. '2025-05-01'."""
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).strftime('%Y-%m-%d')


def cutoff_epoch(days: int, now: Optional[float] = None) -> int:
    """Epoch seconds ``days`` days before ``now``."""
    reference = time.time() if now is None else now
    return int(reference - days * SECONDS_PER_DAY)


def split_patterns(patterns: Optional[str]) -> List[str]:
    """Split a comma-separated pattern setting into trimmed, non-empty patterns."""
    if not patterns:
        return []
    return [p.strip() for p in patterns.split(',') if p.strip()]


def matches_any(value: str, patterns: List[str]) -> bool:
    """Check a value against shell-style glob patterns (case sensitive)."""
    return any(fnmatch.fnmatchcase(value, pattern) for pattern in patterns)


def to_int(value: Any, default: int = 0) -> int:
    """Coerce an API number (possibly a string or None) to int."""
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
