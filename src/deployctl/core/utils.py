"""Common utilities for deployctl."""

import os
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any


def parse_duration(duration_str: str) -> timedelta:
    """Parse duration string to timedelta.

    Supports formats like: 500ms, 30s, 5m, 2h, 1d, 1w
    Also supports combinations: 1h30m, 2d12h

    Args:
        duration_str: Duration string

    Returns:
        timedelta object

    Raises:
        ValueError: If format is invalid
    """
    if not duration_str:
        raise ValueError("Duration string cannot be empty")

    normalized = duration_str.strip().lower()
    pattern = re.compile(r"(\d+)(ms|[smhdw])")
    matches = pattern.findall(normalized)

    if not matches or pattern.sub("", normalized):
        raise ValueError(f"Invalid duration format: {duration_str}")

    total = timedelta()
    units = {
        "ms": "milliseconds",
        "s": "seconds",
        "m": "minutes",
        "h": "hours",
        "d": "days",
        "w": "weeks",
    }

    for value, unit in matches:
        total += timedelta(**{units[unit]: int(value)})

    return total


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as RFC 3339 in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an RFC 3339 timestamp (as written by format_timestamp).

    YAML loaders may already have turned the value into a datetime.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_config_dir() -> Path:
    """Get the deployctl config directory."""
    return Path(os.environ.get("DEPLOYCTL_CONFIG_DIR", "~/.deployctl")).expanduser()


def merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge on top

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def format_duration(seconds: float) -> str:
    """Format seconds to human-readable duration."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"
