"""Shared helpers for jobescrow."""

import os
from datetime import datetime, timezone
from pathlib import Path


def get_escrow_home() -> Path:
    """Return the jobescrow data directory.

    Honours ``JOBESCROW_DATA_DIR`` and falls back to ``~/.jobescrow``.
    """
    override = os.environ.get("JOBESCROW_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".jobescrow"


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def parse_datetime(value):
    """Parse an ISO timestamp written by :func:`utc_now`. ``None`` passes through."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
