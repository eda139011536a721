"""Utility functions for aioaudiobox."""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def whole_seconds_between(start: datetime, end: datetime) -> int:
    """
    Return the whole seconds elapsed from start to end.

    Clock steps backwards are reported as zero rather than a negative duration.
    """
    return max(0, int((end - start).total_seconds()))
