"""
Draft expiry policy.

A draft (or in-progress) transaction has a rolling window, 24 hours by
default, counted from its creation. Expired drafts are only flagged here;
archival or deletion belongs to whoever consumes the flag.
"""

from __future__ import annotations

import math
from datetime import datetime

from mata_finance.domain.clock import ensure_utc

DEFAULT_WINDOW_HOURS = 24
DEFAULT_NEAR_DEADLINE_HOURS = 6


def remaining_hours(
    created_at: datetime,
    now: datetime,
    window_hours: int = DEFAULT_WINDOW_HOURS,
) -> int:
    """Whole hours left in the window: floored at 0, rounded up while positive."""
    elapsed = (ensure_utc(now) - ensure_utc(created_at)).total_seconds() / 3600
    remaining = window_hours - elapsed
    if remaining <= 0:
        return 0
    return math.ceil(remaining)


def is_expired(
    created_at: datetime,
    now: datetime,
    window_hours: int = DEFAULT_WINDOW_HOURS,
) -> bool:
    return remaining_hours(created_at, now, window_hours) == 0


def is_near_deadline(
    created_at: datetime,
    now: datetime,
    window_hours: int = DEFAULT_WINDOW_HOURS,
    threshold_hours: int = DEFAULT_NEAR_DEADLINE_HOURS,
) -> bool:
    remaining = remaining_hours(created_at, now, window_hours)
    return 0 < remaining <= threshold_hours
