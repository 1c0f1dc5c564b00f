"""Streak tracking derived from taken dose events."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, timedelta
from zoneinfo import ZoneInfo

from dosewise.data.schemas import DoseEvent

logger = logging.getLogger(__name__)


def taken_dates(events: Iterable[DoseEvent], tz: ZoneInfo) -> set[date]:
    """Local calendar dates (by scheduled_time) that have at least one taken dose."""
    return {e.scheduled_time.astimezone(tz).date() for e in events if e.is_taken}


def current_streak(dates: set[date], today: date) -> int:
    """Count consecutive days backwards from today, stopping at the first gap.

    Several doses on one day count once. A missing today yields 0.
    """
    streak = 0
    cursor = today
    while cursor in dates:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def best_streak(dates: set[date]) -> int:
    """Longest run of consecutive days anywhere in the set."""
    best = 0
    for d in dates:
        # Only start counting at the first day of a run.
        if d - timedelta(days=1) in dates:
            continue
        length = 0
        cursor = d
        while cursor in dates:
            length += 1
            cursor += timedelta(days=1)
        best = max(best, length)
    return best
