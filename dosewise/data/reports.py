"""Adherence reports: yearly heatmap, weekly trends, most missed medications."""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from dosewise.core.config import Settings
from dosewise.core.config import settings as default_settings
from dosewise.core.errors import ValidationError
from dosewise.data.schemas import DoseEvent, DoseStatus, HeatmapDay, MissedMedication, WeeklyTrend
from dosewise.data.store import DoseLogStore

logger = logging.getLogger(__name__)


def _rate(taken: int, total: int) -> float:
    return (taken / total) * 100 if total > 0 else 0.0


def _iso_week_start(d: date) -> date:
    """Return the Monday of the ISO week containing d."""
    return d - timedelta(days=d.weekday())


class AdherenceReports:
    """Read-only adherence rollups over the dose log."""

    def __init__(self, doses: DoseLogStore, config: Settings | None = None) -> None:
        self._doses = doses
        self._cfg = config or default_settings
        self._tz = ZoneInfo(self._cfg.timezone)

    def _local_midnight(self, d: date) -> datetime:
        return datetime.combine(d, time.min, tzinfo=self._tz)

    def _local_date(self, event: DoseEvent) -> date:
        return event.scheduled_time.astimezone(self._tz).date()

    async def heatmap(self, user_id: str, year: int) -> list[HeatmapDay]:
        """Per-day adherence for every day of a year that has scheduled doses."""
        if not 1970 <= year <= 9998:
            msg = f"Year out of range: {year}"
            raise ValidationError(msg)
        start = self._local_midnight(date(year, 1, 1))
        end = self._local_midnight(date(year + 1, 1, 1))
        events = await self._doses.find_dose_events_in_range(user_id, start, end)

        totals: Counter[date] = Counter()
        taken: Counter[date] = Counter()
        for event in events:
            day = self._local_date(event)
            totals[day] += 1
            if event.is_taken:
                taken[day] += 1

        return [
            HeatmapDay(
                date=day.isoformat(),
                total=totals[day],
                taken=taken[day],
                adherence_rate=_rate(taken[day], totals[day]),
            )
            for day in sorted(totals)
        ]

    async def weekly_trends(self, user_id: str, weeks: int = 12, now: datetime | None = None) -> list[WeeklyTrend]:
        """Adherence per ISO week for the last `weeks` weeks, oldest first, including empty weeks."""
        if weeks < 1:
            msg = "weeks must be at least 1"
            raise ValidationError(msg)
        current = now or datetime.now(self._tz)
        this_week = _iso_week_start(current.astimezone(self._tz).date())
        first_week = this_week - timedelta(weeks=weeks - 1)
        events = await self._doses.find_dose_events_in_range(
            user_id,
            self._local_midnight(first_week),
            self._local_midnight(this_week + timedelta(weeks=1)),
        )

        buckets: dict[date, list[DoseEvent]] = defaultdict(list)
        for event in events:
            buckets[_iso_week_start(self._local_date(event))].append(event)

        trends: list[WeeklyTrend] = []
        for i in range(weeks):
            week = first_week + timedelta(weeks=i)
            bucket = buckets.get(week, [])
            taken = sum(1 for e in bucket if e.is_taken)
            trends.append(
                WeeklyTrend(
                    week_start=week.isoformat(),
                    total=len(bucket),
                    taken=taken,
                    adherence_percentage=_rate(taken, len(bucket)),
                )
            )
        return trends

    async def most_missed(
        self,
        user_id: str,
        limit: int = 5,
        days: int = 30,
        now: datetime | None = None,
    ) -> list[MissedMedication]:
        """Medications ranked by missed doses over the trailing window."""
        current = now or datetime.now(self._tz)
        events = await self._doses.find_dose_events_in_range(user_id, current - timedelta(days=days), current)

        totals: Counter[str] = Counter()
        missed: Counter[str] = Counter()
        for event in events:
            totals[event.medication_name] += 1
            if event.status == DoseStatus.MISSED:
                missed[event.medication_name] += 1

        ranked = sorted(missed.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
        return [
            MissedMedication(
                medication=name,
                missed=count,
                total=totals[name],
                miss_rate=_rate(count, totals[name]),
            )
            for name, count in ranked
        ]
