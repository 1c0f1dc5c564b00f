"""Achievement catalogue with pure unlock predicates and capped progress.

Every predicate reads the same DoseEvent set and returns the same answer
for the same input. Unlock state is monotonic: anything previously recorded
as unlocked stays unlocked regardless of later data.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

from dosewise.data.schemas import AchievementProgress, AchievementStatus, DoseEvent
from dosewise.data.streaks import current_streak, taken_dates

logger = logging.getLogger(__name__)

EARLY_BIRD_CUTOFF = time(8, 0)


@dataclass(frozen=True)
class AchievementContext:
    """Everything a predicate may look at."""

    events: Sequence[DoseEvent]
    now: datetime
    tz: ZoneInfo
    on_time_tolerance: timedelta = timedelta(minutes=15)

    @property
    def taken(self) -> list[DoseEvent]:
        return [e for e in self.events if e.is_taken]

    def adherence_since(self, days: int) -> float:
        """Taken / scheduled over [now - days, now], 0.0 when nothing was scheduled."""
        start = self.now - timedelta(days=days)
        window = [e for e in self.events if start <= e.scheduled_time <= self.now]
        if not window:
            return 0.0
        return sum(1 for e in window if e.is_taken) / len(window) * 100


CountFn = Callable[[AchievementContext], int]


@dataclass(frozen=True)
class Achievement:
    """A static catalogue entry.

    `count` returns the raw measure and the achievement unlocks when it
    reaches `target`; progress uses the same measure capped at the target.
    """

    id: str
    title: str
    description: str
    point_value: int
    category: str
    rarity: str
    target: int
    count: CountFn

    def is_unlocked(self, ctx: AchievementContext) -> bool:
        return self.count(ctx) >= self.target

    def progress(self, ctx: AchievementContext) -> AchievementProgress:
        return AchievementProgress(current=min(self.count(ctx), self.target), target=self.target)


def _taken_count(ctx: AchievementContext) -> int:
    return len(ctx.taken)


def _on_time_count(ctx: AchievementContext) -> int:
    return sum(1 for e in ctx.taken if e.is_on_time(ctx.on_time_tolerance))


def _streak_days(ctx: AchievementContext) -> int:
    return current_streak(taken_dates(ctx.events, ctx.tz), ctx.now.astimezone(ctx.tz).date())


def _taken_days(ctx: AchievementContext) -> int:
    return len(taken_dates(ctx.events, ctx.tz))


def _early_bird_days(ctx: AchievementContext) -> int:
    days = set()
    for e in ctx.taken:
        if e.actual_time is None:
            continue
        local = e.actual_time.astimezone(ctx.tz)
        if local.time() < EARLY_BIRD_CUTOFF:
            days.add(local.date())
    return len(days)


def _perfect_week(ctx: AchievementContext) -> int:
    return 1 if ctx.adherence_since(7) >= 100 else 0


def _consistency(ctx: AchievementContext) -> int:
    return 1 if ctx.adherence_since(30) >= 95 else 0


CATALOGUE: tuple[Achievement, ...] = (
    Achievement(
        id="first_dose",
        title="First Steps",
        description="Log your first medication dose",
        point_value=50,
        category="milestone",
        rarity="common",
        target=1,
        count=_taken_count,
    ),
    Achievement(
        id="perfect_week",
        title="Perfect Week",
        description="Take all medications on time for 7 days",
        point_value=150,
        category="streak",
        rarity="rare",
        target=1,
        count=_perfect_week,
    ),
    Achievement(
        id="early_bird",
        title="Early Bird",
        description="Take morning medications before 8 AM for 5 days",
        point_value=100,
        category="timing",
        rarity="uncommon",
        target=5,
        count=_early_bird_days,
    ),
    Achievement(
        id="consistency_champion",
        title="Consistency Champion",
        description="Maintain 95% adherence for 30 days",
        point_value=300,
        category="adherence",
        rarity="legendary",
        target=1,
        count=_consistency,
    ),
    Achievement(
        id="month_master",
        title="Month Master",
        description="Complete 30 days of medication logging",
        point_value=200,
        category="milestone",
        rarity="rare",
        target=30,
        count=_taken_days,
    ),
    Achievement(
        id="perfect_timing",
        title="Perfect Timing",
        description="Take 10 doses within 15 minutes of scheduled time",
        point_value=120,
        category="timing",
        rarity="uncommon",
        target=10,
        count=_on_time_count,
    ),
    Achievement(
        id="streak_starter",
        title="Streak Starter",
        description="Complete a 7-day adherence streak",
        point_value=75,
        category="streak",
        rarity="common",
        target=7,
        count=_streak_days,
    ),
)

CATALOGUE_BY_ID: dict[str, Achievement] = {a.id: a for a in CATALOGUE}


def newly_unlocked(ctx: AchievementContext, previously_unlocked: dict[str, datetime]) -> dict[str, datetime]:
    """Achievements satisfied now that were not recorded before, stamped with ctx.now."""
    return {a.id: ctx.now for a in CATALOGUE if a.id not in previously_unlocked and a.is_unlocked(ctx)}


def evaluate_achievements(
    ctx: AchievementContext,
    previously_unlocked: dict[str, datetime] | None = None,
) -> list[AchievementStatus]:
    """Join the catalogue with unlock state, in catalogue order."""
    recorded = previously_unlocked or {}
    statuses: list[AchievementStatus] = []
    for a in CATALOGUE:
        unlocked_at = recorded.get(a.id)
        if unlocked_at is None and a.is_unlocked(ctx):
            unlocked_at = ctx.now
        progress = a.progress(ctx)
        if unlocked_at is not None:
            # Once unlocked, display as complete even if current data regressed.
            progress = AchievementProgress(current=a.target, target=a.target)
        statuses.append(
            AchievementStatus(
                id=a.id,
                title=a.title,
                description=a.description,
                point_value=a.point_value,
                category=a.category,
                rarity=a.rarity,
                unlocked=unlocked_at is not None,
                unlocked_at=unlocked_at,
                progress=progress,
            )
        )
    return statuses
