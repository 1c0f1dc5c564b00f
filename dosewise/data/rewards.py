"""Adherence and rewards aggregation over the dose log.

Points, levels, streaks, progress ratios and achievements are recomputed per
request. The daily bonus claim is the only point mutator and relies on the
store's atomic compare-and-set against the last claim date.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from dosewise.core.config import Settings
from dosewise.core.config import settings as default_settings
from dosewise.data.achievements import AchievementContext, evaluate_achievements, newly_unlocked
from dosewise.data.schemas import (
    AchievementStatus,
    DailyClaimResult,
    DoseEvent,
    DoseStatus,
    Leaderboard,
    Progress,
    RecentReward,
    RewardCategory,
    RewardSummary,
    make_progress,
)
from dosewise.data.store import DoseLogStore, UserStore
from dosewise.data.streaks import best_streak, current_streak, taken_dates

logger = logging.getLogger(__name__)

MAX_RECENT_REWARDS = 10
POINTS_PER_LEVEL = 100


def level_progress(total_points: int) -> tuple[int, int]:
    """Return (current_level, points_to_next_level) for a point total."""
    level = total_points // POINTS_PER_LEVEL + 1
    return level, level * POINTS_PER_LEVEL - total_points


def reward_title(event: DoseEvent) -> str:
    return event.bonus_reason or "Medication Logged"


def reward_description(event: DoseEvent) -> str:
    if event.bonus_points > 0:
        return f"Perfect timing bonus! {event.points_awarded} base + {event.bonus_points} bonus points"
    return f"Earned {event.points_awarded} points for taking medication"


def recent_rewards(events: list[DoseEvent], limit: int = MAX_RECENT_REWARDS) -> list[RecentReward]:
    """Reward feed entries for events that earned points, in input order."""
    rewards: list[RecentReward] = []
    for event in events:
        if event.total_points <= 0:
            continue
        rewards.append(
            RecentReward(
                id=event.id,
                title=reward_title(event),
                description=reward_description(event),
                points=event.total_points,
                timestamp=event.updated_at or event.actual_time or event.scheduled_time,
                category=RewardCategory.BONUS if event.bonus_reason else RewardCategory.REGULAR,
                medication=event.medication_name,
            )
        )
        if len(rewards) >= limit:
            break
    return rewards


class RewardsAggregator:
    """Computes reward summaries and handles daily bonus claims for a user."""

    def __init__(self, doses: DoseLogStore, users: UserStore, config: Settings | None = None) -> None:
        self._doses = doses
        self._users = users
        self._cfg = config or default_settings
        self._tz = ZoneInfo(self._cfg.timezone)

    def _now(self, now: datetime | None) -> datetime:
        return now or datetime.now(self._tz)

    def local_today(self, now: datetime) -> date:
        return now.astimezone(self._tz).date()

    def _day_start(self, day: date) -> datetime:
        return datetime.combine(day, time.min, tzinfo=self._tz)

    async def _progress(self, user_id: str, start: datetime, end: datetime) -> Progress:
        total = await self._doses.count_dose_events_in_range(user_id, start, end)
        completed = await self._doses.count_dose_events_in_range(user_id, start, end, DoseStatus.TAKEN)
        return make_progress(total, completed)

    async def daily_progress(self, user_id: str, now: datetime | None = None) -> Progress:
        """Progress over the local calendar day containing now."""
        today = self.local_today(self._now(now))
        start = self._day_start(today)
        return await self._progress(user_id, start, start + timedelta(days=1))

    async def weekly_progress(self, user_id: str, now: datetime | None = None) -> Progress:
        """Progress over the trailing 7 days up to now."""
        current = self._now(now)
        # Inclusive of now: the store range is half-open.
        return await self._progress(user_id, current - timedelta(days=7), current + timedelta(microseconds=1))

    async def _achievement_context(self, user_id: str, now: datetime) -> AchievementContext:
        lookback = now - timedelta(days=self._cfg.achievement_lookback_days)
        history = await self._doses.find_dose_events_in_range(user_id, lookback, now + timedelta(days=1))
        return AchievementContext(
            events=history,
            now=now,
            tz=self._tz,
            on_time_tolerance=timedelta(minutes=self._cfg.on_time_tolerance_minutes),
        )

    async def _record_unlocks(self, user_id: str, ctx: AchievementContext) -> dict[str, datetime]:
        """Persist achievements satisfied now and return every recorded unlock."""
        recorded = await self._users.get_unlocked_achievements(user_id)
        fresh = newly_unlocked(ctx, recorded)
        if fresh:
            logger.info("User %s unlocked achievements: %s", user_id, ", ".join(sorted(fresh)))
            await self._users.record_achievement_unlocks(user_id, fresh)
            recorded = {**fresh, **recorded}
        return recorded

    async def compute_reward_summary(self, user_id: str, now: datetime | None = None) -> RewardSummary:
        """Derive the full rewards view for a user.

        Points are the persisted baseline plus points on the most recent
        `reward_window` dose events. Users without any events get a zeroed
        summary. Newly satisfied achievements are recorded so they stay
        unlocked on later requests.
        """
        current = self._now(now)
        today = self.local_today(current)

        recent = await self._doses.find_recent_dose_events(user_id, self._cfg.reward_window)
        baseline = await self._users.get_baseline_points(user_id)
        total_points = baseline + sum(e.total_points for e in recent)
        level, to_next = level_progress(total_points)

        ctx = await self._achievement_context(user_id, current)
        dates = taken_dates(ctx.events, self._tz)

        recorded = await self._record_unlocks(user_id, ctx)

        last_claim = await self._users.get_last_daily_claim(user_id)

        return RewardSummary(
            total_points=total_points,
            current_level=level,
            points_to_next_level=to_next,
            current_streak=current_streak(dates, today),
            best_streak=best_streak(dates),
            daily_progress=await self.daily_progress(user_id, current),
            weekly_progress=await self.weekly_progress(user_id, current),
            recent_rewards=recent_rewards(recent),
            achievements=evaluate_achievements(ctx, recorded),
            can_claim_daily_bonus=last_claim is None or last_claim < today,
            generated_at=current,
        )

    async def achievements(self, user_id: str, now: datetime | None = None) -> list[AchievementStatus]:
        """Catalogue with unlock state and progress only."""
        current = self._now(now)
        ctx = await self._achievement_context(user_id, current)
        recorded = await self._record_unlocks(user_id, ctx)
        return evaluate_achievements(ctx, recorded)

    async def claim_daily_bonus(self, user_id: str, now: datetime | None = None) -> DailyClaimResult:
        """Award the daily bonus at most once per local calendar day."""
        current = self._now(now)
        today = self.local_today(current)
        points = self._cfg.daily_bonus_points

        new_total = await self._users.get_and_set_daily_claim(user_id, today, points)
        if new_total is None:
            logger.info("Daily bonus already claimed by %s on %s", user_id, today)
            return DailyClaimResult(
                claimed=False,
                points_awarded=0,
                total_points=await self._users.get_baseline_points(user_id),
                claim_date=today,
            )

        logger.info("Daily bonus of %d awarded to %s", points, user_id)
        return DailyClaimResult(claimed=True, points_awarded=points, total_points=new_total, claim_date=today)

    async def leaderboard(self, user_id: str, limit: int = 10) -> Leaderboard:
        top = await self._users.leaderboard(limit)
        position, total = await self._users.rank_of(user_id)
        return Leaderboard(leaderboard=top, user_position=position, total_users=total)
