"""Store interfaces for dose logs, users, and regimens, plus an in-process implementation."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date, datetime

from dosewise.data.schemas import (
    CalendarCredential,
    CalendarSyncState,
    DoseEvent,
    DoseStatus,
    LeaderboardEntry,
    Regimen,
)

logger = logging.getLogger(__name__)


def mask_username(username: str) -> str:
    """Keep the first character only, e.g. 'alice' -> 'a***'."""
    return f"{username[:1]}***"


def level_for(points: int) -> int:
    return points // 100 + 1


class DoseLogStore(ABC):
    """Read access to the dose log."""

    @abstractmethod
    async def find_recent_dose_events(self, user_id: str, limit: int) -> list[DoseEvent]:
        """Return up to limit events, most recent scheduled_time first."""

    @abstractmethod
    async def count_dose_events_in_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        status: DoseStatus | None = None,
    ) -> int:
        """Count events with start <= scheduled_time < end, optionally by status."""

    @abstractmethod
    async def find_dose_events_in_range(self, user_id: str, start: datetime, end: datetime) -> list[DoseEvent]:
        """Return events with start <= scheduled_time < end, oldest first."""


class UserStore(ABC):
    """Per-user reward bookkeeping and calendar credentials."""

    @abstractmethod
    async def get_baseline_points(self, user_id: str) -> int:
        """Persisted point total not attributable to dose events."""

    @abstractmethod
    async def get_last_daily_claim(self, user_id: str) -> date | None:
        """Date of the last daily bonus claim, if any."""

    @abstractmethod
    async def get_and_set_daily_claim(self, user_id: str, today: date, points: int) -> int | None:
        """Atomically claim today's bonus.

        Sets last_daily_claim_date=today and increments the baseline by points
        only when the previous claim date is absent or earlier than today.
        Returns the new baseline total, or None when already claimed today.
        """

    @abstractmethod
    async def get_unlocked_achievements(self, user_id: str) -> dict[str, datetime]:
        """Persisted unlock timestamps by achievement id."""

    @abstractmethod
    async def record_achievement_unlocks(self, user_id: str, unlocks: dict[str, datetime]) -> None:
        """Insert unlock timestamps for ids not yet unlocked; existing ones are kept."""

    @abstractmethod
    async def get_calendar_credential(self, user_id: str) -> CalendarCredential | None:
        """Return the stored credential, or None when never connected."""

    @abstractmethod
    async def update_calendar_credential(self, user_id: str, credential: CalendarCredential) -> None:
        """Replace the stored credential."""

    @abstractmethod
    async def clear_calendar_credential(self, user_id: str) -> None:
        """Remove the stored credential."""

    @abstractmethod
    async def leaderboard(self, limit: int = 10) -> list[LeaderboardEntry]:
        """Top users by baseline points, usernames masked."""

    @abstractmethod
    async def rank_of(self, user_id: str) -> tuple[int, int]:
        """Return (position, total ranked users) for a user."""


class RegimenStore(ABC):
    """Regimen lookup and calendar sync state persistence."""

    @abstractmethod
    async def list_active_regimens(self, user_id: str) -> list[Regimen]:
        """Active regimens for a user, in a stable order."""

    @abstractmethod
    async def list_synced_regimens(self, user_id: str) -> list[Regimen]:
        """Regimens that currently carry a sync state."""

    @abstractmethod
    async def get_regimen(self, user_id: str, regimen_id: str) -> Regimen | None:
        """Return a regimen owned by the user, or None."""

    @abstractmethod
    async def update_sync_state(self, regimen_id: str, state: CalendarSyncState | None) -> None:
        """Persist a sync state; None clears it."""


@dataclass
class _UserRecord:
    username: str
    baseline_points: int = 0
    last_daily_claim_date: date | None = None
    unlocked_achievements: dict[str, datetime] = field(default_factory=dict)
    calendar: CalendarCredential | None = None


class InMemoryStore(DoseLogStore, UserStore, RegimenStore):
    """Single-process store backing all three interfaces.

    Every mutator completes without awaiting, so each one is atomic with
    respect to other tasks on the same event loop.
    """

    def __init__(self) -> None:
        self._users: dict[str, _UserRecord] = {}
        self._doses: dict[str, list[DoseEvent]] = {}
        self._regimens: dict[str, Regimen] = {}

    # --- seeding ---

    def add_user(self, user_id: str, username: str = "", baseline_points: int = 0) -> None:
        self._users[user_id] = _UserRecord(username=username or user_id, baseline_points=baseline_points)

    def add_dose_events(self, *events: DoseEvent) -> None:
        for event in events:
            self._doses.setdefault(event.user_id, []).append(event)

    def add_regimen(self, regimen: Regimen) -> None:
        self._regimens[regimen.id] = regimen

    def _user(self, user_id: str) -> _UserRecord:
        if user_id not in self._users:
            self.add_user(user_id)
        return self._users[user_id]

    # --- DoseLogStore ---

    async def find_recent_dose_events(self, user_id: str, limit: int) -> list[DoseEvent]:
        events = sorted(self._doses.get(user_id, []), key=lambda e: e.scheduled_time, reverse=True)
        return events[:limit]

    async def count_dose_events_in_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        status: DoseStatus | None = None,
    ) -> int:
        return sum(
            1
            for e in self._doses.get(user_id, [])
            if start <= e.scheduled_time < end and (status is None or e.status == status)
        )

    async def find_dose_events_in_range(self, user_id: str, start: datetime, end: datetime) -> list[DoseEvent]:
        events = [e for e in self._doses.get(user_id, []) if start <= e.scheduled_time < end]
        return sorted(events, key=lambda e: e.scheduled_time)

    # --- UserStore ---

    async def get_baseline_points(self, user_id: str) -> int:
        return self._user(user_id).baseline_points

    async def get_last_daily_claim(self, user_id: str) -> date | None:
        return self._user(user_id).last_daily_claim_date

    async def get_and_set_daily_claim(self, user_id: str, today: date, points: int) -> int | None:
        user = self._user(user_id)
        if user.last_daily_claim_date is not None and user.last_daily_claim_date >= today:
            return None
        user.last_daily_claim_date = today
        user.baseline_points += points
        return user.baseline_points

    async def get_unlocked_achievements(self, user_id: str) -> dict[str, datetime]:
        return dict(self._user(user_id).unlocked_achievements)

    async def record_achievement_unlocks(self, user_id: str, unlocks: dict[str, datetime]) -> None:
        stored = self._user(user_id).unlocked_achievements
        for achievement_id, unlocked_at in unlocks.items():
            stored.setdefault(achievement_id, unlocked_at)

    async def get_calendar_credential(self, user_id: str) -> CalendarCredential | None:
        return self._user(user_id).calendar

    async def update_calendar_credential(self, user_id: str, credential: CalendarCredential) -> None:
        self._user(user_id).calendar = credential

    async def clear_calendar_credential(self, user_id: str) -> None:
        self._user(user_id).calendar = None

    async def leaderboard(self, limit: int = 10) -> list[LeaderboardEntry]:
        ranked = sorted(
            (u for u in self._users.values() if u.baseline_points > 0),
            key=lambda u: u.baseline_points,
            reverse=True,
        )
        return [
            LeaderboardEntry(
                username=mask_username(u.username),
                total_points=u.baseline_points,
                level=level_for(u.baseline_points),
            )
            for u in ranked[:limit]
        ]

    async def rank_of(self, user_id: str) -> tuple[int, int]:
        points = self._user(user_id).baseline_points
        ahead = sum(1 for u in self._users.values() if u.baseline_points > points)
        total = sum(1 for u in self._users.values() if u.baseline_points > 0)
        return ahead + 1, total

    # --- RegimenStore ---

    async def list_active_regimens(self, user_id: str) -> list[Regimen]:
        return [r for r in self._regimens.values() if r.user_id == user_id and r.is_active]

    async def list_synced_regimens(self, user_id: str) -> list[Regimen]:
        return [r for r in self._regimens.values() if r.user_id == user_id and r.sync_state is not None]

    async def get_regimen(self, user_id: str, regimen_id: str) -> Regimen | None:
        regimen = self._regimens.get(regimen_id)
        if regimen is None or regimen.user_id != user_id:
            return None
        return regimen

    async def update_sync_state(self, regimen_id: str, state: CalendarSyncState | None) -> None:
        regimen = self._regimens.get(regimen_id)
        if regimen is None:
            logger.warning("Sync state update for unknown regimen %s", regimen_id)
            return
        self._regimens[regimen_id] = replace(regimen, sync_state=state)
