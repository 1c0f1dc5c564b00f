"""Domain schemas for dose events, regimens, rewards, and calendar sync state."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import StrEnum
from typing import TypedDict

from dosewise.core.errors import ValidationError

ON_TIME_TOLERANCE = timedelta(minutes=15)

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class DoseStatus(StrEnum):
    """Lifecycle status of a single dose."""

    PENDING = "pending"
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"


class Frequency(StrEnum):
    """Regimen dosing frequency."""

    ONCE_DAILY = "once_daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    EVERY_OTHER_DAY = "every_other_day"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class SyncStatus(StrEnum):
    """Per-regimen calendar sync state machine."""

    UNSYNCED = "unsynced"
    SYNCING = "syncing"
    SYNCED = "synced"
    PARTIALLY_SYNCED = "partially_synced"
    REMOVED = "removed"


class RewardCategory(StrEnum):
    """Kind of reward shown in the recent rewards feed."""

    BONUS = "bonus"
    REGULAR = "regular"


class EventResult(StrEnum):
    """Outcome of pushing a single event or regimen to the provider."""

    CREATED = "created"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


def parse_hhmm(value: str) -> tuple[int, int]:
    """Parse 'HH:MM' to (hour, minute); raise ValidationError when malformed."""
    match = _HHMM_RE.match(value)
    if match is None:
        msg = f"Invalid time of day '{value}', expected HH:MM"
        raise ValidationError(msg)
    return int(match.group(1)), int(match.group(2))


@dataclass(frozen=True)
class DoseEvent:
    """A scheduled-or-logged medication intake record.

    Datetimes are timezone-aware. A taken dose must carry actual_time.
    """

    id: str
    user_id: str
    scheduled_time: datetime
    status: DoseStatus = DoseStatus.PENDING
    actual_time: datetime | None = None
    points_awarded: int = 0
    bonus_points: int = 0
    bonus_reason: str | None = None
    medication_name: str = "Unknown"
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.status == DoseStatus.TAKEN and self.actual_time is None:
            msg = f"Dose {self.id} is taken but has no actual_time"
            raise ValidationError(msg)
        if self.points_awarded < 0 or self.bonus_points < 0:
            msg = f"Dose {self.id} has negative points"
            raise ValidationError(msg)

    @property
    def total_points(self) -> int:
        return self.points_awarded + self.bonus_points

    @property
    def is_taken(self) -> bool:
        return self.status == DoseStatus.TAKEN

    def is_on_time(self, tolerance: timedelta = ON_TIME_TOLERANCE) -> bool:
        """True when taken within tolerance of the scheduled time."""
        if not self.is_taken or self.actual_time is None:
            return False
        return abs(self.actual_time - self.scheduled_time) <= tolerance


@dataclass(frozen=True)
class CalendarSyncState:
    """Calendar sync bookkeeping attached to a regimen."""

    enabled: bool = False
    last_sync_at: datetime | None = None
    remote_event_ids: tuple[str, ...] = ()
    status: SyncStatus = SyncStatus.UNSYNCED


@dataclass(frozen=True)
class Regimen:
    """A recurring medication schedule definition."""

    id: str
    user_id: str
    medication_name: str
    dosage_amount: float
    dosage_unit: str
    frequency: Frequency
    start_date: date
    custom_schedule: tuple[str, ...] = ()
    end_date: date | None = None
    is_active: bool = True
    sync_state: CalendarSyncState | None = None

    def __post_init__(self) -> None:
        if not self.medication_name:
            msg = f"Regimen {self.id} has no medication name"
            raise ValidationError(msg)
        if self.frequency == Frequency.CUSTOM and not self.custom_schedule:
            msg = f"Regimen {self.id} uses a custom frequency without schedule times"
            raise ValidationError(msg)
        for value in self.custom_schedule:
            parse_hhmm(value)
        if self.end_date is not None and self.end_date < self.start_date:
            msg = f"Regimen {self.id} ends before it starts"
            raise ValidationError(msg)

    @property
    def remote_event_ids(self) -> tuple[str, ...]:
        if self.sync_state is None:
            return ()
        return self.sync_state.remote_event_ids


@dataclass(frozen=True)
class CalendarSettings:
    """Per-user calendar preferences."""

    sync_enabled: bool = True
    reminder_offsets: tuple[int, ...] = (10, 60)
    target_calendar_id: str = "primary"


@dataclass(frozen=True)
class CalendarCredential:
    """OAuth credential for the user's external calendar."""

    access_token: str
    refresh_token: str = ""
    token_expiry: datetime | None = None
    is_connected: bool = True
    connected_at: datetime | None = None
    settings: CalendarSettings = field(default_factory=CalendarSettings)

    def is_usable(self, now: datetime) -> bool:
        """Connected, has a token, and the token has not expired."""
        if not self.is_connected or not self.access_token:
            return False
        return self.token_expiry is None or self.token_expiry > now

    @property
    def can_refresh(self) -> bool:
        """An expired access token can be replaced without the user."""
        return self.is_connected and bool(self.refresh_token)


# --- Rewards ---


@dataclass(frozen=True)
class Progress:
    """Completion ratio over a trailing window."""

    total: int
    completed: int
    percentage: float


def make_progress(total: int, completed: int) -> Progress:
    """Build a Progress, defining the percentage as 0 when nothing is scheduled."""
    percentage = (completed / total) * 100 if total > 0 else 0.0
    return Progress(total=total, completed=completed, percentage=percentage)


@dataclass(frozen=True)
class RecentReward:
    """A human-readable reward entry derived from a dose event."""

    id: str
    title: str
    description: str
    points: int
    timestamp: datetime
    category: RewardCategory
    medication: str


@dataclass(frozen=True)
class AchievementProgress:
    """Progress toward an achievement target, never above the target."""

    current: int
    target: int


@dataclass(frozen=True)
class AchievementStatus:
    """Catalogue entry joined with the user's unlock state."""

    id: str
    title: str
    description: str
    point_value: int
    category: str
    rarity: str
    unlocked: bool
    unlocked_at: datetime | None
    progress: AchievementProgress


@dataclass(frozen=True)
class RewardSummary:
    """Derived rewards view, recomputed per request."""

    total_points: int
    current_level: int
    points_to_next_level: int
    current_streak: int
    best_streak: int
    daily_progress: Progress
    weekly_progress: Progress
    recent_rewards: list[RecentReward]
    achievements: list[AchievementStatus]
    can_claim_daily_bonus: bool
    generated_at: datetime


@dataclass(frozen=True)
class DailyClaimResult:
    """Outcome of a daily bonus claim."""

    claimed: bool
    points_awarded: int
    total_points: int
    claim_date: date


class LeaderboardEntry(TypedDict):
    """A single leaderboard row with a masked username."""

    username: str
    total_points: int
    level: int


@dataclass(frozen=True)
class Leaderboard:
    """Top users plus the caller's position."""

    leaderboard: list[LeaderboardEntry]
    user_position: int
    total_users: int


class HeatmapDay(TypedDict):
    """Adherence for a single calendar day."""

    date: str  # ISO date
    total: int
    taken: int
    adherence_rate: float


class WeeklyTrend(TypedDict):
    """Adherence for a single ISO week."""

    week_start: str  # ISO date (Monday)
    total: int
    taken: int
    adherence_percentage: float


class MissedMedication(TypedDict):
    """A medication ranked by missed doses."""

    medication: str
    missed: int
    total: int
    miss_rate: float


# --- Calendar sync outcomes ---


@dataclass(frozen=True)
class CalendarEvent:
    """A concrete calendar event generated from a regimen."""

    start: datetime
    end: datetime
    title: str
    description: str
    reminder_offsets: tuple[int, ...] = (10, 60)
    regimen_id: str = ""


@dataclass(frozen=True)
class EventSyncResult:
    """Result of pushing one generated event."""

    start: datetime
    result: EventResult
    remote_id: str | None = None
    error: str | None = None
    attempts: int = 0


@dataclass(frozen=True)
class RegimenSyncOutcome:
    """Result of syncing one regimen; every field is always present."""

    regimen_id: str
    medication_name: str
    result: EventResult
    status: SyncStatus
    events_attempted: int
    events_created: int
    remote_event_ids: tuple[str, ...]
    auth_expired: bool = False
    error: str | None = None
    events: tuple[EventSyncResult, ...] = ()

    @property
    def events_failed(self) -> int:
        return self.events_attempted - self.events_created


@dataclass(frozen=True)
class SyncAllOutcome:
    """Aggregate result of syncing every active regimen."""

    message: str
    total_events: int
    success_count: int
    failure_count: int
    not_attempted_count: int
    auth_expired: bool
    results: list[RegimenSyncOutcome]


@dataclass(frozen=True)
class RemovalOutcome:
    """Result of removing a regimen's events from the calendar."""

    regimen_id: str
    events_deleted: int
    events_failed: int
    message: str
