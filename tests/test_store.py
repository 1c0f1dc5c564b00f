"""Tests for dosewise.data.store: the in-process store."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from dosewise.data.schemas import (
    CalendarCredential,
    CalendarSyncState,
    DoseEvent,
    DoseStatus,
    Frequency,
    Regimen,
    SyncStatus,
)
from dosewise.data.store import InMemoryStore, level_for, mask_username

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)


@pytest.fixture
def store() -> InMemoryStore:
    s = InMemoryStore()
    s.add_user("u1", username="alice")
    return s


def _regimen(regimen_id: str, user_id: str = "u1", active: bool = True) -> Regimen:
    return Regimen(
        id=regimen_id,
        user_id=user_id,
        medication_name="Metformin",
        dosage_amount=500,
        dosage_unit="mg",
        frequency=Frequency.ONCE_DAILY,
        start_date=date(2026, 3, 1),
        is_active=active,
    )


def test_mask_username() -> None:
    assert mask_username("alice") == "a***"
    assert mask_username("") == "***"


def test_level_for() -> None:
    assert level_for(0) == 1
    assert level_for(199) == 2


class TestDoseLog:
    async def test_range_is_half_open(self, store: InMemoryStore) -> None:
        store.add_dose_events(
            DoseEvent(id="a", user_id="u1", scheduled_time=T0),
            DoseEvent(id="b", user_id="u1", scheduled_time=T0 + timedelta(hours=1)),
        )
        assert await store.count_dose_events_in_range("u1", T0, T0 + timedelta(hours=1)) == 1
        found = await store.find_dose_events_in_range("u1", T0, T0 + timedelta(hours=2))
        assert [e.id for e in found] == ["a", "b"]

    async def test_count_by_status(self, store: InMemoryStore) -> None:
        store.add_dose_events(
            DoseEvent(id="a", user_id="u1", scheduled_time=T0, status=DoseStatus.TAKEN, actual_time=T0),
            DoseEvent(id="b", user_id="u1", scheduled_time=T0, status=DoseStatus.MISSED),
        )
        end = T0 + timedelta(days=1)
        assert await store.count_dose_events_in_range("u1", T0, end, DoseStatus.TAKEN) == 1

    async def test_recent_most_recent_first(self, store: InMemoryStore) -> None:
        store.add_dose_events(
            *(DoseEvent(id=str(i), user_id="u1", scheduled_time=T0 + timedelta(hours=i)) for i in range(5))
        )
        recent = await store.find_recent_dose_events("u1", 3)
        assert [e.id for e in recent] == ["4", "3", "2"]


class TestUsers:
    async def test_daily_claim_compare_and_set(self, store: InMemoryStore) -> None:
        today = date(2026, 3, 1)
        assert await store.get_and_set_daily_claim("u1", today, 10) == 10
        assert await store.get_and_set_daily_claim("u1", today, 10) is None
        assert await store.get_and_set_daily_claim("u1", today + timedelta(days=1), 10) == 20
        assert await store.get_last_daily_claim("u1") == today + timedelta(days=1)

    async def test_achievement_unlocks_are_insert_if_absent(self, store: InMemoryStore) -> None:
        await store.record_achievement_unlocks("u1", {"first_dose": T0})
        await store.record_achievement_unlocks("u1", {"first_dose": T0 + timedelta(days=1)})
        assert await store.get_unlocked_achievements("u1") == {"first_dose": T0}

    async def test_credential_roundtrip_and_clear(self, store: InMemoryStore) -> None:
        cred = CalendarCredential(access_token="tok")
        await store.update_calendar_credential("u1", cred)
        assert await store.get_calendar_credential("u1") == cred
        await store.clear_calendar_credential("u1")
        assert await store.get_calendar_credential("u1") is None

    async def test_rank_of_unknown_user(self, store: InMemoryStore) -> None:
        store.add_user("u2", baseline_points=50)
        assert await store.rank_of("ghost") == (2, 1)


class TestRegimens:
    async def test_get_regimen_checks_owner(self, store: InMemoryStore) -> None:
        store.add_regimen(_regimen("r1", user_id="u2"))
        assert await store.get_regimen("u1", "r1") is None
        assert await store.get_regimen("u2", "r1") is not None

    async def test_active_and_synced_lists(self, store: InMemoryStore) -> None:
        store.add_regimen(_regimen("r1"))
        store.add_regimen(_regimen("r2", active=False))
        await store.update_sync_state("r2", CalendarSyncState(enabled=True, status=SyncStatus.SYNCED))
        assert [r.id for r in await store.list_active_regimens("u1")] == ["r1"]
        assert [r.id for r in await store.list_synced_regimens("u1")] == ["r2"]

    async def test_update_sync_state_none_clears(self, store: InMemoryStore) -> None:
        store.add_regimen(_regimen("r1"))
        await store.update_sync_state("r1", CalendarSyncState(remote_event_ids=("e1",)))
        await store.update_sync_state("r1", None)
        regimen = await store.get_regimen("u1", "r1")
        assert regimen is not None
        assert regimen.sync_state is None
