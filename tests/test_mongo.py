"""Tests for dosewise.data.mongo: query shapes against a mocked motor database."""

from __future__ import annotations

from datetime import UTC, date, datetime
from unittest.mock import AsyncMock, MagicMock

import pyrage.x25519
import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from dosewise.core.config import Settings
from dosewise.core.errors import StoreUnavailableError
from dosewise.data.mongo import MongoStore, dose_from_doc, regimen_from_doc
from dosewise.data.schemas import CalendarCredential, CalendarSyncState, DoseStatus, Frequency, SyncStatus

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def db() -> MagicMock:
    return MagicMock()


@pytest.fixture
def store(db: MagicMock) -> MongoStore:
    return MongoStore(db, Settings())


# ---------------------------------------------------------------------------
# Document mapping
# ---------------------------------------------------------------------------


def test_dose_from_doc_reads_rewards_subdocument() -> None:
    event = dose_from_doc(
        {
            "_id": "d1",
            "user_id": "u1",
            "scheduled_time": NOW,
            "status": "taken",
            "actual_time": NOW,
            "rewards": {"points": 10, "bonus_points": 5, "reason_for_bonus": "Perfect Timing"},
        }
    )
    assert event.status == DoseStatus.TAKEN
    assert event.total_points == 15
    assert event.bonus_reason == "Perfect Timing"
    assert event.medication_name == "Unknown"


def test_regimen_from_doc_with_sync_state() -> None:
    regimen = regimen_from_doc(
        {
            "_id": "r1",
            "user_id": "u1",
            "medication_name": "Metformin",
            "dosage_amount": 500,
            "dosage_unit": "mg",
            "frequency": "twice_daily",
            "start_date": "2026-03-01",
            "calendar_sync": {"enabled": True, "event_ids": ["e1", "e2"], "status": "partially_synced"},
        }
    )
    assert regimen.frequency == Frequency.TWICE_DAILY
    assert regimen.start_date == date(2026, 3, 1)
    assert regimen.remote_event_ids == ("e1", "e2")
    assert regimen.sync_state is not None
    assert regimen.sync_state.status == SyncStatus.PARTIALLY_SYNCED


# ---------------------------------------------------------------------------
# Daily claim compare-and-set
# ---------------------------------------------------------------------------


class TestDailyClaim:
    async def test_filter_guards_on_previous_date(self, db: MagicMock, store: MongoStore) -> None:
        db.users.find_one_and_update = AsyncMock(return_value={"_id": "u1", "total_reward_points": 110})

        result = await store.get_and_set_daily_claim("u1", date(2026, 3, 1), 10)

        assert result == 110
        claim_filter, update = db.users.find_one_and_update.await_args.args
        assert claim_filter["_id"] == "u1"
        assert {"last_daily_claim_date": {"$lt": "2026-03-01"}} in claim_filter["$or"]
        assert update["$inc"] == {"total_reward_points": 10}
        assert update["$set"] == {"last_daily_claim_date": "2026-03-01"}
        assert db.users.find_one_and_update.await_args.kwargs["upsert"] is True

    async def test_duplicate_key_means_already_claimed(self, db: MagicMock, store: MongoStore) -> None:
        db.users.find_one_and_update = AsyncMock(side_effect=DuplicateKeyError("dup"))
        assert await store.get_and_set_daily_claim("u1", date(2026, 3, 1), 10) is None

    async def test_driver_failure_maps_to_store_unavailable(self, db: MagicMock, store: MongoStore) -> None:
        db.users.find_one_and_update = AsyncMock(side_effect=ServerSelectionTimeoutError("down"))
        with pytest.raises(StoreUnavailableError):
            await store.get_and_set_daily_claim("u1", date(2026, 3, 1), 10)


# ---------------------------------------------------------------------------
# Achievements, credentials, sync state
# ---------------------------------------------------------------------------


async def test_record_unlock_is_guarded_by_exists(db: MagicMock, store: MongoStore) -> None:
    db.users.update_one = AsyncMock()
    await store.record_achievement_unlocks("u1", {"first_dose": NOW})
    query, update = db.users.update_one.await_args.args
    assert query == {"_id": "u1", "achievements.first_dose": {"$exists": False}}
    assert update == {"$set": {"achievements.first_dose": NOW}}


async def test_credential_tokens_sealed_at_rest(db: MagicMock) -> None:
    identity = pyrage.x25519.Identity.generate()
    cfg = Settings(age_recipient=str(identity.to_public()), age_identity=str(identity))
    store = MongoStore(db, cfg)
    db.users.update_one = AsyncMock()

    await store.update_calendar_credential("u1", CalendarCredential(access_token="secret", refresh_token="r"))

    stored = db.users.update_one.await_args.args[1]["$set"]["calendar"]
    assert stored["access_token"].startswith("age:")
    assert "secret" not in stored["access_token"]

    db.users.find_one = AsyncMock(return_value={"_id": "u1", "calendar": stored})
    cred = await store.get_calendar_credential("u1")
    assert cred is not None
    assert cred.access_token == "secret"
    assert cred.refresh_token == "r"


async def test_missing_credential(db: MagicMock, store: MongoStore) -> None:
    db.users.find_one = AsyncMock(return_value={"_id": "u1"})
    assert await store.get_calendar_credential("u1") is None


async def test_update_sync_state_none_unsets(db: MagicMock, store: MongoStore) -> None:
    db.regimens.update_one = AsyncMock()
    await store.update_sync_state("r1", None)
    assert db.regimens.update_one.await_args.args == ({"_id": "r1"}, {"$unset": {"calendar_sync": 1}})


async def test_update_sync_state_writes_ids(db: MagicMock, store: MongoStore) -> None:
    db.regimens.update_one = AsyncMock()
    state = CalendarSyncState(enabled=True, last_sync_at=NOW, remote_event_ids=("e1",), status=SyncStatus.SYNCED)
    await store.update_sync_state("r1", state)
    written = db.regimens.update_one.await_args.args[1]["$set"]["calendar_sync"]
    assert written == {"enabled": True, "last_sync_at": NOW, "event_ids": ["e1"], "status": "synced"}
