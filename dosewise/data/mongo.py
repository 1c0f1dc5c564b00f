"""MongoDB-backed stores using motor.

Collections: users, dose_logs, regimens. Documents use string ids.
Daily claim dates are stored as ISO date strings so they compare correctly.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from dosewise.core.config import Settings
from dosewise.core.config import settings as default_settings
from dosewise.core.errors import StoreUnavailableError
from dosewise.data.encryption import open_token, seal_token
from dosewise.data.schemas import (
    CalendarCredential,
    CalendarSettings,
    CalendarSyncState,
    DoseEvent,
    DoseStatus,
    Frequency,
    LeaderboardEntry,
    Regimen,
    SyncStatus,
)
from dosewise.data.store import DoseLogStore, RegimenStore, UserStore, level_for, mask_username

logger = logging.getLogger(__name__)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Translate driver failures into StoreUnavailableError."""
    try:
        yield
    except PyMongoError as exc:
        logger.error("MongoDB %s failed: %s", operation, exc)
        msg = f"Data store unavailable during {operation}"
        raise StoreUnavailableError(msg) from exc


def dose_from_doc(doc: dict[str, Any]) -> DoseEvent:
    rewards = doc.get("rewards") or {}
    return DoseEvent(
        id=str(doc["_id"]),
        user_id=str(doc["user_id"]),
        scheduled_time=doc["scheduled_time"],
        status=DoseStatus(doc.get("status", DoseStatus.PENDING)),
        actual_time=doc.get("actual_time"),
        points_awarded=int(rewards.get("points", 0) or 0),
        bonus_points=int(rewards.get("bonus_points", 0) or 0),
        bonus_reason=rewards.get("reason_for_bonus"),
        medication_name=str(doc.get("medication_name") or "Unknown"),
        updated_at=doc.get("updated_at"),
    )


def regimen_from_doc(doc: dict[str, Any]) -> Regimen:
    sync_doc = doc.get("calendar_sync")
    sync_state = None
    if sync_doc is not None:
        sync_state = CalendarSyncState(
            enabled=bool(sync_doc.get("enabled", False)),
            last_sync_at=sync_doc.get("last_sync_at"),
            remote_event_ids=tuple(sync_doc.get("event_ids", [])),
            status=SyncStatus(sync_doc.get("status", SyncStatus.SYNCED)),
        )
    end_date = doc.get("end_date")
    return Regimen(
        id=str(doc["_id"]),
        user_id=str(doc["user_id"]),
        medication_name=str(doc["medication_name"]),
        dosage_amount=float(doc.get("dosage_amount", 0)),
        dosage_unit=str(doc.get("dosage_unit", "")),
        frequency=Frequency(doc.get("frequency", Frequency.ONCE_DAILY)),
        start_date=date.fromisoformat(doc["start_date"]),
        custom_schedule=tuple(doc.get("custom_schedule", [])),
        end_date=date.fromisoformat(end_date) if end_date else None,
        is_active=bool(doc.get("is_active", True)),
        sync_state=sync_state,
    )


class MongoStore(DoseLogStore, UserStore, RegimenStore):
    """All three store interfaces over a single MongoDB database."""

    def __init__(self, db: AsyncIOMotorDatabase[Any], config: Settings | None = None) -> None:
        self._db = db
        self._cfg = config or default_settings

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> MongoStore:
        cfg = config or default_settings
        client: AsyncIOMotorClient[Any] = AsyncIOMotorClient(cfg.mongodb_url, tz_aware=True)
        return cls(client[cfg.mongodb_database], cfg)

    def close(self) -> None:
        self._db.client.close()

    # --- DoseLogStore ---

    async def find_recent_dose_events(self, user_id: str, limit: int) -> list[DoseEvent]:
        with _store_errors("find_recent_dose_events"):
            cursor = self._db.dose_logs.find({"user_id": user_id}).sort("scheduled_time", -1).limit(limit)
            docs = await cursor.to_list(length=limit)
        return [dose_from_doc(d) for d in docs]

    async def count_dose_events_in_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        status: DoseStatus | None = None,
    ) -> int:
        query: dict[str, Any] = {"user_id": user_id, "scheduled_time": {"$gte": start, "$lt": end}}
        if status is not None:
            query["status"] = str(status)
        with _store_errors("count_dose_events_in_range"):
            count: int = await self._db.dose_logs.count_documents(query)
        return count

    async def find_dose_events_in_range(self, user_id: str, start: datetime, end: datetime) -> list[DoseEvent]:
        query = {"user_id": user_id, "scheduled_time": {"$gte": start, "$lt": end}}
        with _store_errors("find_dose_events_in_range"):
            docs = await self._db.dose_logs.find(query).sort("scheduled_time", 1).to_list(length=None)
        return [dose_from_doc(d) for d in docs]

    # --- UserStore ---

    async def _user_doc(self, user_id: str, projection: dict[str, int]) -> dict[str, Any]:
        with _store_errors("find_user"):
            doc = await self._db.users.find_one({"_id": user_id}, projection)
        return doc or {}

    async def get_baseline_points(self, user_id: str) -> int:
        doc = await self._user_doc(user_id, {"total_reward_points": 1})
        return int(doc.get("total_reward_points", 0))

    async def get_last_daily_claim(self, user_id: str) -> date | None:
        doc = await self._user_doc(user_id, {"last_daily_claim_date": 1})
        raw = doc.get("last_daily_claim_date")
        return date.fromisoformat(raw) if raw else None

    async def get_and_set_daily_claim(self, user_id: str, today: date, points: int) -> int | None:
        today_iso = today.isoformat()
        claim_filter = {
            "_id": user_id,
            "$or": [
                {"last_daily_claim_date": {"$exists": False}},
                {"last_daily_claim_date": None},
                {"last_daily_claim_date": {"$lt": today_iso}},
            ],
        }
        update = {"$set": {"last_daily_claim_date": today_iso}, "$inc": {"total_reward_points": points}}
        with _store_errors("get_and_set_daily_claim"):
            try:
                doc = await self._db.users.find_one_and_update(
                    claim_filter,
                    update,
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                # The user exists and the filter did not match: already claimed today.
                return None
        if doc is None:
            return None
        return int(doc.get("total_reward_points", 0))

    async def get_unlocked_achievements(self, user_id: str) -> dict[str, datetime]:
        doc = await self._user_doc(user_id, {"achievements": 1})
        return dict(doc.get("achievements") or {})

    async def record_achievement_unlocks(self, user_id: str, unlocks: dict[str, datetime]) -> None:
        with _store_errors("record_achievement_unlocks"):
            for achievement_id, unlocked_at in unlocks.items():
                key = f"achievements.{achievement_id}"
                await self._db.users.update_one(
                    {"_id": user_id, key: {"$exists": False}},
                    {"$set": {key: unlocked_at}},
                )

    async def get_calendar_credential(self, user_id: str) -> CalendarCredential | None:
        doc = await self._user_doc(user_id, {"calendar": 1})
        cal = doc.get("calendar")
        if not cal:
            return None
        settings_doc = cal.get("settings") or {}
        identity = self._cfg.age_identity
        return CalendarCredential(
            access_token=open_token(cal.get("access_token", ""), identity),
            refresh_token=open_token(cal.get("refresh_token", ""), identity),
            token_expiry=cal.get("token_expiry"),
            is_connected=bool(cal.get("is_connected", False)),
            connected_at=cal.get("connected_at"),
            settings=CalendarSettings(
                sync_enabled=bool(settings_doc.get("sync_enabled", True)),
                reminder_offsets=tuple(settings_doc.get("reminder_offsets", (10, 60))),
                target_calendar_id=str(settings_doc.get("target_calendar_id", "primary")),
            ),
        )

    async def update_calendar_credential(self, user_id: str, credential: CalendarCredential) -> None:
        recipient = self._cfg.age_recipient
        cal = {
            "access_token": seal_token(credential.access_token, recipient),
            "refresh_token": seal_token(credential.refresh_token, recipient),
            "token_expiry": credential.token_expiry,
            "is_connected": credential.is_connected,
            "connected_at": credential.connected_at,
            "settings": {
                "sync_enabled": credential.settings.sync_enabled,
                "reminder_offsets": list(credential.settings.reminder_offsets),
                "target_calendar_id": credential.settings.target_calendar_id,
            },
        }
        with _store_errors("update_calendar_credential"):
            await self._db.users.update_one({"_id": user_id}, {"$set": {"calendar": cal}}, upsert=True)

    async def clear_calendar_credential(self, user_id: str) -> None:
        with _store_errors("clear_calendar_credential"):
            await self._db.users.update_one({"_id": user_id}, {"$unset": {"calendar": 1}})

    async def leaderboard(self, limit: int = 10) -> list[LeaderboardEntry]:
        with _store_errors("leaderboard"):
            cursor = (
                self._db.users.find({"total_reward_points": {"$gt": 0}}, {"username": 1, "total_reward_points": 1})
                .sort("total_reward_points", -1)
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
        return [
            LeaderboardEntry(
                username=mask_username(str(d.get("username", ""))),
                total_points=int(d["total_reward_points"]),
                level=level_for(int(d["total_reward_points"])),
            )
            for d in docs
        ]

    async def rank_of(self, user_id: str) -> tuple[int, int]:
        points = await self.get_baseline_points(user_id)
        with _store_errors("rank_of"):
            ahead = await self._db.users.count_documents({"total_reward_points": {"$gt": points}})
            total = await self._db.users.count_documents({"total_reward_points": {"$gt": 0}})
        return ahead + 1, total

    # --- RegimenStore ---

    async def list_active_regimens(self, user_id: str) -> list[Regimen]:
        with _store_errors("list_active_regimens"):
            docs = await self._db.regimens.find({"user_id": user_id, "is_active": True}).sort("_id", 1).to_list(None)
        return [regimen_from_doc(d) for d in docs]

    async def list_synced_regimens(self, user_id: str) -> list[Regimen]:
        query = {"user_id": user_id, "calendar_sync": {"$exists": True}}
        with _store_errors("list_synced_regimens"):
            docs = await self._db.regimens.find(query).sort("_id", 1).to_list(None)
        return [regimen_from_doc(d) for d in docs]

    async def get_regimen(self, user_id: str, regimen_id: str) -> Regimen | None:
        with _store_errors("get_regimen"):
            doc = await self._db.regimens.find_one({"_id": regimen_id, "user_id": user_id})
        return regimen_from_doc(doc) if doc else None

    async def update_sync_state(self, regimen_id: str, state: CalendarSyncState | None) -> None:
        if state is None:
            update: dict[str, Any] = {"$unset": {"calendar_sync": 1}}
        else:
            update = {
                "$set": {
                    "calendar_sync": {
                        "enabled": state.enabled,
                        "last_sync_at": state.last_sync_at,
                        "event_ids": list(state.remote_event_ids),
                        "status": str(state.status),
                    }
                }
            }
        with _store_errors("update_sync_state"):
            await self._db.regimens.update_one({"_id": regimen_id}, update)
