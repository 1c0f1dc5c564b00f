"""Tests for dosewise.app FastAPI endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from dosewise.app import app, wire
from dosewise.core.config import Settings, settings
from dosewise.core.errors import StoreUnavailableError
from dosewise.data.schemas import CalendarCredential, Frequency, Regimen
from dosewise.data.store import InMemoryStore
from dosewise.integrations.calendar import AuthExpiredError, CalendarProvider, CalendarSyncEngine

AUTH = {"Authorization": "Bearer test-key"}


def _provider() -> MagicMock:
    provider = MagicMock(spec=CalendarProvider)
    provider.initialize = AsyncMock()
    provider.shutdown = AsyncMock()
    provider.create_event = AsyncMock(side_effect=[f"evt-{i}" for i in range(100)])
    provider.delete_event = AsyncMock()
    provider.list_events = AsyncMock(return_value=[])
    provider.list_calendars = AsyncMock(return_value=[{"id": "primary", "summary": "Me", "primary": True}])
    return provider


def _regimen(regimen_id: str = "r1") -> Regimen:
    return Regimen(
        id=regimen_id,
        user_id="u1",
        medication_name="Metformin",
        dosage_amount=500,
        dosage_unit="mg",
        frequency=Frequency.ONCE_DAILY,
        start_date=date.today() - timedelta(days=1),
    )


@pytest.fixture
def store() -> InMemoryStore:
    s = InMemoryStore()
    s.add_user("u1", username="alice")
    return s


@pytest.fixture
def provider() -> MagicMock:
    return _provider()


@pytest.fixture
async def client(store: InMemoryStore, provider: MagicMock, tmp_path: Path) -> AsyncIterator[AsyncClient]:
    config = Settings(data_audit_path=tmp_path, sync_batch_delay=0, sync_regimen_delay=0)

    async def exchanger(code: str) -> CalendarCredential:
        return CalendarCredential(access_token=f"tok-{code}", connected_at=datetime.now(UTC))

    async def refresher(cred: CalendarCredential) -> CalendarCredential:
        raise AuthExpiredError("Google rejected the refresh token")

    engine = CalendarSyncEngine(
        store, store, lambda cred: provider, config, code_exchanger=exchanger, token_refresher=refresher
    )
    wire(store, engine, config)
    with patch.object(settings, "api_key", "test-key"):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as c:
            yield c


async def _connect(store: InMemoryStore) -> None:
    await store.update_calendar_credential("u1", CalendarCredential(access_token="tok"))


# ---------------------------------------------------------------------------
# Health and auth
# ---------------------------------------------------------------------------


async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_rejects_wrong_api_key(client: AsyncClient) -> None:
    resp = await client.get("/users/u1/rewards/summary", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


async def test_rejects_missing_api_key(client: AsyncClient) -> None:
    resp = await client.get("/users/u1/rewards/summary")
    assert resp.status_code in (401, 403)


# ---------------------------------------------------------------------------
# Rewards and reports
# ---------------------------------------------------------------------------


async def test_rewards_summary_for_new_user(client: AsyncClient) -> None:
    resp = await client.get("/users/u1/rewards/summary", headers=AUTH)
    assert resp.status_code == 200
    body = resp.json()
    assert body["total_points"] == 0
    assert body["current_level"] == 1
    assert body["can_claim_daily_bonus"] is True


async def test_claim_daily_once(client: AsyncClient) -> None:
    first = await client.post("/users/u1/rewards/claim-daily", headers=AUTH)
    assert first.status_code == 200
    assert first.json()["type"] == "daily_check_in"
    assert first.json()["points"] == first.json()["total_points"]

    second = await client.post("/users/u1/rewards/claim-daily", headers=AUTH)
    assert second.status_code == 400
    assert second.json()["message"] == "Daily reward already claimed today"


async def test_leaderboard_limit_validated(client: AsyncClient) -> None:
    resp = await client.get("/users/u1/rewards/leaderboard?limit=0", headers=AUTH)
    assert resp.status_code == 422


async def test_heatmap_rejects_bad_year(client: AsyncClient) -> None:
    resp = await client.get("/users/u1/reports/heatmap?year=1200", headers=AUTH)
    assert resp.status_code == 422
    assert "Year out of range" in resp.json()["message"]


async def test_store_outage_is_503(client: AsyncClient, store: InMemoryStore) -> None:
    with patch.object(store, "find_recent_dose_events", AsyncMock(side_effect=StoreUnavailableError("down"))):
        resp = await client.get("/users/u1/rewards/summary", headers=AUTH)
    assert resp.status_code == 503
    assert resp.json() == {"message": "down"}


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


async def test_status_when_not_connected(client: AsyncClient) -> None:
    resp = await client.get("/users/u1/calendar/status", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["is_connected"] is False


async def test_auth_url(client: AsyncClient) -> None:
    resp = await client.get("/users/u1/calendar/google/auth-url", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["auth_url"].startswith("https://accounts.google.com/")


async def test_callback_connects(client: AsyncClient, store: InMemoryStore) -> None:
    resp = await client.post("/users/u1/calendar/google/callback", json={"code": "abc"}, headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["calendars"][0]["id"] == "primary"
    assert (await store.get_calendar_credential("u1")) is not None


async def test_callback_requires_code(client: AsyncClient) -> None:
    resp = await client.post("/users/u1/calendar/google/callback", json={"code": ""}, headers=AUTH)
    assert resp.status_code == 422


async def test_sync_regimen_not_connected(client: AsyncClient, store: InMemoryStore) -> None:
    store.add_regimen(_regimen())
    resp = await client.post("/users/u1/calendar/sync-regimen/r1", headers=AUTH)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Google Calendar not connected"


async def test_sync_regimen_missing(client: AsyncClient, store: InMemoryStore) -> None:
    await _connect(store)
    resp = await client.post("/users/u1/calendar/sync-regimen/ghost", headers=AUTH)
    assert resp.status_code == 404
    assert resp.json() == {"message": "Regimen not found", "regimen_id": "ghost"}


async def test_sync_regimen_success(client: AsyncClient, store: InMemoryStore) -> None:
    await _connect(store)
    store.add_regimen(_regimen())
    resp = await client.post("/users/u1/calendar/sync-regimen/r1", headers=AUTH)
    assert resp.status_code == 200
    body = resp.json()
    assert body["events_created"] > 0
    assert body["message"] == f"Successfully synced {body['events_created']} events to Google Calendar"


async def test_sync_regimen_auth_expired(client: AsyncClient, store: InMemoryStore, provider: MagicMock) -> None:
    await _connect(store)
    store.add_regimen(_regimen())
    provider.create_event = AsyncMock(side_effect=AuthExpiredError())
    resp = await client.post("/users/u1/calendar/sync-regimen/r1", headers=AUTH)
    assert resp.status_code == 401
    assert resp.json()["reconnect_required"] is True


async def test_sync_regimen_refresh_rejected(client: AsyncClient, store: InMemoryStore, provider: MagicMock) -> None:
    expired = CalendarCredential(
        access_token="stale", refresh_token="revoked", token_expiry=datetime.now(UTC) - timedelta(minutes=5)
    )
    await store.update_calendar_credential("u1", expired)
    store.add_regimen(_regimen())
    resp = await client.post("/users/u1/calendar/sync-regimen/r1", headers=AUTH)
    assert resp.status_code == 401
    assert resp.json()["reconnect_required"] is True
    provider.create_event.assert_not_called()


async def test_sync_all_without_regimens(client: AsyncClient, store: InMemoryStore) -> None:
    await _connect(store)
    resp = await client.post("/users/u1/calendar/sync-all", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["message"] == "No active regimens found to sync"


async def test_settings_validation(client: AsyncClient, store: InMemoryStore) -> None:
    await _connect(store)
    too_many = {"syncEnabled": True, "reminderMinutes": [1, 2, 3, 4, 5, 6]}
    assert (await client.put("/users/u1/calendar/settings", json=too_many, headers=AUTH)).status_code == 422

    negative = {"syncEnabled": True, "reminderMinutes": [-5]}
    assert (await client.put("/users/u1/calendar/settings", json=negative, headers=AUTH)).status_code == 422

    ok = {"sync_enabled": False, "reminder_offsets": [15], "calendarId": "meds"}
    resp = await client.put("/users/u1/calendar/settings", json=ok, headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["settings"]["target_calendar_id"] == "meds"


async def test_disconnect(client: AsyncClient, store: InMemoryStore) -> None:
    await _connect(store)
    store.add_regimen(_regimen())
    await client.post("/users/u1/calendar/sync-regimen/r1", headers=AUTH)

    resp = await client.delete("/users/u1/calendar/disconnect", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["events_deleted"] > 0
    assert await store.get_calendar_credential("u1") is None


async def test_upcoming_days_bounds(client: AsyncClient, store: InMemoryStore) -> None:
    await _connect(store)
    assert (await client.get("/users/u1/calendar/upcoming?days=0", headers=AUTH)).status_code == 422
    resp = await client.get("/users/u1/calendar/upcoming?days=3", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json() == {"events": []}


async def test_ical_export(client: AsyncClient, store: InMemoryStore) -> None:
    store.add_regimen(_regimen())
    resp = await client.get("/users/u1/calendar/export/ical?regimens=r1", headers=AUTH)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/calendar")
    assert "attachment" in resp.headers["content-disposition"]
    assert resp.text.startswith("BEGIN:VCALENDAR")
