"""FastAPI entrypoint: rewards, adherence reports and calendar sync."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from dosewise.core.config import Settings, settings
from dosewise.core.errors import (
    NotConnectedError,
    RegimenNotFoundError,
    StoreUnavailableError,
    SyncTimeoutError,
    ValidationError,
)
from dosewise.data.mongo import MongoStore
from dosewise.data.reports import AdherenceReports
from dosewise.data.rewards import RewardsAggregator
from dosewise.data.schemas import CalendarCredential, CalendarSettings
from dosewise.data.store import InMemoryStore
from dosewise.integrations.calendar import (
    AuthExpiredError,
    CalendarSyncEngine,
    GoogleCalendarProvider,
    ProviderError,
    ProviderUnavailableError,
    RateLimitedError,
)
from dosewise.integrations.calendar.google import build_auth_url, exchange_code, refresh_access_token

logger = logging.getLogger(__name__)

_rewards: RewardsAggregator | None = None
_reports: AdherenceReports | None = None
_engine: CalendarSyncEngine | None = None
_http_client: httpx.AsyncClient | None = None


def wire(store: InMemoryStore | MongoStore, engine: CalendarSyncEngine, config: Settings | None = None) -> None:
    """Install the store and services used by the route handlers."""
    global _rewards, _reports, _engine  # noqa: PLW0603
    cfg = config or settings
    _rewards = RewardsAggregator(store, store, cfg)
    _reports = AdherenceReports(store, cfg)
    _engine = engine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the data store and the shared Google HTTP client for the app's lifetime."""
    global _http_client  # noqa: PLW0603

    store: InMemoryStore | MongoStore
    if settings.mongodb_url:
        store = MongoStore.from_settings(settings)
        logger.info("Using MongoDB store (database=%s)", settings.mongodb_database)
    else:
        store = InMemoryStore()
        logger.warning("MONGODB_URL not set, using in-memory store (data will not persist)")

    _http_client = httpx.AsyncClient(timeout=settings.provider_timeout)
    client = _http_client

    def provider_factory(credential: CalendarCredential) -> GoogleCalendarProvider:
        return GoogleCalendarProvider(credential.access_token, settings, client=client)

    async def code_exchanger(code: str) -> CalendarCredential:
        return await exchange_code(code, settings, client)

    async def token_refresher(credential: CalendarCredential) -> CalendarCredential:
        return await refresh_access_token(credential, settings, client)

    engine = CalendarSyncEngine(
        store,
        store,
        provider_factory,
        settings,
        code_exchanger=code_exchanger,
        token_refresher=token_refresher,
    )
    wire(store, engine)

    yield

    await client.aclose()
    _http_client = None
    if isinstance(store, MongoStore):
        store.close()


app = FastAPI(title="Dosewise", version="0.1.0", lifespan=lifespan)

_bearer_scheme = HTTPBearer()


# --- error mapping ---


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message, **extra})


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(422, str(exc))


@app.exception_handler(NotConnectedError)
async def _not_connected(request: Request, exc: NotConnectedError) -> JSONResponse:
    return _error(400, str(exc))


@app.exception_handler(RegimenNotFoundError)
async def _regimen_not_found(request: Request, exc: RegimenNotFoundError) -> JSONResponse:
    return _error(404, "Regimen not found", regimen_id=exc.regimen_id)


@app.exception_handler(StoreUnavailableError)
async def _store_unavailable(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    return _error(503, str(exc))


@app.exception_handler(SyncTimeoutError)
async def _sync_timeout(request: Request, exc: SyncTimeoutError) -> JSONResponse:
    return _error(
        408,
        "Calendar sync timed out. Please try again or sync regimens individually.",
        detail=str(exc),
    )


@app.exception_handler(TimeoutError)
async def _timeout(request: Request, exc: TimeoutError) -> JSONResponse:
    return _error(408, "Calendar request timed out. Please try again.")


@app.exception_handler(ProviderError)
async def _provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    if isinstance(exc, AuthExpiredError):
        return _error(401, "Calendar access expired. Please reconnect your Google Calendar.", reconnect_required=True)
    if isinstance(exc, ProviderUnavailableError | RateLimitedError):
        return _error(503, "Google Calendar is temporarily unavailable", detail=str(exc))
    logger.error("Unhandled calendar provider error: %s", exc)
    return _error(500, "Calendar provider error", detail=str(exc))


# --- request / response models ---


class HealthResponse(BaseModel):
    """Response for the /health endpoint."""

    status: str


class CallbackRequest(BaseModel):
    """Body for the OAuth callback endpoint."""

    code: str = Field(min_length=1)


class SettingsRequest(BaseModel):
    """Body for updating calendar preferences. Accepts camelCase keys too."""

    model_config = ConfigDict(populate_by_name=True)

    sync_enabled: bool = Field(alias="syncEnabled")
    reminder_offsets: list[int] = Field(alias="reminderMinutes", max_length=5)
    target_calendar_id: str = Field(default="primary", alias="calendarId")


# --- dependencies ---


async def _verify_api_key(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),  # noqa: B008
) -> str:
    """Validate the Bearer token against the configured api_key."""
    if not settings.api_key or credentials.credentials != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return credentials.credentials


def _require_rewards() -> RewardsAggregator:
    if _rewards is None:
        raise StoreUnavailableError("Service not initialised")
    return _rewards


def _require_reports() -> AdherenceReports:
    if _reports is None:
        raise StoreUnavailableError("Service not initialised")
    return _reports


def _require_engine() -> CalendarSyncEngine:
    if _engine is None:
        raise StoreUnavailableError("Service not initialised")
    return _engine


# --- routes ---


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok")


@app.get("/users/{user_id}/rewards/summary")
async def rewards_summary(user_id: str, _key: str = Depends(_verify_api_key)) -> dict[str, Any]:
    return asdict(await _require_rewards().compute_reward_summary(user_id))


@app.get("/users/{user_id}/rewards/achievements")
async def rewards_achievements(user_id: str, _key: str = Depends(_verify_api_key)) -> list[dict[str, Any]]:
    return [asdict(a) for a in await _require_rewards().achievements(user_id)]


@app.post("/users/{user_id}/rewards/claim-daily", response_model=None)
async def claim_daily(user_id: str, _key: str = Depends(_verify_api_key)) -> dict[str, Any] | JSONResponse:
    result = await _require_rewards().claim_daily_bonus(user_id)
    if not result.claimed:
        return _error(400, "Daily reward already claimed today", total_points=result.total_points)
    return {
        "message": "Daily reward claimed successfully!",
        "points": result.points_awarded,
        "total_points": result.total_points,
        "type": "daily_check_in",
    }


@app.get("/users/{user_id}/rewards/leaderboard")
async def leaderboard(
    user_id: str,
    limit: int = Query(default=10, ge=1, le=50),
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    return asdict(await _require_rewards().leaderboard(user_id, limit))


@app.get("/users/{user_id}/reports/heatmap")
async def heatmap(
    user_id: str,
    year: int | None = None,
    _key: str = Depends(_verify_api_key),
) -> list[dict[str, Any]]:
    selected = year if year is not None else datetime.now(ZoneInfo(settings.timezone)).year
    return [dict(day) for day in await _require_reports().heatmap(user_id, selected)]


@app.get("/users/{user_id}/reports/weekly-trends")
async def weekly_trends(
    user_id: str,
    weeks: int = 12,
    _key: str = Depends(_verify_api_key),
) -> list[dict[str, Any]]:
    return [dict(week) for week in await _require_reports().weekly_trends(user_id, weeks)]


@app.get("/users/{user_id}/reports/most-missed")
async def most_missed(
    user_id: str,
    limit: int = Query(default=5, ge=1, le=50),
    _key: str = Depends(_verify_api_key),
) -> list[dict[str, Any]]:
    return [dict(row) for row in await _require_reports().most_missed(user_id, limit)]


@app.get("/users/{user_id}/calendar/status")
async def calendar_status(user_id: str, _key: str = Depends(_verify_api_key)) -> dict[str, Any]:
    return asdict(await _require_engine().connection_status(user_id))


@app.get("/users/{user_id}/calendar/google/auth-url")
async def google_auth_url(user_id: str, _key: str = Depends(_verify_api_key)) -> dict[str, str]:
    return {"auth_url": build_auth_url(state=user_id, config=settings)}


@app.post("/users/{user_id}/calendar/google/callback")
async def google_callback(
    user_id: str,
    body: CallbackRequest,
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    calendars = await _require_engine().connect(user_id, body.code)
    return {"message": "Google Calendar connected successfully", "calendars": calendars}


@app.post("/users/{user_id}/calendar/sync-regimen/{regimen_id}")
async def sync_regimen(user_id: str, regimen_id: str, _key: str = Depends(_verify_api_key)) -> dict[str, Any]:
    outcome = await _require_engine().sync_regimen_by_id(user_id, regimen_id)
    return {
        "message": f"Successfully synced {outcome.events_created} events to Google Calendar",
        **asdict(outcome),
    }


@app.post("/users/{user_id}/calendar/sync-all")
async def sync_all(user_id: str, _key: str = Depends(_verify_api_key)) -> dict[str, Any]:
    return asdict(await _require_engine().sync_all_regimens(user_id))


@app.delete("/users/{user_id}/calendar/regimen/{regimen_id}")
async def remove_regimen(user_id: str, regimen_id: str, _key: str = Depends(_verify_api_key)) -> dict[str, Any]:
    return asdict(await _require_engine().remove_regimen_by_id(user_id, regimen_id))


@app.put("/users/{user_id}/calendar/settings")
async def update_calendar_settings(
    user_id: str,
    body: SettingsRequest,
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    updated = await _require_engine().update_settings(
        user_id,
        CalendarSettings(
            sync_enabled=body.sync_enabled,
            reminder_offsets=tuple(body.reminder_offsets),
            target_calendar_id=body.target_calendar_id,
        ),
    )
    return {"message": "Calendar settings updated successfully", "settings": asdict(updated)}


@app.delete("/users/{user_id}/calendar/disconnect")
async def disconnect(user_id: str, _key: str = Depends(_verify_api_key)) -> dict[str, Any]:
    removals = await _require_engine().disconnect(user_id)
    return {
        "message": "Google Calendar disconnected successfully",
        "events_deleted": sum(r.events_deleted for r in removals),
    }


@app.get("/users/{user_id}/calendar/upcoming")
async def upcoming(
    user_id: str,
    days: int = Query(default=7, ge=1, le=60),
    _key: str = Depends(_verify_api_key),
) -> dict[str, Any]:
    events = await _require_engine().upcoming_events(user_id, days)
    return {"events": [asdict(e) for e in events]}


@app.get("/users/{user_id}/calendar/export/ical")
async def export_ical(
    user_id: str,
    regimens: str | None = None,
    _key: str = Depends(_verify_api_key),
) -> Response:
    """Download the schedule as an .ics file; `regimens` is a comma-separated id list."""
    regimen_ids = [r for r in (regimens or "").split(",") if r]
    body = await _require_engine().export_ical(user_id, regimen_ids or None)
    return Response(
        content=body,
        media_type="text/calendar",
        headers={"Content-Disposition": 'attachment; filename="medication-schedule.ics"'},
    )


def main() -> None:
    """Run the API server with uvicorn."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.app_host, port=settings.app_port)
