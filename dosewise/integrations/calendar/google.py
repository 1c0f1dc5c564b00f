"""Google Calendar provider over the Calendar v3 REST API.

Error mapping:
  401 / invalid_grant                       → AuthExpiredError
  429 / 403 with a rate-limit reason        → RateLimitedError
  404 / 410                                 → NotFoundError
  5xx / transport error                     → ProviderUnavailableError
  request timeout                           → TimeoutError
  anything else                             → ProviderError (unknown)
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from dosewise.core.config import Settings
from dosewise.core.config import settings as default_settings
from dosewise.data.schemas import CalendarCredential
from dosewise.integrations.calendar.base import (
    AuthExpiredError,
    CalendarProvider,
    NotFoundError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitedError,
    RemoteEvent,
)

logger = logging.getLogger(__name__)

AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
SCOPES = (
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar.readonly",
)

_RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_reasons(body: dict[str, Any]) -> set[str]:
    error = body.get("error")
    if isinstance(error, str):
        return {error}
    if not isinstance(error, dict):
        return set()
    reasons = {str(e.get("reason", "")) for e in error.get("errors", []) if isinstance(e, dict)}
    if error.get("status"):
        reasons.add(str(error["status"]))
    return reasons


def raise_for_provider_status(response: httpx.Response) -> None:
    """Raise the ProviderError subclass matching a failed Google response."""
    if response.is_success:
        return
    status = response.status_code
    body = _error_body(response)
    reasons = _error_reasons(body)
    message = f"Google Calendar returned {status}: {response.text[:200]}"

    if status == 401 or "invalid_grant" in reasons:
        raise AuthExpiredError(status_code=status)
    if status == 429 or (status == 403 and reasons & _RATE_LIMIT_REASONS):
        raise RateLimitedError(message, status)
    if status in (404, 410):
        raise NotFoundError(message, status)
    if status >= 500:
        raise ProviderUnavailableError(message, status)
    raise ProviderError(message, status)


def _parse_when(value: dict[str, Any] | None) -> datetime | None:
    if not value:
        return None
    raw = value.get("dateTime") or value.get("date")
    if not raw:
        return None
    parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _parse_event(data: dict[str, Any]) -> RemoteEvent:
    """Parse a Calendar v3 event resource into a RemoteEvent."""
    return RemoteEvent(
        id=str(data.get("id", "")),
        summary=str(data.get("summary", "")),
        description=str(data.get("description", "")),
        start=_parse_when(data.get("start")),
        end=_parse_when(data.get("end")),
        reminders=data.get("reminders"),
    )


class GoogleCalendarProvider(CalendarProvider):
    """Calendar v3 client bound to one user's access token.

    Pass an httpx.AsyncClient to share a connection pool (or to inject a
    MockTransport in tests); otherwise one is created at initialize().
    """

    def __init__(
        self,
        access_token: str,
        config: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._cfg = config or default_settings
        self._token = access_token
        self._client = client
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "google"

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._cfg.provider_timeout)
            self._owns_client = True

    async def shutdown(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str) -> str:
        return f"{self._cfg.google_calendar_api_base.rstrip('/')}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        await self.initialize()
        assert self._client is not None
        headers = {"Authorization": f"Bearer {self._token}"}
        try:
            response = await self._client.request(method, self._url(path), headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"Google Calendar {method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"Google Calendar unreachable: {exc}") from exc
        raise_for_provider_status(response)
        return response

    async def create_event(self, calendar_id: str, payload: dict[str, Any]) -> str:
        response = await self._request("POST", f"calendars/{calendar_id}/events", json=payload)
        remote_id = str(response.json().get("id", ""))
        if not remote_id:
            raise ProviderError("Google Calendar created an event without an id")
        return remote_id

    async def delete_event(self, calendar_id: str, remote_id: str) -> None:
        await self._request("DELETE", f"calendars/{calendar_id}/events/{remote_id}")

    async def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        query: str | None = None,
    ) -> list[RemoteEvent]:
        params: dict[str, str] = {
            "timeMin": time_min.astimezone(UTC).isoformat(),
            "timeMax": time_max.astimezone(UTC).isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        if query:
            params["q"] = query
        response = await self._request("GET", f"calendars/{calendar_id}/events", params=params)
        items: list[dict[str, Any]] = response.json().get("items", [])
        return [_parse_event(item) for item in items]

    async def list_calendars(self) -> list[dict[str, Any]]:
        """Calendars visible to the user as {id, summary, primary}."""
        response = await self._request("GET", "users/me/calendarList")
        items: list[dict[str, Any]] = response.json().get("items", [])
        return [
            {"id": str(c.get("id", "")), "summary": str(c.get("summary", "")), "primary": bool(c.get("primary", False))}
            for c in items
        ]


# --- OAuth ---


def build_auth_url(state: str, config: Settings | None = None) -> str:
    """Consent screen URL requesting offline access to the calendar scopes."""
    cfg = config or default_settings
    params = {
        "client_id": cfg.google_client_id,
        "redirect_uri": cfg.google_redirect_uri,
        "response_type": "code",
        "scope": " ".join(SCOPES),
        "access_type": "offline",
        "state": state,
    }
    return str(httpx.URL(AUTH_ENDPOINT, params=params))




async def _post_token(data: dict[str, str], cfg: Settings, client: httpx.AsyncClient | None) -> dict[str, Any]:
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=cfg.provider_timeout)
    try:
        try:
            response = await http.post(TOKEN_ENDPOINT, data=data)
        except httpx.TimeoutException as exc:
            raise TimeoutError("Google token request timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"Google token endpoint unreachable: {exc}") from exc
        raise_for_provider_status(response)
        tokens: dict[str, Any] = response.json()
        return tokens
    finally:
        if owns_client:
            await http.aclose()


def _expiry(tokens: dict[str, Any], issued_at: datetime) -> datetime | None:
    expires_in = tokens.get("expires_in")
    return issued_at + timedelta(seconds=int(expires_in)) if expires_in else None


async def exchange_code(
    code: str,
    config: Settings | None = None,
    client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> CalendarCredential:
    """Trade an authorization code for tokens.

    Raises AuthExpiredError when Google rejects the code (invalid_grant).
    """
    cfg = config or default_settings
    tokens = await _post_token(
        {
            "code": code,
            "client_id": cfg.google_client_id,
            "client_secret": cfg.google_client_secret,
            "redirect_uri": cfg.google_redirect_uri,
            "grant_type": "authorization_code",
        },
        cfg,
        client,
    )
    connected_at = now or datetime.now(UTC)
    logger.info("Google Calendar token exchange succeeded")
    return CalendarCredential(
        access_token=str(tokens.get("access_token", "")),
        refresh_token=str(tokens.get("refresh_token", "")),
        token_expiry=_expiry(tokens, connected_at),
        is_connected=True,
        connected_at=connected_at,
    )


async def refresh_access_token(
    credential: CalendarCredential,
    config: Settings | None = None,
    client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> CalendarCredential:
    """Obtain a fresh access token with the stored refresh token.

    Settings and connected_at carry over. Google only sometimes rotates the
    refresh token, so the old one is kept unless a new one comes back.
    Raises AuthExpiredError when the refresh token was revoked (invalid_grant).
    """
    if not credential.refresh_token:
        raise AuthExpiredError("No refresh token available. Please reconnect.")
    cfg = config or default_settings
    tokens = await _post_token(
        {
            "client_id": cfg.google_client_id,
            "client_secret": cfg.google_client_secret,
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
        },
        cfg,
        client,
    )
    issued_at = now or datetime.now(UTC)
    logger.info("Google Calendar access token refreshed")
    return replace(
        credential,
        access_token=str(tokens.get("access_token", "")),
        refresh_token=str(tokens.get("refresh_token") or credential.refresh_token),
        token_expiry=_expiry(tokens, issued_at) or issued_at + timedelta(hours=1),
    )
