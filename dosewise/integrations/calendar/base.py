"""Abstract base for remote calendar providers and their failure modes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Normalized provider failure kinds, consulted by the retry policy table."""

    RATE_LIMITED = "rate_limited"
    AUTH_EXPIRED = "auth_expired"
    NOT_FOUND = "not_found"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ProviderError(Exception):
    """A failed provider call. Subclasses pin the ErrorKind."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(ProviderError):
    kind = ErrorKind.RATE_LIMITED


class AuthExpiredError(ProviderError):
    """Credentials rejected; the user must reconnect. Never retried."""

    kind = ErrorKind.AUTH_EXPIRED

    def __init__(
        self,
        message: str = "Calendar authentication expired. Please reconnect.",
        status_code: int | None = 401,
    ) -> None:
        super().__init__(message, status_code)


class NotFoundError(ProviderError):
    kind = ErrorKind.NOT_FOUND


class ProviderUnavailableError(ProviderError):
    kind = ErrorKind.PROVIDER_UNAVAILABLE


@dataclass
class RemoteEvent:
    """A provider-side event as returned by list_events."""

    id: str
    summary: str
    description: str
    start: datetime | None
    end: datetime | None
    reminders: dict[str, Any] | None = None


class CalendarProvider(ABC):
    """Abstract remote calendar.

    Implementations: GoogleCalendarProvider. One instance is bound to one
    user's access token.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique provider name (e.g. 'google')."""

    @abstractmethod
    async def create_event(self, calendar_id: str, payload: dict[str, Any]) -> str:
        """Create an event and return its remote id."""

    @abstractmethod
    async def delete_event(self, calendar_id: str, remote_id: str) -> None:
        """Delete an event by remote id."""

    @abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        query: str | None = None,
    ) -> list[RemoteEvent]:
        """List single events in [time_min, time_max], ordered by start time."""

    @abstractmethod
    async def list_calendars(self) -> list[dict[str, Any]]:
        """Calendars visible to the user, as {id, summary, primary}."""

    async def initialize(self) -> None:  # noqa: B027
        """Initialize the provider (no-op default)."""

    async def shutdown(self) -> None:  # noqa: B027
        """Shut down the provider (no-op default)."""
