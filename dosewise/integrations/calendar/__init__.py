"""Calendar sync: provider interface, Google implementation and the sync engine."""

from dosewise.integrations.calendar.base import (
    AuthExpiredError,
    CalendarProvider,
    ErrorKind,
    NotFoundError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitedError,
    RemoteEvent,
)
from dosewise.integrations.calendar.cache import StatusCache
from dosewise.integrations.calendar.google import GoogleCalendarProvider
from dosewise.integrations.calendar.sync import CalendarSyncEngine, ConnectionStatus

__all__ = [
    "AuthExpiredError",
    "CalendarProvider",
    "CalendarSyncEngine",
    "ConnectionStatus",
    "ErrorKind",
    "GoogleCalendarProvider",
    "NotFoundError",
    "ProviderError",
    "ProviderUnavailableError",
    "RateLimitedError",
    "RemoteEvent",
    "StatusCache",
]
