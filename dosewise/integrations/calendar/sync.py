"""Calendar sync engine: pushes regimen schedules to a remote calendar.

Creation runs in bounded batches (concurrent within a batch, sequential
across batches) and every provider call goes through call_with_retry.
The persisted remote_event_ids of a regimen only ever hold IDs the
provider confirmed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from dosewise.core.config import Settings
from dosewise.core.config import settings as default_settings
from dosewise.core.errors import (
    NotConnectedError,
    PartialFailure,
    RegimenNotFoundError,
    SyncTimeoutError,
    ValidationError,
)
from dosewise.data.audit import SYNC_AUDIT_FILE, sync_audit_entry, write_audit_entry
from dosewise.data.schemas import (
    CalendarCredential,
    CalendarEvent,
    CalendarSettings,
    CalendarSyncState,
    EventResult,
    EventSyncResult,
    Regimen,
    RegimenSyncOutcome,
    RemovalOutcome,
    SyncAllOutcome,
    SyncStatus,
)
from dosewise.data.store import RegimenStore, UserStore
from dosewise.integrations.calendar.base import (
    AuthExpiredError,
    CalendarProvider,
    ErrorKind,
    ProviderError,
    RemoteEvent,
)
from dosewise.integrations.calendar.cache import StatusCache
from dosewise.integrations.calendar.events import (
    REMINDER_QUERY,
    generate_schedule_events,
    to_google_payload,
    to_ical,
)
from dosewise.integrations.calendar.retry import Sleep, call_with_retry

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[CalendarCredential], CalendarProvider]
CodeExchanger = Callable[[str], Awaitable[CalendarCredential]]
TokenRefresher = Callable[[CalendarCredential], Awaitable[CalendarCredential]]


class _Aborted(Exception):
    """A sibling saw auth expiry; skip this event."""


@dataclass(frozen=True)
class ConnectionStatus:
    is_connected: bool
    connected_at: datetime | None
    settings: CalendarSettings


@dataclass
class _SyncProgress:
    """Events started and IDs confirmed so far; readable after an interrupted sync."""

    started: int = 0
    confirmed: list[str] = field(default_factory=list)


def _chunks(items: list[Any], size: int) -> list[list[Any]]:
    size = max(size, 1)
    return [items[i : i + size] for i in range(0, len(items), size)]


class CalendarSyncEngine:
    """Sync, removal and connection management for one remote calendar service."""

    def __init__(
        self,
        regimens: RegimenStore,
        users: UserStore,
        provider_factory: ProviderFactory,
        config: Settings | None = None,
        sleep: Sleep = asyncio.sleep,
        code_exchanger: CodeExchanger | None = None,
        status_cache: StatusCache | None = None,
        token_refresher: TokenRefresher | None = None,
    ) -> None:
        self._regimens = regimens
        self._users = users
        self._provider_factory = provider_factory
        self._cfg = config or default_settings
        self._sleep = sleep
        self._code_exchanger = code_exchanger
        self._token_refresher = token_refresher
        self._tz = ZoneInfo(self._cfg.timezone)
        self.status_cache = status_cache or StatusCache()

    # --- helpers ---

    def _now(self, now: datetime | None) -> datetime:
        return now or datetime.now(UTC)

    async def _audit(self, user_id: str, action: str, outcome: Any = None) -> None:
        entry = sync_audit_entry(user_id, action, outcome)
        await asyncio.to_thread(write_audit_entry, self._cfg.data_audit_path / SYNC_AUDIT_FILE, entry)

    @asynccontextmanager
    async def _provider(self, credential: CalendarCredential) -> AsyncIterator[CalendarProvider]:
        provider = self._provider_factory(credential)
        await provider.initialize()
        try:
            yield provider
        finally:
            await provider.shutdown()

    def _refreshable(self, credential: CalendarCredential) -> bool:
        return credential.can_refresh and self._token_refresher is not None

    async def _usable_credential(self, user_id: str, now: datetime | None = None) -> CalendarCredential:
        """Stored credential with a live access token, refreshing and persisting it when expired.

        Raises NotConnectedError when there is nothing to use, and
        AuthExpiredError when Google rejects the refresh token.
        """
        credential = await self._users.get_calendar_credential(user_id)
        if credential is None:
            raise NotConnectedError()
        if credential.is_usable(self._now(now)):
            return credential
        if self._token_refresher is None or not credential.can_refresh:
            raise NotConnectedError()
        try:
            refreshed = await self._token_refresher(credential)
        except AuthExpiredError:
            logger.warning("Refresh token for %s was rejected", user_id)
            self.status_cache.invalidate(user_id)
            raise
        await self._users.update_calendar_credential(user_id, refreshed)
        self.status_cache.invalidate(user_id)
        logger.info("Refreshed Google Calendar access token for %s", user_id)
        return refreshed

    async def _owned_regimen(self, user_id: str, regimen_id: str) -> Regimen:
        regimen = await self._regimens.get_regimen(user_id, regimen_id)
        if regimen is None:
            raise RegimenNotFoundError(regimen_id)
        return regimen

    def _schedule(self, regimen: Regimen, credential: CalendarCredential | None, now: datetime) -> list[CalendarEvent]:
        reminders = credential.settings.reminder_offsets if credential else (10, 60)
        return generate_schedule_events(regimen, self._cfg.sync_window_days, now, self._tz, reminders)

    # --- sync ---

    async def _push_event(
        self,
        provider: CalendarProvider,
        calendar_id: str,
        event: CalendarEvent,
        abort: asyncio.Event,
        confirmed: list[str],
    ) -> EventSyncResult:
        async def attempt() -> str:
            if abort.is_set():
                raise _Aborted
            return await provider.create_event(calendar_id, to_google_payload(event))

        try:
            result = await call_with_retry(
                attempt,
                timeout=self._cfg.provider_timeout,
                sleep=self._sleep,
                label=f"create event {event.regimen_id}@{event.start.isoformat()}",
            )
        except _Aborted:
            return EventSyncResult(start=event.start, result=EventResult.NOT_ATTEMPTED)

        if result.ok and result.value:
            confirmed.append(result.value)
            return EventSyncResult(
                start=event.start,
                result=EventResult.CREATED,
                remote_id=result.value,
                attempts=result.attempts,
            )
        if result.abort_siblings:
            abort.set()
        return EventSyncResult(
            start=event.start,
            result=EventResult.FAILED,
            error=str(result.error),
            attempts=result.attempts,
        )

    async def _sync_with(
        self,
        provider: CalendarProvider,
        regimen: Regimen,
        credential: CalendarCredential,
        now: datetime,
        progress: _SyncProgress | None = None,
    ) -> RegimenSyncOutcome:
        """Sync one regimen; auth expiry is reported in the outcome, not raised."""
        events = self._schedule(regimen, credential, now)[: self._cfg.sync_max_events]
        calendar_id = credential.settings.target_calendar_id
        previous = regimen.sync_state or CalendarSyncState()

        await self._regimens.update_sync_state(
            regimen.id,
            replace(previous, enabled=True, status=SyncStatus.SYNCING),
        )

        abort = asyncio.Event()
        progress = progress or _SyncProgress()
        confirmed = progress.confirmed
        results: list[EventSyncResult] = []
        batches = _chunks(events, self._cfg.sync_batch_size)
        try:
            for index, batch in enumerate(batches):
                if abort.is_set():
                    results += [EventSyncResult(start=e.start, result=EventResult.NOT_ATTEMPTED) for e in batch]
                    continue
                if index > 0:
                    await self._sleep(self._cfg.sync_batch_delay)
                progress.started += len(batch)
                results += await asyncio.gather(
                    *(self._push_event(provider, calendar_id, e, abort, confirmed) for e in batch)
                )
        except asyncio.CancelledError:
            # Interrupted: keep the old IDs and whatever was confirmed so nothing becomes untracked.
            logger.warning("Sync of regimen %s interrupted after %d events", regimen.id, len(confirmed))
            await self._regimens.update_sync_state(
                regimen.id,
                CalendarSyncState(
                    enabled=True,
                    last_sync_at=previous.last_sync_at,
                    remote_event_ids=tuple(dict.fromkeys([*previous.remote_event_ids, *confirmed])),
                    status=SyncStatus.PARTIALLY_SYNCED,
                ),
            )
            raise

        auth_expired = abort.is_set()
        created_ids = tuple(r.remote_id for r in results if r.remote_id)
        attempted = sum(1 for r in results if r.result != EventResult.NOT_ATTEMPTED)
        status = SyncStatus.SYNCED if len(created_ids) == len(events) else SyncStatus.PARTIALLY_SYNCED
        if auth_expired:
            stored_ids = tuple(dict.fromkeys([*previous.remote_event_ids, *created_ids]))
        else:
            stored_ids = created_ids

        await self._regimens.update_sync_state(
            regimen.id,
            CalendarSyncState(enabled=True, last_sync_at=now, remote_event_ids=stored_ids, status=status),
        )

        error: str | None = None
        if auth_expired:
            error = str(AuthExpiredError())
        elif len(created_ids) < attempted:
            error = str(PartialFailure(len(created_ids), attempted))

        logger.info(
            "Synced regimen %s (%s): %d/%d events created%s",
            regimen.id,
            regimen.medication_name,
            len(created_ids),
            attempted,
            ", auth expired" if auth_expired else "",
        )
        return RegimenSyncOutcome(
            regimen_id=regimen.id,
            medication_name=regimen.medication_name,
            result=EventResult.FAILED if attempted and not created_ids else EventResult.CREATED,
            status=status,
            events_attempted=attempted,
            events_created=len(created_ids),
            remote_event_ids=created_ids,
            auth_expired=auth_expired,
            error=error,
            events=tuple(results),
        )

    async def sync_regimen(
        self,
        regimen: Regimen,
        credential: CalendarCredential,
        now: datetime | None = None,
    ) -> RegimenSyncOutcome:
        """Push a regimen's upcoming doses to the calendar.

        Raises AuthExpiredError after persisting the confirmed IDs when the
        provider rejects the credential.
        """
        current = self._now(now)
        async with self._provider(credential) as provider:
            outcome = await self._sync_with(provider, regimen, credential, current)
        await self._audit(regimen.user_id, "sync_regimen", outcome)
        if outcome.auth_expired:
            self.status_cache.invalidate(regimen.user_id)
            raise AuthExpiredError()
        return outcome

    async def sync_regimen_by_id(self, user_id: str, regimen_id: str, now: datetime | None = None) -> RegimenSyncOutcome:
        regimen = await self._owned_regimen(user_id, regimen_id)
        credential = await self._usable_credential(user_id, now)
        try:
            async with asyncio.timeout(self._cfg.sync_regimen_timeout):
                return await self.sync_regimen(regimen, credential, now)
        except TimeoutError as exc:
            raise SyncTimeoutError(f"Sync of regimen {regimen_id} timed out") from exc

    async def sync_all_regimens(self, user_id: str, now: datetime | None = None) -> SyncAllOutcome:
        """Sync every active regimen in chunks, recording each outcome independently.

        Once the provider rejects the credential, the remaining regimens are
        reported as not attempted and no further provider calls are made.
        """
        current = self._now(now)
        credential = await self._usable_credential(user_id, current)
        regimens = await self._regimens.list_active_regimens(user_id)
        if not regimens:
            return SyncAllOutcome(
                message="No active regimens found to sync",
                total_events=0,
                success_count=0,
                failure_count=0,
                not_attempted_count=0,
                auth_expired=False,
                results=[],
            )

        results: list[RegimenSyncOutcome] = []
        auth_expired = False
        chunks = _chunks(regimens, self._cfg.sync_regimen_chunk_size)
        async with self._provider(credential) as provider:
            for index, chunk in enumerate(chunks):
                if index > 0 and not auth_expired:
                    await self._sleep(self._cfg.sync_regimen_delay)
                for regimen in chunk:
                    if auth_expired:
                        results.append(self._not_attempted(regimen))
                        continue
                    outcome = await self._sync_one_of_many(provider, regimen, credential, current)
                    auth_expired = outcome.auth_expired
                    results.append(outcome)

        total_events = sum(r.events_created for r in results)
        success = sum(1 for r in results if r.result == EventResult.CREATED)
        failure = sum(1 for r in results if r.result == EventResult.FAILED)
        skipped = sum(1 for r in results if r.result == EventResult.NOT_ATTEMPTED)
        message = (
            f"Sync completed: {total_events} total events created "
            f"({success}/{len(regimens)} regimens synced successfully)"
        )
        if auth_expired:
            message += ". Calendar authentication expired. Please reconnect."
            self.status_cache.invalidate(user_id)

        summary = SyncAllOutcome(
            message=message,
            total_events=total_events,
            success_count=success,
            failure_count=failure,
            not_attempted_count=skipped,
            auth_expired=auth_expired,
            results=results,
        )
        logger.info("Calendar sync for %s: %d ok, %d failed, %d skipped", user_id, success, failure, skipped)
        await self._audit(user_id, "sync_all", summary)
        return summary

    async def _sync_one_of_many(
        self,
        provider: CalendarProvider,
        regimen: Regimen,
        credential: CalendarCredential,
        now: datetime,
    ) -> RegimenSyncOutcome:
        progress = _SyncProgress()
        try:
            async with asyncio.timeout(self._cfg.sync_regimen_timeout):
                return await self._sync_with(provider, regimen, credential, now, progress)
        except TimeoutError:
            logger.warning(
                "Sync of regimen %s timed out after %d of %d started events",
                regimen.id,
                len(progress.confirmed),
                progress.started,
            )
            return self._timed_out(regimen, progress)

    @staticmethod
    def _timed_out(regimen: Regimen, progress: _SyncProgress) -> RegimenSyncOutcome:
        """Failure outcome that still counts the events confirmed before the timeout."""
        state = regimen.sync_state or CalendarSyncState()
        return RegimenSyncOutcome(
            regimen_id=regimen.id,
            medication_name=regimen.medication_name,
            result=EventResult.FAILED,
            status=SyncStatus.PARTIALLY_SYNCED,
            events_attempted=progress.started,
            events_created=len(progress.confirmed),
            remote_event_ids=tuple(dict.fromkeys([*state.remote_event_ids, *progress.confirmed])),
            error="Regimen sync timeout",
        )

    @staticmethod
    def _not_attempted(regimen: Regimen) -> RegimenSyncOutcome:
        state = regimen.sync_state or CalendarSyncState()
        return RegimenSyncOutcome(
            regimen_id=regimen.id,
            medication_name=regimen.medication_name,
            result=EventResult.NOT_ATTEMPTED,
            status=state.status,
            events_attempted=0,
            events_created=0,
            remote_event_ids=state.remote_event_ids,
            auth_expired=False,
            error="Skipped: calendar authentication expired",
        )

    # --- removal ---

    async def _remove_with(self, provider: CalendarProvider, regimen: Regimen, calendar_id: str) -> RemovalOutcome:
        deleted = 0
        failed = 0
        auth_lost = False
        for remote_id in regimen.remote_event_ids:
            if auth_lost:
                failed += 1
                continue
            result = await call_with_retry(
                lambda rid=remote_id: provider.delete_event(calendar_id, rid),
                timeout=self._cfg.provider_timeout,
                sleep=self._sleep,
                label=f"delete event {remote_id}",
            )
            if result.ok or result.kind == ErrorKind.NOT_FOUND:
                deleted += 1
            else:
                failed += 1
                auth_lost = result.abort_siblings

        await self._regimens.update_sync_state(regimen.id, None)
        logger.info("Removed regimen %s from calendar: %d deleted, %d failed", regimen.id, deleted, failed)
        return RemovalOutcome(
            regimen_id=regimen.id,
            events_deleted=deleted,
            events_failed=failed,
            message=f"Removed {deleted} events from Google Calendar",
        )

    async def _forget(self, regimen: Regimen) -> RemovalOutcome:
        """Clear a regimen's sync state without touching the calendar."""
        await self._regimens.update_sync_state(regimen.id, None)
        return RemovalOutcome(
            regimen_id=regimen.id,
            events_deleted=0,
            events_failed=len(regimen.remote_event_ids),
            message="Removed 0 events from Google Calendar",
        )

    async def remove_regimen_from_calendar(self, regimen: Regimen, credential: CalendarCredential) -> RemovalOutcome:
        """Best-effort delete of a regimen's events; the sync state is always cleared."""
        async with self._provider(credential) as provider:
            outcome = await self._remove_with(provider, regimen, credential.settings.target_calendar_id)
        await self._audit(regimen.user_id, "remove_regimen", outcome)
        return outcome

    async def remove_regimen_by_id(self, user_id: str, regimen_id: str, now: datetime | None = None) -> RemovalOutcome:
        regimen = await self._owned_regimen(user_id, regimen_id)
        credential = await self._usable_credential(user_id, now)
        return await self.remove_regimen_from_calendar(regimen, credential)

    # --- connection ---

    async def connect(self, user_id: str, code: str, now: datetime | None = None) -> list[dict[str, Any]]:
        """Complete the OAuth flow and return the user's calendars."""
        if not code:
            raise ValidationError("Authorization code is required")
        if self._code_exchanger is None:
            raise NotConnectedError("No OAuth code exchanger configured")
        credential = await self._code_exchanger(code)
        previous = await self._users.get_calendar_credential(user_id)
        if previous is not None:
            credential = replace(credential, settings=previous.settings)
        await self._users.update_calendar_credential(user_id, credential)
        self.status_cache.invalidate(user_id)
        logger.info("Google Calendar connected for %s", user_id)

        async with self._provider(credential) as provider:
            result = await call_with_retry(
                provider.list_calendars,
                timeout=self._cfg.provider_timeout,
                sleep=self._sleep,
                label="list calendars",
            )
        if not result.ok:
            logger.warning("Connected %s but could not list calendars: %s", user_id, result.error)
            return []
        return result.value or []

    async def disconnect(self, user_id: str, now: datetime | None = None) -> list[RemovalOutcome]:
        """Remove every synced regimen's events (best effort), then forget the credential.

        Sync state is cleared for every synced regimen even when the calendar
        cannot be reached; those events are reported as failed deletions.
        """
        synced = await self._regimens.list_synced_regimens(user_id)
        credential: CalendarCredential | None = None
        if synced:
            try:
                credential = await self._usable_credential(user_id, now)
            except (NotConnectedError, ProviderError, TimeoutError) as exc:
                logger.warning("Disconnecting %s without deleting calendar events: %s", user_id, exc)

        outcomes: list[RemovalOutcome] = []
        if credential is not None:
            async with self._provider(credential) as provider:
                for regimen in synced:
                    outcomes.append(
                        await self._remove_with(provider, regimen, credential.settings.target_calendar_id)
                    )
        else:
            for regimen in synced:
                outcomes.append(await self._forget(regimen))
        for outcome in outcomes:
            await self._audit(user_id, "remove_regimen", outcome)

        await self._users.clear_calendar_credential(user_id)
        self.status_cache.invalidate(user_id)
        await self._audit(user_id, "disconnect")
        logger.info("Google Calendar disconnected for %s (%d regimens cleaned up)", user_id, len(outcomes))
        return outcomes

    async def connection_status(self, user_id: str, now: datetime | None = None) -> ConnectionStatus:
        """Connection state, cached for status_cache_seconds."""

        async def load() -> ConnectionStatus:
            credential = await self._users.get_calendar_credential(user_id)
            if credential is None:
                return ConnectionStatus(is_connected=False, connected_at=None, settings=CalendarSettings())
            return ConnectionStatus(
                is_connected=credential.is_usable(self._now(now)) or self._refreshable(credential),
                connected_at=credential.connected_at,
                settings=credential.settings,
            )

        status: ConnectionStatus = await self.status_cache.get_or_refresh(
            user_id, load, self._cfg.status_cache_seconds
        )
        return status

    async def update_settings(self, user_id: str, settings: CalendarSettings) -> CalendarSettings:
        if any(m < 0 for m in settings.reminder_offsets):
            raise ValidationError("Reminder offsets must not be negative")
        credential = await self._users.get_calendar_credential(user_id)
        if credential is None:
            raise NotConnectedError()
        await self._users.update_calendar_credential(user_id, replace(credential, settings=settings))
        self.status_cache.invalidate(user_id)
        return settings

    # --- reads ---

    async def upcoming_events(self, user_id: str, days: int = 7, now: datetime | None = None) -> list[RemoteEvent]:
        """Medication reminder events in the calendar over the next `days` days."""
        if days < 1:
            raise ValidationError("days must be at least 1")
        current = self._now(now)
        credential = await self._usable_credential(user_id, current)
        async with self._provider(credential) as provider:
            result = await call_with_retry(
                lambda: provider.list_events(
                    credential.settings.target_calendar_id,
                    current,
                    current + timedelta(days=days),
                    REMINDER_QUERY,
                ),
                timeout=self._cfg.provider_timeout,
                sleep=self._sleep,
                label="list upcoming events",
            )
        if result.error is not None:
            if result.kind == ErrorKind.AUTH_EXPIRED:
                self.status_cache.invalidate(user_id)
            raise result.error
        return result.value or []

    async def export_ical(
        self,
        user_id: str,
        regimen_ids: list[str] | None = None,
        now: datetime | None = None,
    ) -> str:
        """iCalendar document for the given regimens, or all active ones."""
        current = self._now(now)
        if regimen_ids:
            regimens = [await self._owned_regimen(user_id, rid) for rid in regimen_ids]
        else:
            regimens = await self._regimens.list_active_regimens(user_id)
        credential = await self._users.get_calendar_credential(user_id)
        events: list[CalendarEvent] = []
        for regimen in regimens:
            events += self._schedule(regimen, credential, current)
        events.sort(key=lambda e: (e.start, e.regimen_id))
        return to_ical(events, current)
