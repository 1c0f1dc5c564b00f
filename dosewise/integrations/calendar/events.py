"""Deterministic expansion of regimens into calendar events, plus iCalendar export.

generate_schedule_events is pure: the same regimen, window and `now` always
produce the same events in the same order, which keeps re-syncs idempotent.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from dosewise.core.errors import ValidationError
from dosewise.data.schemas import CalendarEvent, Frequency, Regimen, parse_hhmm

EVENT_DURATION = timedelta(minutes=15)
DEFAULT_REMINDERS: tuple[int, ...] = (10, 60)
REMINDER_QUERY = "medication reminder"

SCHEDULE_TIMES: dict[Frequency, tuple[str, ...]] = {
    Frequency.ONCE_DAILY: ("08:00",),
    Frequency.TWICE_DAILY: ("08:00", "20:00"),
    Frequency.THREE_TIMES_DAILY: ("08:00", "14:00", "20:00"),
    Frequency.FOUR_TIMES_DAILY: ("08:00", "12:00", "16:00", "20:00"),
    Frequency.EVERY_OTHER_DAY: ("08:00",),
    Frequency.WEEKLY: ("08:00",),
}


def schedule_times(regimen: Regimen) -> list[time]:
    """Times of day for a regimen, sorted."""
    raw = regimen.custom_schedule if regimen.frequency == Frequency.CUSTOM else SCHEDULE_TIMES[regimen.frequency]
    return sorted({time(*parse_hhmm(value)) for value in raw})


def is_dose_day(regimen: Regimen, day: date) -> bool:
    """Whether the regimen has doses on a given local date."""
    if day < regimen.start_date:
        return False
    if regimen.end_date is not None and day > regimen.end_date:
        return False
    offset = (day - regimen.start_date).days
    if regimen.frequency == Frequency.EVERY_OTHER_DAY:
        return offset % 2 == 0
    if regimen.frequency == Frequency.WEEKLY:
        return offset % 7 == 0
    return True


def _dosage_text(regimen: Regimen) -> str:
    amount = f"{regimen.dosage_amount:g}"
    return f"{amount} {regimen.dosage_unit}".strip()


def generate_schedule_events(
    regimen: Regimen,
    window_days: int,
    now: datetime,
    tz: ZoneInfo,
    reminder_offsets: Iterable[int] = DEFAULT_REMINDERS,
) -> list[CalendarEvent]:
    """Expand a regimen into events for every dose day in [today, today + window_days).

    `today` is now's local date in tz. Events are ordered by start instant.
    """
    if window_days < 0:
        msg = "window_days must not be negative"
        raise ValidationError(msg)
    reminders = tuple(reminder_offsets)
    times = schedule_times(regimen)
    today = now.astimezone(tz).date()
    title = f"💊 {regimen.medication_name}"
    description = f"Medication reminder: Take {_dosage_text(regimen)} of {regimen.medication_name}"

    events: list[CalendarEvent] = []
    for offset in range(window_days):
        day = today + timedelta(days=offset)
        if not is_dose_day(regimen, day):
            continue
        for tod in times:
            start = datetime.combine(day, tod, tzinfo=tz).astimezone(UTC)
            events.append(
                CalendarEvent(
                    start=start,
                    end=start + EVENT_DURATION,
                    title=title,
                    description=description,
                    reminder_offsets=reminders,
                    regimen_id=regimen.id,
                )
            )
    return events


def to_google_payload(event: CalendarEvent) -> dict[str, Any]:
    """Google Calendar v3 event resource for a generated event."""
    return {
        "summary": event.title,
        "description": event.description,
        "start": {"dateTime": event.start.astimezone(UTC).isoformat(), "timeZone": "UTC"},
        "end": {"dateTime": event.end.astimezone(UTC).isoformat(), "timeZone": "UTC"},
        "reminders": {
            "useDefault": False,
            "overrides": [{"method": "popup", "minutes": m} for m in event.reminder_offsets],
        },
    }


# --- iCalendar export (RFC 5545) ---

_ICAL_STAMP = "%Y%m%dT%H%M%SZ"


def _escape_text(value: str) -> str:
    return value.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")


def _fold(line: str) -> list[str]:
    """Fold a content line to 75 octets per RFC 5545 section 3.1."""
    encoded = line.encode("utf-8")
    if len(encoded) <= 75:
        return [line]
    parts: list[str] = []
    current = ""
    for char in line:
        if len((current + char).encode("utf-8")) > 75:
            parts.append(current)
            current = " " + char
        else:
            current += char
    parts.append(current)
    return parts


def event_uid(event: CalendarEvent) -> str:
    return f"{event.regimen_id or 'regimen'}-{event.start.astimezone(UTC).strftime(_ICAL_STAMP)}@dosewise"


def to_ical(events: Iterable[CalendarEvent], generated_at: datetime) -> str:
    """Render events as a VCALENDAR document with CRLF line endings."""
    stamp = generated_at.astimezone(UTC).strftime(_ICAL_STAMP)
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//dosewise//medication schedule//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]
    for event in events:
        lines += [
            "BEGIN:VEVENT",
            f"UID:{event_uid(event)}",
            f"DTSTAMP:{stamp}",
            f"DTSTART:{event.start.astimezone(UTC).strftime(_ICAL_STAMP)}",
            f"DTEND:{event.end.astimezone(UTC).strftime(_ICAL_STAMP)}",
            f"SUMMARY:{_escape_text(event.title)}",
            f"DESCRIPTION:{_escape_text(event.description)}",
        ]
        for minutes in event.reminder_offsets:
            lines += [
                "BEGIN:VALARM",
                "ACTION:DISPLAY",
                f"DESCRIPTION:{_escape_text(event.title)}",
                f"TRIGGER:-PT{minutes}M",
                "END:VALARM",
            ]
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")

    folded: list[str] = []
    for line in lines:
        folded.extend(_fold(line))
    return "\r\n".join(folded) + "\r\n"
