"""Tests for dosewise.data.schemas."""

from datetime import UTC, date, datetime, timedelta

import pytest

from dosewise.core.errors import ValidationError
from dosewise.data.schemas import (
    CalendarCredential,
    DoseEvent,
    DoseStatus,
    EventResult,
    Frequency,
    Regimen,
    RegimenSyncOutcome,
    SyncStatus,
    make_progress,
    parse_hhmm,
)

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class TestParseHHMM:
    def test_valid(self) -> None:
        assert parse_hhmm("08:30") == (8, 30)
        assert parse_hhmm("23:59") == (23, 59)

    @pytest.mark.parametrize("value", ["8:30", "24:00", "12:60", "noon", ""])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValidationError):
            parse_hhmm(value)


class TestDoseEvent:
    def test_taken_requires_actual_time(self) -> None:
        with pytest.raises(ValidationError):
            DoseEvent(id="d1", user_id="u1", scheduled_time=NOW, status=DoseStatus.TAKEN)

    def test_negative_points_rejected(self) -> None:
        with pytest.raises(ValidationError):
            DoseEvent(id="d1", user_id="u1", scheduled_time=NOW, points_awarded=-1)

    def test_total_points(self) -> None:
        event = DoseEvent(
            id="d1",
            user_id="u1",
            scheduled_time=NOW,
            status=DoseStatus.TAKEN,
            actual_time=NOW,
            points_awarded=10,
            bonus_points=5,
        )
        assert event.total_points == 15

    def test_on_time_within_tolerance(self) -> None:
        event = DoseEvent(
            id="d1",
            user_id="u1",
            scheduled_time=NOW,
            status=DoseStatus.TAKEN,
            actual_time=NOW + timedelta(minutes=14),
        )
        assert event.is_on_time()
        assert not event.is_on_time(timedelta(minutes=10))

    def test_missed_is_never_on_time(self) -> None:
        event = DoseEvent(id="d1", user_id="u1", scheduled_time=NOW, status=DoseStatus.MISSED)
        assert not event.is_on_time()


class TestRegimen:
    def _make(self, **overrides: object) -> Regimen:
        fields: dict[str, object] = {
            "id": "r1",
            "user_id": "u1",
            "medication_name": "Metformin",
            "dosage_amount": 500,
            "dosage_unit": "mg",
            "frequency": Frequency.TWICE_DAILY,
            "start_date": date(2026, 3, 1),
        }
        fields.update(overrides)
        return Regimen(**fields)  # type: ignore[arg-type]

    def test_custom_requires_times(self) -> None:
        with pytest.raises(ValidationError):
            self._make(frequency=Frequency.CUSTOM)

    def test_custom_validates_times(self) -> None:
        with pytest.raises(ValidationError):
            self._make(frequency=Frequency.CUSTOM, custom_schedule=("7am",))

    def test_end_before_start_rejected(self) -> None:
        with pytest.raises(ValidationError):
            self._make(end_date=date(2026, 2, 1))

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(ValidationError):
            self._make(medication_name="")

    def test_remote_ids_default_empty(self) -> None:
        assert self._make().remote_event_ids == ()


class TestCalendarCredential:
    def test_usable(self) -> None:
        cred = CalendarCredential(access_token="tok", token_expiry=NOW + timedelta(hours=1))
        assert cred.is_usable(NOW)

    def test_expired(self) -> None:
        cred = CalendarCredential(access_token="tok", token_expiry=NOW - timedelta(seconds=1))
        assert not cred.is_usable(NOW)

    def test_disconnected_or_tokenless(self) -> None:
        assert not CalendarCredential(access_token="tok", is_connected=False).is_usable(NOW)
        assert not CalendarCredential(access_token="").is_usable(NOW)


def test_make_progress_zero_total() -> None:
    progress = make_progress(0, 0)
    assert progress.percentage == 0.0


def test_make_progress_ratio() -> None:
    assert make_progress(4, 3).percentage == pytest.approx(75.0)


def test_outcome_events_failed() -> None:
    outcome = RegimenSyncOutcome(
        regimen_id="r1",
        medication_name="Metformin",
        result=EventResult.CREATED,
        status=SyncStatus.PARTIALLY_SYNCED,
        events_attempted=10,
        events_created=7,
        remote_event_ids=tuple(f"e{i}" for i in range(7)),
    )
    assert outcome.events_failed == 3
