"""Tests for dosewise.data.audit: sync audit log helpers."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from dosewise.data.audit import sync_audit_entry, write_audit_entry
from dosewise.data.schemas import EventResult, RegimenSyncOutcome, RemovalOutcome, SyncAllOutcome, SyncStatus


class TestWriteAuditEntry:
    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        audit_file = tmp_path / "deep" / "nested" / "audit.jsonl"
        write_audit_entry(audit_file, {"ok": True})
        assert json.loads(audit_file.read_text().strip()) == {"ok": True}

    def test_appends_entries(self, tmp_path: Path) -> None:
        audit_file = tmp_path / "log.jsonl"
        for n in range(3):
            write_audit_entry(audit_file, {"n": n})
        lines = audit_file.read_text().strip().split("\n")
        assert [json.loads(line)["n"] for line in lines] == [0, 1, 2]

    def test_handles_datetime_serialization(self, tmp_path: Path) -> None:
        audit_file = tmp_path / "dt.jsonl"
        now = datetime.now(UTC)
        write_audit_entry(audit_file, {"ts": now})
        assert str(now) in json.loads(audit_file.read_text())["ts"]


class TestSyncAuditEntry:
    def test_regimen_outcome(self) -> None:
        outcome = RegimenSyncOutcome(
            regimen_id="r1",
            medication_name="Metformin",
            result=EventResult.CREATED,
            status=SyncStatus.PARTIALLY_SYNCED,
            events_attempted=10,
            events_created=7,
            remote_event_ids=("e1",),
        )
        entry = sync_audit_entry("u1", "sync_regimen", outcome)
        assert entry["action"] == "sync_regimen"
        assert entry["events_created"] == 7
        assert entry["status"] == "partially_synced"
        assert "remote_event_ids" not in entry

    def test_sync_all_outcome(self) -> None:
        outcome = SyncAllOutcome(
            message="done",
            total_events=3,
            success_count=1,
            failure_count=1,
            not_attempted_count=3,
            auth_expired=True,
            results=[],
        )
        entry = sync_audit_entry("u1", "sync_all", outcome)
        assert entry["auth_expired"] is True
        assert entry["not_attempted_count"] == 3

    def test_removal_and_bare_action(self) -> None:
        removal = RemovalOutcome(regimen_id="r1", events_deleted=2, events_failed=1, message="x")
        assert sync_audit_entry("u1", "remove_regimen", removal)["events_failed"] == 1
        bare = sync_audit_entry("u1", "disconnect")
        assert set(bare) == {"timestamp", "user_id", "action"}
