"""Append-only audit log for calendar sync activity."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dosewise.data.schemas import RegimenSyncOutcome, RemovalOutcome, SyncAllOutcome

SYNC_AUDIT_FILE = "calendar_sync.jsonl"


def write_audit_entry(audit_path: Path, entry: dict[str, Any]) -> None:
    """Append a JSON-lines entry to an audit log file."""
    audit_path.parent.mkdir(parents=True, exist_ok=True)
    with audit_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(entry, default=str) + "\n")


def sync_audit_entry(
    user_id: str,
    action: str,
    outcome: RegimenSyncOutcome | SyncAllOutcome | RemovalOutcome | None = None,
) -> dict[str, Any]:
    """Summarize a sync outcome as an audit record (no tokens, no event payloads)."""
    entry: dict[str, Any] = {
        "timestamp": datetime.now(UTC).isoformat(),
        "user_id": user_id,
        "action": action,
    }
    if isinstance(outcome, RegimenSyncOutcome):
        entry.update(
            regimen_id=outcome.regimen_id,
            status=outcome.status,
            events_attempted=outcome.events_attempted,
            events_created=outcome.events_created,
            auth_expired=outcome.auth_expired,
        )
    elif isinstance(outcome, SyncAllOutcome):
        entry.update(
            total_events=outcome.total_events,
            success_count=outcome.success_count,
            failure_count=outcome.failure_count,
            not_attempted_count=outcome.not_attempted_count,
            auth_expired=outcome.auth_expired,
        )
    elif isinstance(outcome, RemovalOutcome):
        entry.update(
            regimen_id=outcome.regimen_id,
            events_deleted=outcome.events_deleted,
            events_failed=outcome.events_failed,
        )
    return entry
