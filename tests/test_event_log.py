"""Tests for the append-only event log — ids, persistence and tamper detection."""

import json
from datetime import datetime, timezone

import pytest

from ceremony.persistence.event_log import EventKind, EventLog, EventRecord


def _now() -> datetime:
    return datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


class TestRecord:
    def test_ids_are_monotonic(self) -> None:
        log = EventLog()
        first = log.record(EventKind.LOCK_GRANTED, "system", {"circuit_id": "c1"}, now=_now())
        second = log.record(EventKind.LOCK_RELEASED, "system", {"circuit_id": "c1"}, now=_now())
        assert first.event_id == "EVT-00000001"
        assert second.event_id == "EVT-00000002"
        assert first.timestamp_utc == "2026-03-01T09:30:00Z"
        assert first.event_hash.startswith("sha256:")
        assert log.count == 2
        assert log.last_event == second

    def test_filter_by_kind_and_circuit(self) -> None:
        log = EventLog()
        log.record(EventKind.LOCK_GRANTED, "system", {"circuit_id": "c1"})
        log.record(EventKind.LOCK_GRANTED, "system", {"circuit_id": "c2"})
        log.record(EventKind.CONTRIBUTOR_EVICTED, "system", {"circuit_id": "c1"})
        assert len(log.events(EventKind.LOCK_GRANTED)) == 2
        assert len(log.events_for_circuit("c1")) == 2

    def test_duplicate_id_rejected(self) -> None:
        log = EventLog()
        event = EventRecord.create("EVT-X", EventKind.UPLOAD_OPENED, "alice", {})
        log.append(event)
        with pytest.raises(ValueError, match="Duplicate event ID"):
            log.append(event)

    def test_hash_covers_payload(self) -> None:
        a = EventRecord.create("E1", EventKind.UPLOAD_OPENED, "alice", {"n": 1}, _now())
        b = EventRecord.create("E1", EventKind.UPLOAD_OPENED, "alice", {"n": 2}, _now())
        assert a.event_hash != b.event_hash


class TestPersistence:
    def test_reload_continues_numbering(self, tmp_path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.record(EventKind.CEREMONY_CREATED, "coord", {"ceremony_id": "cer"})
        log.record(EventKind.CIRCUIT_REGISTERED, "coord", {"circuit_id": "c1"})

        reloaded = EventLog(storage_path=path)
        assert reloaded.count == 2
        assert reloaded.events()[0].event_kind == EventKind.CEREMONY_CREATED
        third = reloaded.record(EventKind.LOCK_GRANTED, "system", {})
        assert third.event_id == "EVT-00000003"

    def test_tampered_record_fails_load(self, tmp_path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).record(EventKind.LOCK_GRANTED, "system", {"index": 0})
        data = json.loads(path.read_text().strip())
        data["payload"]["index"] = 5
        path.write_text(json.dumps(data) + "\n")
        with pytest.raises(ValueError, match="Integrity check failed"):
            EventLog(storage_path=path)

    def test_duplicate_line_fails_load(self, tmp_path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).record(EventKind.LOCK_GRANTED, "system", {})
        line = path.read_text()
        path.write_text(line + line)
        with pytest.raises(ValueError, match="Duplicate event ID on recovery"):
            EventLog(storage_path=path)
