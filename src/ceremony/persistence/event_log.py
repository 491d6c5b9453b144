"""Append-only event log — the coordinator's audit trail.

Every grant, upload transition, verification outcome, eviction and
lifecycle change is appended here as an immutable, hashed record. The
log serves as:
1. The audit trail participants and observers use to check that every
   index was granted and accepted exactly once.
2. The operational record of what the coordinator did (there is no
   separate text log).

Records are kept in memory and, when a storage path is given, appended to
a JSONL file that is re-verified on load.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of coordinator events."""
    # Ceremony lifecycle
    CEREMONY_CREATED = "ceremony_created"
    CEREMONY_TRANSITION = "ceremony_transition"
    CIRCUIT_REGISTERED = "circuit_registered"
    CIRCUIT_COMPLETED = "circuit_completed"
    # Turn-taking
    PARTICIPANT_REGISTERED = "participant_registered"
    CONTRIBUTOR_QUEUED = "contributor_queued"
    LOCK_GRANTED = "lock_granted"
    LOCK_RELEASED = "lock_released"
    CONTRIBUTOR_EVICTED = "contributor_evicted"
    TIMEOUTS_RECONCILED = "timeouts_reconciled"
    # Upload
    CONTRIBUTION_DECLARED = "contribution_declared"
    UPLOAD_OPENED = "upload_opened"
    UPLOAD_CLOSED = "upload_closed"
    UPLOAD_ABORTED = "upload_aborted"
    STORAGE_RETRY = "storage_retry"
    # Verification
    CONTRIBUTION_VERIFIED = "contribution_verified"
    CONTRIBUTION_REJECTED = "contribution_rejected"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event.

    The event_hash is computed at creation time over the canonical JSON
    of every other field.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(event_id, event_kind.value, ts_str, actor_id, payload),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only event log with optional JSONL persistence.

    Safe to share between threads: appends are serialized.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)
        self._counter = len(self._events)

    def record(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> EventRecord:
        """Create and append an event with the next monotonic id."""
        with self._lock:
            self._counter += 1
            event = EventRecord.create(
                event_id=f"EVT-{self._counter:08d}",
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
                timestamp_utc=now,
            )
            self._append_locked(event)
            return event

    def append(self, event: EventRecord) -> None:
        """Append an event. Raises ValueError on a duplicate event id."""
        with self._lock:
            self._append_locked(event)

    def _append_locked(self, event: EventRecord) -> None:
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        if self._storage_path:
            with self._storage_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")
        self._events.append(event)
        self._event_ids.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        with self._lock:
            if kind is None:
                return list(self._events)
            return [e for e in self._events if e.event_kind == kind]

    def events_for_circuit(self, circuit_id: str) -> list[EventRecord]:
        return [e for e in self.events() if e.payload.get("circuit_id") == circuit_id]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _load_from_file(self, path: Path) -> None:
        """Load and verify a JSONL log.

        Fail-closed: a tampered record (hash mismatch) or a duplicate
        event id aborts the load.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]
                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )
                expected = _canonical_hash(
                    event_id,
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected}"
                    )
                self._events.append(EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                ))
                self._event_ids.add(event_id)
