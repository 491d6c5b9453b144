"""Reference MetadataStore — in-memory, optionally persisted to JSON.

Each circuit's waiting queue has its own lock, so conditional writes on
different circuits never contend with each other. Everything else is
guarded by one store-wide lock. Reads hand out copies: a caller that
mutates an entity must save it back, as with any external database.

When `storage_path` is given, the full state is rewritten to that file
(write to a temporary sibling, then rename) after every mutation and is
loaded back on construction.
"""

from __future__ import annotations

import copy
import dataclasses
import enum
import json
import os
import threading
import typing
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ceremony.errors import NotFoundError
from ceremony.models.ceremony import Ceremony, Circuit, WaitingQueue
from ceremony.models.contribution import Contribution, ContributionAttempt, Participant
from ceremony.models.upload import UploadSession


# ---------------------------------------------------------------------------
# JSON codec for the model dataclasses
# ---------------------------------------------------------------------------

def _encode(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _encode(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    return value


def _decode(tp: Any, raw: Any) -> Any:
    if raw is None:
        return None
    origin = typing.get_origin(tp)
    args = typing.get_args(tp)
    if origin is typing.Union:
        inner = [a for a in args if a is not type(None)]
        return _decode(inner[0], raw)
    if origin in (list, List):
        return [_decode(args[0], v) for v in raw]
    if origin is tuple:
        return tuple(_decode(args[0], v) for v in raw)
    if origin in (dict, Dict):
        return {k: _decode(args[1], v) for k, v in raw.items()}
    if isinstance(tp, type):
        if dataclasses.is_dataclass(tp):
            return _decode_dataclass(tp, raw)
        if issubclass(tp, enum.Enum):
            return tp(raw)
        if issubclass(tp, datetime):
            return datetime.fromisoformat(raw)
    return raw


def _decode_dataclass(cls: type, raw: Dict[str, Any]) -> Any:
    hints = typing.get_type_hints(cls)
    kwargs = {
        f.name: _decode(hints[f.name], raw[f.name])
        for f in dataclasses.fields(cls)
        if f.name in raw
    }
    return cls(**kwargs)


class InMemoryMetadataStore:
    """Thread-safe MetadataStore with per-circuit conditional writes."""

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._lock = threading.RLock()
        self._io_lock = threading.Lock()
        self._queue_locks: Dict[str, threading.Lock] = {}
        self._storage_path = storage_path

        self._ceremonies: Dict[str, Ceremony] = {}
        self._circuits: Dict[str, Circuit] = {}
        self._queues: Dict[str, WaitingQueue] = {}
        self._participants: Dict[str, Participant] = {}
        self._attempts: Dict[str, ContributionAttempt] = {}
        self._sessions: Dict[str, UploadSession] = {}
        self._contributions: Dict[str, List[Contribution]] = {}

        if storage_path and storage_path.exists():
            self._load(storage_path)

    # ------------------------------------------------------------------
    # Ceremonies and circuits
    # ------------------------------------------------------------------

    def get_ceremony(self, ceremony_id: str) -> Ceremony:
        with self._lock:
            ceremony = self._ceremonies.get(ceremony_id)
            if ceremony is None:
                raise NotFoundError(f"Unknown ceremony: {ceremony_id}")
            return copy.deepcopy(ceremony)

    def save_ceremony(self, ceremony: Ceremony) -> None:
        with self._lock:
            self._ceremonies[ceremony.ceremony_id] = copy.deepcopy(ceremony)
        self._persist()

    def list_ceremonies(self) -> List[Ceremony]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._ceremonies.values()]

    def get_circuit(self, circuit_id: str) -> Circuit:
        with self._lock:
            circuit = self._circuits.get(circuit_id)
            if circuit is None:
                raise NotFoundError(f"Unknown circuit: {circuit_id}", circuit_id=circuit_id)
            return copy.deepcopy(circuit)

    def save_circuit(self, circuit: Circuit) -> None:
        with self._lock:
            if circuit.ceremony_id not in self._ceremonies:
                raise NotFoundError(f"Unknown ceremony: {circuit.ceremony_id}")
            self._circuits[circuit.circuit_id] = copy.deepcopy(circuit)
            if circuit.circuit_id not in self._queues:
                self._queues[circuit.circuit_id] = WaitingQueue(circuit_id=circuit.circuit_id)
                self._queue_locks[circuit.circuit_id] = threading.Lock()
        self._persist()

    def circuits_for(self, ceremony_id: str) -> List[Circuit]:
        with self._lock:
            circuits = [
                copy.deepcopy(c) for c in self._circuits.values()
                if c.ceremony_id == ceremony_id
            ]
        return sorted(circuits, key=lambda c: c.sequence_position)

    # ------------------------------------------------------------------
    # Waiting queues
    # ------------------------------------------------------------------

    def read_queue(self, circuit_id: str) -> WaitingQueue:
        lock = self._queue_lock(circuit_id)
        with lock:
            return self._queues[circuit_id]

    def write_queue_conditional(
        self,
        circuit_id: str,
        expected_holder: Optional[str],
        new_queue: WaitingQueue,
    ) -> bool:
        """Compare-and-swap on (holder, revision)."""
        if new_queue.circuit_id != circuit_id:
            raise ValueError(
                f"Queue for {new_queue.circuit_id} written to circuit {circuit_id}"
            )
        lock = self._queue_lock(circuit_id)
        with lock:
            current = self._queues[circuit_id]
            if current.contributor_id != expected_holder:
                return False
            if current.revision != new_queue.revision:
                return False
            self._queues[circuit_id] = dataclasses.replace(
                new_queue, revision=current.revision + 1,
            )
        self._persist()
        return True

    def _queue_lock(self, circuit_id: str) -> threading.Lock:
        with self._lock:
            lock = self._queue_locks.get(circuit_id)
            if lock is None:
                raise NotFoundError(f"Unknown circuit: {circuit_id}", circuit_id=circuit_id)
            return lock

    # ------------------------------------------------------------------
    # Participants and attempts
    # ------------------------------------------------------------------

    def get_participant(self, ceremony_id: str, participant_id: str) -> Optional[Participant]:
        with self._lock:
            participant = self._participants.get(f"{ceremony_id}/{participant_id}")
            return copy.deepcopy(participant) if participant is not None else None

    def save_participant(self, participant: Participant) -> None:
        key = f"{participant.ceremony_id}/{participant.participant_id}"
        with self._lock:
            self._participants[key] = copy.deepcopy(participant)
        self._persist()

    def participants_for(self, ceremony_id: str) -> List[Participant]:
        with self._lock:
            return [
                copy.deepcopy(p) for p in self._participants.values()
                if p.ceremony_id == ceremony_id
            ]

    def get_attempt(self, attempt_id: str) -> ContributionAttempt:
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None:
                raise NotFoundError(f"Unknown attempt: {attempt_id}", attempt_id=attempt_id)
            return copy.deepcopy(attempt)

    def save_attempt(self, attempt: ContributionAttempt) -> None:
        with self._lock:
            self._attempts[attempt.attempt_id] = copy.deepcopy(attempt)
        self._persist()

    # ------------------------------------------------------------------
    # Upload sessions
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> UploadSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError(f"Unknown upload session: {session_id}")
            return copy.deepcopy(session)

    def save_session(self, session: UploadSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = copy.deepcopy(session)
        self._persist()

    def session_for_attempt(self, attempt_id: str) -> Optional[UploadSession]:
        with self._lock:
            for session in self._sessions.values():
                if session.attempt_id == attempt_id:
                    return copy.deepcopy(session)
        return None

    # ------------------------------------------------------------------
    # Contribution records
    # ------------------------------------------------------------------

    def append_contribution_record(self, contribution: Contribution) -> None:
        with self._lock:
            records = self._contributions.setdefault(contribution.circuit_id, [])
            if any(r.index == contribution.index for r in records):
                raise ValueError(
                    f"Contribution index {contribution.index} already recorded "
                    f"for circuit {contribution.circuit_id}"
                )
            records.append(contribution)
        self._persist()

    def contributions(self, circuit_id: str) -> List[Contribution]:
        with self._lock:
            return sorted(self._contributions.get(circuit_id, []), key=lambda c: c.index)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        if self._storage_path is None:
            return
        with self._io_lock:
            with self._lock:
                state = {
                    "ceremonies": [_encode(c) for c in self._ceremonies.values()],
                    "circuits": [_encode(c) for c in self._circuits.values()],
                    "queues": [_encode(q) for q in list(self._queues.values())],
                    "participants": [_encode(p) for p in self._participants.values()],
                    "attempts": [_encode(a) for a in self._attempts.values()],
                    "sessions": [_encode(s) for s in self._sessions.values()],
                    "contributions": [
                        _encode(c) for records in self._contributions.values() for c in records
                    ],
                }
            tmp = self._storage_path.with_suffix(self._storage_path.suffix + ".tmp")
            tmp.write_text(json.dumps(state, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp, self._storage_path)

    def _load(self, path: Path) -> None:
        state = json.loads(path.read_text(encoding="utf-8"))
        for raw in state.get("ceremonies", []):
            c = _decode_dataclass(Ceremony, raw)
            self._ceremonies[c.ceremony_id] = c
        for raw in state.get("circuits", []):
            c = _decode_dataclass(Circuit, raw)
            self._circuits[c.circuit_id] = c
        for raw in state.get("queues", []):
            q = _decode_dataclass(WaitingQueue, raw)
            self._queues[q.circuit_id] = q
            self._queue_locks[q.circuit_id] = threading.Lock()
        for raw in state.get("participants", []):
            p = _decode_dataclass(Participant, raw)
            self._participants[f"{p.ceremony_id}/{p.participant_id}"] = p
        for raw in state.get("attempts", []):
            a = _decode_dataclass(ContributionAttempt, raw)
            self._attempts[a.attempt_id] = a
        for raw in state.get("sessions", []):
            s = _decode_dataclass(UploadSession, raw)
            self._sessions[s.session_id] = s
        for raw in state.get("contributions", []):
            c = _decode_dataclass(Contribution, raw)
            self._contributions.setdefault(c.circuit_id, []).append(c)
