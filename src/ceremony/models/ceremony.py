"""Ceremony, circuit and waiting-queue models.

A ceremony owns one or more circuits. Each circuit carries exactly one
WaitingQueue, which is the unit of mutual exclusion: at most one
contributor holds a circuit's lock at any instant, and the lock is the
contributor's time window.

State machine (ceremony):
    SCHEDULED → OPENED       (contributions accepted from start time)
    OPENED → CLOSED          (end of contribution period)
    CLOSED → FINALIZED       (coordinator seals the ceremony)
    OPENED → FINALIZED       (finalize closes implicitly)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from ceremony.errors import InvalidStateTransition


class CeremonyState(str, enum.Enum):
    SCHEDULED = "scheduled"
    OPENED = "opened"
    CLOSED = "closed"
    FINALIZED = "finalized"


CEREMONY_TRANSITIONS: Dict[CeremonyState, frozenset] = {
    CeremonyState.SCHEDULED: frozenset({CeremonyState.OPENED}),
    CeremonyState.OPENED: frozenset({
        CeremonyState.CLOSED,
        CeremonyState.FINALIZED,
    }),
    CeremonyState.CLOSED: frozenset({CeremonyState.FINALIZED}),
    CeremonyState.FINALIZED: frozenset(),
}


class TimeoutMechanism(str, enum.Enum):
    """How a contributor's window is computed.

    DYNAMIC: scales with the circuit (average of past contributions plus a
             threshold, or an estimate from constraint count).
    FIXED:   the same constant window for every circuit.
    """
    DYNAMIC = "dynamic"
    FIXED = "fixed"


@dataclass(frozen=True)
class TimeoutPolicy:
    """Per-ceremony timeout and penalty policy."""
    mechanism: TimeoutMechanism
    fixed_window_minutes: int = 60
    dynamic_threshold_pct: int = 20
    penalty_minutes: int = 10

    def __post_init__(self) -> None:
        if self.fixed_window_minutes <= 0:
            raise ValueError("fixed_window_minutes must be positive")
        if self.dynamic_threshold_pct < 0:
            raise ValueError("dynamic_threshold_pct must be non-negative")
        if self.penalty_minutes < 0:
            raise ValueError("penalty_minutes must be non-negative")

    @property
    def penalty(self) -> timedelta:
        return timedelta(minutes=self.penalty_minutes)


@dataclass
class Ceremony:
    """A ceremony and its lifecycle.

    Mutable — lifecycle transitions are validated against
    CEREMONY_TRANSITIONS.
    """
    ceremony_id: str
    prefix: str
    title: str
    coordinator_id: str
    start_utc: datetime
    end_utc: datetime
    timeout_policy: TimeoutPolicy
    state: CeremonyState = CeremonyState.SCHEDULED
    required_contributions: Optional[int] = None
    finalized_utc: Optional[datetime] = None

    def transition_to(self, new_state: CeremonyState) -> None:
        """Transition to a new state, validating the transition is legal."""
        allowed = CEREMONY_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidStateTransition(
                f"Invalid ceremony transition for {self.ceremony_id}: "
                f"{self.state.value} → {new_state.value}"
            )
        self.state = new_state

    def accepts_contributions(self, now: datetime) -> bool:
        return (
            self.state == CeremonyState.OPENED
            and self.start_utc <= now < self.end_utc
        )


@dataclass(frozen=True)
class CircuitMetadata:
    """Proving-system parameters used for sizing estimates."""
    constraints: int
    wires: int
    pot: int                       # powers of tau exponent
    curve: str = "bn128"
    protocol: str = "groth16"
    private_inputs: int = 0
    public_inputs: int = 0
    zkey_size_bytes: Optional[int] = None


@dataclass
class CircuitTimings:
    """Running averages over valid contributions, in milliseconds."""
    full_contribution_ms: float = 0.0
    verify_ms: float = 0.0
    samples: int = 0

    def record(self, full_contribution_ms: float, verify_ms: float) -> None:
        n = self.samples
        self.full_contribution_ms = (self.full_contribution_ms * n + full_contribution_ms) / (n + 1)
        self.verify_ms = (self.verify_ms * n + verify_ms) / (n + 1)
        self.samples = n + 1


@dataclass(frozen=True)
class Lock:
    """The derived (circuit, holder, acquired, expires) pairing."""
    circuit_id: str
    contributor_id: str
    attempt_id: str
    acquired_utc: datetime
    expires_utc: datetime

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_utc


@dataclass(frozen=True)
class WaitingQueue:
    """Per-circuit turn-taking state.

    Immutable snapshot: every change produces a new value that is written
    back through the metadata store's conditional write. `revision`
    increases by one per successful write and is what the store compares
    together with the expected holder.

    Invariants:
        - at most one non-null holder;
        - completed_contributions only ever increases, by one per accepted
          contribution.
    """
    circuit_id: str
    contributor_id: Optional[str] = None
    attempt_id: Optional[str] = None
    acquired_utc: Optional[datetime] = None
    expires_utc: Optional[datetime] = None
    waiting_ids: Tuple[str, ...] = ()
    completed_contributions: int = 0
    failed_contributions: int = 0
    revision: int = 0

    @property
    def holder(self) -> Optional[str]:
        return self.contributor_id

    @property
    def idle(self) -> bool:
        return self.contributor_id is None

    @property
    def head(self) -> Optional[str]:
        return self.waiting_ids[0] if self.waiting_ids else None

    @property
    def lock(self) -> Optional[Lock]:
        if self.contributor_id is None:
            return None
        assert self.attempt_id is not None
        assert self.acquired_utc is not None and self.expires_utc is not None
        return Lock(
            circuit_id=self.circuit_id,
            contributor_id=self.contributor_id,
            attempt_id=self.attempt_id,
            acquired_utc=self.acquired_utc,
            expires_utc=self.expires_utc,
        )

    def position_of(self, contributor_id: str) -> Optional[int]:
        """Zero-based position in the waiting line, or None."""
        try:
            return self.waiting_ids.index(contributor_id)
        except ValueError:
            return None

    # -- derivations; each returns a new snapshot --------------------------

    def enqueued(self, contributor_id: str, front: bool = False) -> WaitingQueue:
        if contributor_id in self.waiting_ids or contributor_id == self.contributor_id:
            return self
        ids = (contributor_id,) + self.waiting_ids if front else self.waiting_ids + (contributor_id,)
        return replace(self, waiting_ids=ids)

    def without(self, contributor_id: str) -> WaitingQueue:
        return replace(
            self,
            waiting_ids=tuple(i for i in self.waiting_ids if i != contributor_id),
        )

    def granted(
        self,
        contributor_id: str,
        attempt_id: str,
        acquired_utc: datetime,
        expires_utc: datetime,
    ) -> WaitingQueue:
        """Move the head into the holder slot."""
        return replace(
            self.without(contributor_id),
            contributor_id=contributor_id,
            attempt_id=attempt_id,
            acquired_utc=acquired_utc,
            expires_utc=expires_utc,
        )

    def released(self, *, completed: bool = False, failed: bool = False) -> WaitingQueue:
        return replace(
            self,
            contributor_id=None,
            attempt_id=None,
            acquired_utc=None,
            expires_utc=None,
            completed_contributions=self.completed_contributions + (1 if completed else 0),
            failed_contributions=self.failed_contributions + (1 if failed else 0),
        )


@dataclass
class Circuit:
    """A circuit within a ceremony. The queue lives in the metadata store."""
    circuit_id: str
    ceremony_id: str
    sequence_position: int         # 1-based
    prefix: str
    metadata: CircuitMetadata
    timings: CircuitTimings = field(default_factory=CircuitTimings)
    completed: bool = False
