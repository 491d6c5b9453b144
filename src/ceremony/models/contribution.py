"""Contribution, attempt and participant models.

An attempt is one contributor's turn on one circuit. It owns at most one
upload session. Only an attempt that ends VALID produces a Contribution
record and consumes an index; rejected and evicted attempts leave the
index to the next holder.

Attempt state machine:
    WAITING → LOCKED        (granted the circuit's lock)
    LOCKED → UPLOADING      (upload session opened)
    UPLOADING → VERIFYING   (all parts acknowledged, session closed)
    VERIFYING → COMPLETED   (verifier accepted)
    VERIFYING → REJECTED    (verifier or integrity check refused)
    LOCKED → EVICTED        (deadline exceeded)
    UPLOADING → EVICTED
    VERIFYING → EVICTED     (verification overran the window)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


class AttemptState(str, enum.Enum):
    WAITING = "waiting"
    LOCKED = "locked"
    UPLOADING = "uploading"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    EVICTED = "evicted"
    REJECTED = "rejected"


ACTIVE_ATTEMPT_STATES = frozenset({
    AttemptState.LOCKED,
    AttemptState.UPLOADING,
    AttemptState.VERIFYING,
})

TERMINAL_ATTEMPT_STATES = frozenset({
    AttemptState.COMPLETED,
    AttemptState.EVICTED,
    AttemptState.REJECTED,
})


class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"


class ContributionStep(str, enum.Enum):
    """Client-side progress within an attempt, persisted for resumption."""
    DOWNLOADING = "downloading"
    COMPUTING = "computing"
    UPLOADING = "uploading"
    VERIFYING = "verifying"
    COMPLETED = "completed"


class ParticipantStatus(str, enum.Enum):
    WAITING = "waiting"
    READY = "ready"
    CONTRIBUTING = "contributing"
    CONTRIBUTED = "contributed"
    TIMEDOUT = "timedout"
    DONE = "done"
    FINALIZED = "finalized"


@dataclass
class ContributionAttempt:
    """One contributor's turn on a circuit.

    Mutable until terminal. Transitions are validated by
    AttemptStateMachine; the scheduler is the only writer.
    """
    attempt_id: str
    ceremony_id: str
    circuit_id: str
    contributor_id: str
    state: AttemptState
    acquired_utc: datetime
    expires_utc: datetime
    declared_hash: Optional[str] = None
    computation_ms: Optional[int] = None
    upload_session_id: Optional[str] = None
    ended_utc: Optional[datetime] = None
    terminal_reason: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.state in ACTIVE_ATTEMPT_STATES

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_ATTEMPT_STATES


@dataclass(frozen=True)
class Contribution:
    """A valid, indexed contribution. Immutable historical record.

    `index` is zero-based and equals the circuit's completed_contributions
    at the moment the contribution was accepted.
    """
    circuit_id: str
    index: int
    contributor_id: str
    attempt_id: str
    started_utc: datetime
    ended_utc: datetime
    computation_ms: int
    verification_ms: int
    content_hash: str
    artifact_uri: str
    upload_session_id: str
    verification: VerificationStatus = VerificationStatus.VALID

    @property
    def full_contribution_ms(self) -> int:
        return int((self.ended_utc - self.started_utc).total_seconds() * 1000)


@dataclass(frozen=True)
class TimeoutRecord:
    """A lock-out imposed after eviction."""
    circuit_id: str
    attempt_id: str
    start_utc: datetime
    end_utc: datetime


@dataclass
class Participant:
    """A contributor's progress through a ceremony's circuits.

    `contribution_progress` counts finished circuits; the next circuit is
    the one at sequence position progress + 1.
    """
    participant_id: str
    ceremony_id: str
    status: ParticipantStatus = ParticipantStatus.WAITING
    contribution_progress: int = 0
    contribution_step: Optional[ContributionStep] = None
    current_attempt_id: Optional[str] = None
    timeouts: List[TimeoutRecord] = field(default_factory=list)
    contribution_hashes: Dict[str, str] = field(default_factory=dict)

    def active_lockout(self, now: datetime) -> Optional[TimeoutRecord]:
        """The lock-out still in force at `now`, if any."""
        for record in reversed(self.timeouts):
            if record.start_utc <= now < record.end_utc:
                return record
        return None

    @property
    def next_sequence_position(self) -> int:
        return self.contribution_progress + 1
