"""Core data models for the ceremony coordinator."""

from ceremony.models.ceremony import (
    Ceremony,
    CeremonyState,
    Circuit,
    CircuitMetadata,
    CircuitTimings,
    Lock,
    TimeoutMechanism,
    TimeoutPolicy,
    WaitingQueue,
)
from ceremony.models.contribution import (
    AttemptState,
    Contribution,
    ContributionAttempt,
    ContributionStep,
    Participant,
    ParticipantStatus,
    TimeoutRecord,
    VerificationStatus,
)
from ceremony.models.upload import (
    ArtifactLocation,
    Part,
    PartAuthorization,
    UploadSession,
    UploadSessionState,
    UploadSnapshot,
)

__all__ = [
    "Ceremony",
    "CeremonyState",
    "Circuit",
    "CircuitMetadata",
    "CircuitTimings",
    "Lock",
    "TimeoutMechanism",
    "TimeoutPolicy",
    "WaitingQueue",
    "AttemptState",
    "Contribution",
    "ContributionAttempt",
    "ContributionStep",
    "Participant",
    "ParticipantStatus",
    "TimeoutRecord",
    "VerificationStatus",
    "ArtifactLocation",
    "Part",
    "PartAuthorization",
    "UploadSession",
    "UploadSessionState",
    "UploadSnapshot",
]
