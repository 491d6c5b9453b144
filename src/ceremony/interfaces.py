"""Contracts for the coordinator's external collaborators.

The coordinator never talks to an identity provider, a database, a
storage service or a proof verifier directly — only through these
Protocols. Swapping a backend means implementing the Protocol; nothing in
the scheduler, upload coordinator or verification gate changes.

    IdentityProvider  — who is calling.
    MetadataStore     — ceremonies, circuits, queues (with the atomic
                        conditional write), attempts, sessions, records.
    ObjectStorage     — multipart upload primitives behind presigned URLs.
    Verifier          — the proof-system specific contribution check.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from ceremony.models.ceremony import Ceremony, Circuit, CircuitMetadata, WaitingQueue
from ceremony.models.contribution import Contribution, ContributionAttempt, Participant
from ceremony.models.upload import ArtifactLocation, UploadSession


@dataclass(frozen=True)
class ContributorIdentity:
    """Stable identity of an authenticated caller."""
    contributor_id: str
    handle: str = ""


@dataclass(frozen=True)
class VerifierVerdict:
    valid: bool
    reason: str = ""


@runtime_checkable
class IdentityProvider(Protocol):
    def authenticate(self) -> ContributorIdentity:
        """Return the caller's identity or raise AuthorizationError."""
        ...


@runtime_checkable
class MetadataStore(Protocol):
    """Durable coordinator state.

    `write_queue_conditional` is the only primitive the turn-taking
    protocol needs to be linearizable: it writes `new_queue` only if the
    stored holder equals `expected_holder` and the stored revision equals
    `new_queue.revision`, then bumps the revision. It returns False when
    either comparison fails.
    """

    # ceremonies and circuits
    def get_ceremony(self, ceremony_id: str) -> Ceremony: ...
    def save_ceremony(self, ceremony: Ceremony) -> None: ...
    def list_ceremonies(self) -> List[Ceremony]: ...
    def get_circuit(self, circuit_id: str) -> Circuit: ...
    def save_circuit(self, circuit: Circuit) -> None: ...
    def circuits_for(self, ceremony_id: str) -> List[Circuit]: ...

    # waiting queues
    def read_queue(self, circuit_id: str) -> WaitingQueue: ...
    def write_queue_conditional(
        self,
        circuit_id: str,
        expected_holder: Optional[str],
        new_queue: WaitingQueue,
    ) -> bool: ...

    # participants and attempts
    def get_participant(self, ceremony_id: str, participant_id: str) -> Optional[Participant]: ...
    def save_participant(self, participant: Participant) -> None: ...
    def get_attempt(self, attempt_id: str) -> ContributionAttempt: ...
    def save_attempt(self, attempt: ContributionAttempt) -> None: ...

    # upload sessions
    def get_session(self, session_id: str) -> UploadSession: ...
    def save_session(self, session: UploadSession) -> None: ...
    def session_for_attempt(self, attempt_id: str) -> Optional[UploadSession]: ...

    # contribution records
    def append_contribution_record(self, contribution: Contribution) -> None: ...
    def contributions(self, circuit_id: str) -> List[Contribution]: ...


@runtime_checkable
class ObjectStorage(Protocol):
    """Multipart upload primitives. Transient failures raise StorageUnavailable."""

    def create_multipart_session(self, bucket: str, key: str) -> str:
        """Reserve a multipart upload; returns the storage upload id."""
        ...

    def sign_part_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        part_size: int,
        ttl_seconds: int,
    ) -> str:
        """Presigned URL for one part, valid for ttl_seconds.

        The URL only accepts a body of exactly part_size bytes.
        """
        ...

    def complete_multipart_session(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Sequence[Tuple[int, str]],
    ) -> ArtifactLocation:
        """Commit (part_number, tag) pairs into one object."""
        ...

    def abort_multipart_session(self, bucket: str, key: str, upload_id: str) -> None: ...

    def iter_object(self, location: ArtifactLocation, chunk_size: int) -> Iterator[bytes]:
        """Stream a committed object."""
        ...


@runtime_checkable
class Verifier(Protocol):
    def verify(
        self,
        previous: ArtifactLocation,
        new: ArtifactLocation,
        metadata: CircuitMetadata,
    ) -> VerifierVerdict:
        """Check `new` is a valid transformation of `previous`.

        For the first contribution `previous` is the circuit's genesis
        artifact (zkey index 00000).
        """
        ...
