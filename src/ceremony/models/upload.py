"""Multipart upload session models.

A session is bound to exactly one contribution attempt. Its part
descriptors are pre-allocated when the session opens; clients upload each
part directly to storage with a presigned, time-bounded authorization and
report the completion tag (ETag) back.

State machine:
    OPENED → IN_PROGRESS    (first part authorized or acknowledged)
    OPENED → CLOSED         (single-part session acknowledged without
                             prior authorization, then committed)
    IN_PROGRESS → CLOSED    (storage-level complete multipart)
    OPENED → ABORTED
    IN_PROGRESS → ABORTED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from ceremony.errors import InvalidStateTransition


class UploadSessionState(str, enum.Enum):
    OPENED = "opened"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    ABORTED = "aborted"


UPLOAD_TRANSITIONS: Dict[UploadSessionState, frozenset] = {
    UploadSessionState.OPENED: frozenset({
        UploadSessionState.IN_PROGRESS,
        UploadSessionState.CLOSED,
        UploadSessionState.ABORTED,
    }),
    UploadSessionState.IN_PROGRESS: frozenset({
        UploadSessionState.CLOSED,
        UploadSessionState.ABORTED,
    }),
    UploadSessionState.CLOSED: frozenset(),
    UploadSessionState.ABORTED: frozenset(),
}


@dataclass(frozen=True)
class ArtifactLocation:
    """Final, content-addressed location of a committed artifact."""
    bucket: str
    key: str
    content_hash: Optional[str] = None

    @property
    def uri(self) -> str:
        base = f"store://{self.bucket}/{self.key}"
        if self.content_hash:
            return f"{base}#blake2b={self.content_hash}"
        return base

    @staticmethod
    def parse(uri: str) -> ArtifactLocation:
        if not uri.startswith("store://"):
            raise ValueError(f"Not an artifact URI: {uri}")
        rest = uri[len("store://"):]
        content_hash = None
        if "#blake2b=" in rest:
            rest, content_hash = rest.split("#blake2b=", 1)
        bucket, _, key = rest.partition("/")
        if not bucket or not key:
            raise ValueError(f"Malformed artifact URI: {uri}")
        return ArtifactLocation(bucket=bucket, key=key, content_hash=content_hash)


@dataclass
class Part:
    """One byte range of a multipart upload.

    `index` is zero-based; storage part numbers are index + 1.
    """
    index: int
    start: int                      # inclusive byte offset
    end: int                        # exclusive byte offset
    tag: Optional[str] = None
    authorized_until: Optional[datetime] = None

    @property
    def part_number(self) -> int:
        return self.index + 1

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def acknowledged(self) -> bool:
        return self.tag is not None


@dataclass(frozen=True)
class PartAuthorization:
    """A presigned, time-bounded permission to upload one part."""
    part_index: int
    part_number: int
    url: str
    byte_start: int
    byte_end: int
    expires_utc: datetime


@dataclass
class UploadSession:
    """A multipart upload owned by one attempt."""
    session_id: str
    attempt_id: str
    circuit_id: str
    location: ArtifactLocation
    total_size: int
    chunk_size: int
    upload_id: str
    parts: List[Part]
    state: UploadSessionState = UploadSessionState.OPENED
    opened_utc: Optional[datetime] = None
    closed_utc: Optional[datetime] = None
    aborted_utc: Optional[datetime] = None
    final_location: Optional[ArtifactLocation] = None

    def transition_to(self, new_state: UploadSessionState) -> None:
        allowed = UPLOAD_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidStateTransition(
                f"Invalid upload transition: {self.state.value} → {new_state.value}",
                circuit_id=self.circuit_id,
                attempt_id=self.attempt_id,
            )
        self.state = new_state

    @property
    def open(self) -> bool:
        return self.state in (UploadSessionState.OPENED, UploadSessionState.IN_PROGRESS)

    @property
    def part_count(self) -> int:
        return len(self.parts)

    def missing_parts(self) -> List[int]:
        return [p.index for p in self.parts if not p.acknowledged]

    def acknowledged_parts(self) -> List[int]:
        return [p.index for p in self.parts if p.acknowledged]


@dataclass(frozen=True)
class UploadSnapshot:
    """Read-only view of a session for resuming clients."""
    session_id: str
    state: UploadSessionState
    total_size: int
    chunk_size: int
    part_count: int
    acknowledged: tuple = field(default_factory=tuple)

    @staticmethod
    def of(session: UploadSession) -> UploadSnapshot:
        return UploadSnapshot(
            session_id=session.session_id,
            state=session.state,
            total_size=session.total_size,
            chunk_size=session.chunk_size,
            part_count=session.part_count,
            acknowledged=tuple(session.acknowledged_parts()),
        )
