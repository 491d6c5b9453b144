"""Verification gate — accepts or rejects a closed upload.

Two independent checks, in order:
1. Integrity: the committed object is streamed back from storage and
   hashed (BLAKE2b-512); the digest must equal the hash the contributor
   declared. A corrupted or substituted upload never reaches the verifier.
2. Transformation: the external verifier checks the new artifact against
   its predecessor (the previous valid contribution, or the genesis zkey
   for the first one).

The gate reports; it does not touch the waiting queue. The scheduler
acts on the result.
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ceremony.config import CoordinatorConfig
from ceremony.errors import (
    CeremonyError,
    HashMismatchError,
    InvalidStateTransition,
    UploadIntegrityError,
    VerificationFailure,
)
from ceremony.interfaces import ObjectStorage, Verifier
from ceremony.models.ceremony import CircuitMetadata
from ceremony.models.contribution import ContributionAttempt, VerificationStatus
from ceremony.models.upload import ArtifactLocation, UploadSession, UploadSessionState
from ceremony.upload.retry import RetryPolicy


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    reason: str
    computed_hash: Optional[str]
    verification_ms: int
    location: ArtifactLocation
    error: Optional[CeremonyError] = None

    @property
    def valid(self) -> bool:
        return self.status == VerificationStatus.VALID


def compute_artifact_hash(storage: ObjectStorage, location: ArtifactLocation, chunk_size: int) -> str:
    """BLAKE2b-512 hex digest of a stored object, streamed in chunks."""
    digest = hashlib.blake2b()
    for chunk in storage.iter_object(location, chunk_size):
        digest.update(chunk)
    return digest.hexdigest()


class VerificationGate:
    """Runs the integrity and transformation checks for one attempt."""

    def __init__(
        self,
        storage: ObjectStorage,
        verifier: Verifier,
        config: CoordinatorConfig,
        timer: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._storage = storage
        self._verifier = verifier
        self._config = config
        self._timer = timer
        self._sleep = sleep
        self._retry = RetryPolicy(
            max_attempts=config.storage_retry_attempts,
            base_delay_seconds=config.storage_retry_base_delay_seconds,
            max_delay_seconds=config.storage_retry_max_delay_seconds,
        )

    def verify(
        self,
        session: UploadSession,
        attempt: ContributionAttempt,
        predecessor: ArtifactLocation,
        metadata: CircuitMetadata,
    ) -> VerificationResult:
        if session.state != UploadSessionState.CLOSED or session.final_location is None:
            raise InvalidStateTransition(
                f"Upload session {session.session_id} is {session.state.value}, not closed",
                circuit_id=session.circuit_id,
                attempt_id=session.attempt_id,
            )
        location = session.final_location
        started = self._timer()

        if not attempt.declared_hash:
            error = UploadIntegrityError(
                "No content hash declared for the attempt",
                circuit_id=attempt.circuit_id,
                attempt_id=attempt.attempt_id,
            )
            return self._result(VerificationStatus.INVALID, error.reason, None, started, location, error)

        computed = self._retry.run(
            lambda: compute_artifact_hash(self._storage, location, self._config.chunk_size_bytes),
            sleep=self._sleep,
        )
        if computed != attempt.declared_hash:
            error = HashMismatchError(
                attempt.declared_hash,
                computed,
                circuit_id=attempt.circuit_id,
                attempt_id=attempt.attempt_id,
            )
            return self._result(VerificationStatus.INVALID, error.reason, computed, started, location, error)

        verdict = self._verifier.verify(predecessor, location, metadata)
        if not verdict.valid:
            error = VerificationFailure(
                verdict.reason or "Verifier rejected the contribution",
                circuit_id=attempt.circuit_id,
                attempt_id=attempt.attempt_id,
            )
            return self._result(VerificationStatus.INVALID, error.reason, computed, started, location, error)

        return self._result(VerificationStatus.VALID, verdict.reason, computed, started, location)

    def _result(
        self,
        status: VerificationStatus,
        reason: str,
        computed: Optional[str],
        started: float,
        location: ArtifactLocation,
        error: Optional[CeremonyError] = None,
    ) -> VerificationResult:
        elapsed_ms = int((self._timer() - started) * 1000)
        return VerificationResult(
            status=status,
            reason=reason,
            computed_hash=computed,
            verification_ms=elapsed_ms,
            location=ArtifactLocation(location.bucket, location.key, computed),
            error=error,
        )
