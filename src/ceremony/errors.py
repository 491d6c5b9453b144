"""Coordinator error taxonomy.

Every error carries enough context (circuit id, attempt id, reason) for a
caller to decide whether to re-queue. Two kinds are transient and retried
internally with bounded backoff before surfacing:

    ConcurrencyConflict  — lost a compare-and-swap race on a waiting queue.
    StorageUnavailable   — object storage did not answer.

All other kinds propagate to the caller unchanged. InvalidStateTransition
signals a protocol violation and is never silently ignored.
"""

from __future__ import annotations

from typing import Optional


class CeremonyError(Exception):
    """Base class for all coordinator errors."""

    def __init__(
        self,
        reason: str,
        *,
        circuit_id: Optional[str] = None,
        attempt_id: Optional[str] = None,
    ) -> None:
        self.reason = reason
        self.circuit_id = circuit_id
        self.attempt_id = attempt_id
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        if self.circuit_id:
            context.append(f"circuit={self.circuit_id}")
        if self.attempt_id:
            context.append(f"attempt={self.attempt_id}")
        if not context:
            return self.reason
        return f"{self.reason} ({', '.join(context)})"

    @property
    def retryable(self) -> bool:
        """True for kinds the coordinator retries internally."""
        return False


class NotFoundError(CeremonyError, KeyError):
    """Unknown ceremony, circuit, attempt, participant or session."""

    def __str__(self) -> str:
        return self._format()


class AuthorizationError(CeremonyError):
    """Caller is not eligible or carries no identity."""


class ConcurrencyConflict(CeremonyError):
    """A conditional write on a waiting queue lost the race.

    The caller should retry the request; this is not a failure of the
    attempt.
    """

    @property
    def retryable(self) -> bool:
        return True


class TimeoutEvicted(CeremonyError):
    """The attempt exceeded its window and was evicted.

    Terminal for the attempt: the contributor is locked out and must
    re-queue once the penalty elapses.
    """


class UploadIntegrityError(CeremonyError):
    """Upload accounting or content integrity violated.

    The attempt is rejected and its index is not consumed.
    """


class IncompletePartsError(UploadIntegrityError):
    """close_session called while parts are still unacknowledged."""

    def __init__(self, missing: list[int], **kwargs) -> None:
        self.missing = list(missing)
        shown = ", ".join(str(i) for i in self.missing[:10])
        if len(self.missing) > 10:
            shown += ", ..."
        super().__init__(
            f"{len(self.missing)} part(s) not acknowledged: [{shown}]", **kwargs
        )


class UnknownPartError(UploadIntegrityError):
    """Part index out of range, or re-acknowledged with a different tag."""


class HashMismatchError(UploadIntegrityError):
    """Stored object hash differs from the declared contribution hash."""

    def __init__(self, declared: str, computed: str, **kwargs) -> None:
        self.declared = declared
        self.computed = computed
        super().__init__(
            f"Declared hash {declared} does not match computed {computed}",
            **kwargs,
        )


class SessionAbortedError(CeremonyError):
    """Operation on an upload session that has been aborted."""


class VerificationFailure(CeremonyError):
    """The external verifier rejected the contribution."""


class StorageUnavailable(CeremonyError):
    """Object storage is transiently unavailable."""

    @property
    def retryable(self) -> bool:
        return True


class InvalidStateTransition(CeremonyError):
    """A state transition not present in the transition table."""


class SessionAlreadyOpenError(InvalidStateTransition):
    """An attempt already owns a non-terminal upload session."""


class RequestCancelled(CeremonyError):
    """The request's cancellation signal was set before it acted."""
