"""Coordinator service — unified facade for the contribution protocol.

This is the primary interface for programmatic access to the coordinator.
It orchestrates all subsystems:
- Ceremony lifecycle (create, add circuits, open, close, finalize)
- Turn-taking (eligibility, queueing, lock grants)
- Resumable uploads (open, authorize parts, acknowledge, close)
- Verification (integrity re-hash, external verifier, accept/reject)
- Deadline supervision (sweep on every request, reconcile on restart)

Contributor operations take an explicit RequestContext and raise the
errors of `ceremony.errors`, carrying circuit and attempt ids. Operator
operations return ServiceResult so the CLI can report failures without a
traceback. Every state-changing request first evicts expired locks, so
no deadline depends on a background thread.
"""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional, Union

from ceremony.attestation import build_attestation
from ceremony.config import CoordinatorConfig
from ceremony.context import RequestContext, ServiceHandles
from ceremony.engine.scheduler import ContributionScheduler
from ceremony.engine.timeout_monitor import TimeoutMonitor
from ceremony.errors import (
    AuthorizationError,
    CeremonyError,
    IncompletePartsError,
    InvalidStateTransition,
    TimeoutEvicted,
    UploadIntegrityError,
)
from ceremony.models.ceremony import (
    Ceremony,
    CeremonyState,
    Circuit,
    CircuitMetadata,
    TimeoutPolicy,
)
from ceremony.models.contribution import (
    AttemptState,
    ContributionAttempt,
    Participant,
    ParticipantStatus,
)
from ceremony.models.upload import (
    ArtifactLocation,
    PartAuthorization,
    UploadSession,
    UploadSnapshot,
)
from ceremony.persistence.event_log import EventKind
from ceremony.registry import CeremonyRegistry
from ceremony.sizing import estimate_zkey_size_bytes, extract_prefix, zkey_space_requirement_gb
from ceremony.upload.coordinator import UploadCoordinator
from ceremony.verification.gate import VerificationGate, VerificationResult


@dataclass(frozen=True)
class ServiceResult:
    """Result of an operator operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


class NoneAvailableReason(str, enum.Enum):
    QUEUED = "queued"
    ALREADY_HOLDING = "already_holding"
    ALL_DONE = "all_done"
    CEREMONY_NOT_OPEN = "ceremony_not_open"
    LOCKED_OUT = "locked_out"


@dataclass(frozen=True)
class CircuitAssignment:
    """A granted lock: what to download, what to produce, and by when."""
    ceremony_id: str
    circuit_id: str
    attempt_id: str
    contributor_id: str
    index: int
    acquired_utc: datetime
    expires_utc: datetime
    predecessor: ArtifactLocation
    target: ArtifactLocation
    zkey_size_bytes: int
    disk_space_gb: float


@dataclass(frozen=True)
class NoneAvailable:
    reason: NoneAvailableReason
    circuit_id: Optional[str] = None
    position: Optional[int] = None
    attempt_id: Optional[str] = None
    lockout_until_utc: Optional[datetime] = None


@dataclass(frozen=True)
class AttemptSnapshot:
    """What a reconnecting client needs to pick up where it left off."""
    attempt_id: str
    circuit_id: str
    state: AttemptState
    expires_utc: datetime
    declared_hash: Optional[str]
    upload: Optional[UploadSnapshot]
    assignment: Optional[CircuitAssignment]


class CoordinatorService:
    """Unified coordinator facade.

    Usage:
        handles = ServiceHandles(store=InMemoryMetadataStore(),
                                 storage=LocalObjectStorage(),
                                 verifier=my_verifier)
        service = CoordinatorService(handles)

        # Operator
        service.create_ceremony("c1", "My Setup", "coordinator", start, end, policy)
        service.add_circuit("c1", "multiplier", metadata)
        service.open_ceremony("c1")

        # Contributor
        ctx = RequestContext(identity, handles)
        assignment = service.request_next_circuit(ctx, "c1")
        service.declare_contribution(ctx, assignment.attempt_id, digest, 42_000)
        session = service.open_upload(ctx, assignment.attempt_id, size)
        for auth in service.authorize_parts(ctx, session.session_id):
            ...  # PUT bytes to auth.url, then:
            service.report_part_complete(ctx, session.session_id, auth.part_index, etag)
        result = service.submit_for_verification(ctx, session.session_id)
    """

    def __init__(
        self,
        handles: ServiceHandles,
        config: Optional[CoordinatorConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._handles = handles
        self._config = config or CoordinatorConfig()
        self._store = handles.store
        self._event_log = handles.event_log
        self._registry = CeremonyRegistry(handles.store, self._config)
        self._monitor = TimeoutMonitor(self._config)
        self._uploads = UploadCoordinator(
            handles.store, handles.storage, self._config, handles.event_log, sleep=sleep,
        )
        self._scheduler = ContributionScheduler(
            handles.store,
            self._monitor,
            self._config,
            handles.event_log,
            abort_upload=self._uploads.abort_session,
            sleep=sleep,
        )
        self._gate: Optional[VerificationGate] = None
        if handles.verifier is not None:
            self._gate = VerificationGate(
                handles.storage, handles.verifier, self._config, timer=timer, sleep=sleep,
            )
        self._reconcile_lock = threading.Lock()
        self._reconciled = False

    @property
    def handles(self) -> ServiceHandles:
        return self._handles

    @property
    def registry(self) -> CeremonyRegistry:
        return self._registry

    @property
    def config(self) -> CoordinatorConfig:
        return self._config

    # ------------------------------------------------------------------
    # Operator: ceremony lifecycle
    # ------------------------------------------------------------------

    def create_ceremony(
        self,
        ceremony_id: str,
        title: str,
        coordinator_id: str,
        start_utc: datetime,
        end_utc: datetime,
        timeout_policy: TimeoutPolicy,
        required_contributions: Optional[int] = None,
        prefix: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Ceremony:
        if end_utc <= start_utc:
            raise ValueError("Ceremony end must be after its start")
        if required_contributions is not None and required_contributions <= 0:
            raise ValueError("required_contributions must be positive")
        if any(c.ceremony_id == ceremony_id for c in self._store.list_ceremonies()):
            raise ValueError(f"Ceremony already exists: {ceremony_id}")

        ceremony = Ceremony(
            ceremony_id=ceremony_id,
            prefix=prefix or extract_prefix(title),
            title=title,
            coordinator_id=coordinator_id,
            start_utc=start_utc,
            end_utc=end_utc,
            timeout_policy=timeout_policy,
            required_contributions=required_contributions,
        )
        self._store.save_ceremony(ceremony)
        self._event_log.record(EventKind.CEREMONY_CREATED, coordinator_id, {
            "ceremony_id": ceremony_id,
            "prefix": ceremony.prefix,
            "timeout_mechanism": timeout_policy.mechanism.value,
            "required_contributions": required_contributions,
        }, now)
        return ceremony

    def add_circuit(
        self,
        ceremony_id: str,
        name: str,
        metadata: CircuitMetadata,
        sequence_position: Optional[int] = None,
        circuit_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Circuit:
        ceremony = self._store.get_ceremony(ceremony_id)
        if ceremony.state not in (CeremonyState.SCHEDULED, CeremonyState.OPENED):
            raise ValueError(
                f"Cannot add circuits to a {ceremony.state.value} ceremony"
            )
        existing = self._store.circuits_for(ceremony_id)
        position = sequence_position or len(existing) + 1
        if any(c.sequence_position == position for c in existing):
            raise ValueError(f"Sequence position {position} already taken in {ceremony_id}")
        prefix = extract_prefix(name)
        circuit = Circuit(
            circuit_id=circuit_id or f"{ceremony_id}/{prefix}",
            ceremony_id=ceremony_id,
            sequence_position=position,
            prefix=prefix,
            metadata=metadata,
        )
        if any(c.circuit_id == circuit.circuit_id for c in existing):
            raise ValueError(f"Circuit already exists: {circuit.circuit_id}")
        self._store.save_circuit(circuit)
        self._event_log.record(EventKind.CIRCUIT_REGISTERED, ceremony.coordinator_id, {
            "ceremony_id": ceremony_id,
            "circuit_id": circuit.circuit_id,
            "sequence_position": position,
            "constraints": metadata.constraints,
        }, now)
        return circuit

    def open_ceremony(self, ceremony_id: str, now: Optional[datetime] = None) -> ServiceResult:
        return self._transition_ceremony(ceremony_id, CeremonyState.OPENED, now)

    def close_ceremony(self, ceremony_id: str, now: Optional[datetime] = None) -> ServiceResult:
        """End the contribution period. Current holders may still finish."""
        return self._transition_ceremony(ceremony_id, CeremonyState.CLOSED, now)

    def _transition_ceremony(
        self,
        ceremony_id: str,
        target: CeremonyState,
        now: Optional[datetime],
    ) -> ServiceResult:
        try:
            ceremony = self._store.get_ceremony(ceremony_id)
            previous = ceremony.state
            ceremony.transition_to(target)
        except CeremonyError as e:
            return ServiceResult(success=False, errors=[str(e)])
        self._store.save_ceremony(ceremony)
        self._event_log.record(EventKind.CEREMONY_TRANSITION, ceremony.coordinator_id, {
            "ceremony_id": ceremony_id,
            "from": previous.value,
            "to": target.value,
        }, now)
        return ServiceResult(success=True, data={
            "ceremony_id": ceremony_id,
            "state": target.value,
        })

    # ------------------------------------------------------------------
    # Operator: deadline supervision
    # ------------------------------------------------------------------

    def sweep_timeouts(self, now: Optional[datetime] = None) -> ServiceResult:
        evicted = self._scheduler.sweep(now)
        return ServiceResult(success=True, data={
            "evicted": [a.attempt_id for a in evicted],
        })

    def reconcile(self, now: Optional[datetime] = None) -> ServiceResult:
        """Rebuild lock timers from persisted queues after a restart."""
        evicted = self._scheduler.reconcile(now)
        self._reconciled = True
        return ServiceResult(success=True, data={
            "evicted": [a.attempt_id for a in evicted],
            "armed": len(self._monitor.armed()),
        })

    def status(self, ceremony_id: Optional[str] = None) -> dict[str, Any]:
        ceremonies = (
            [self._store.get_ceremony(ceremony_id)] if ceremony_id
            else self._store.list_ceremonies()
        )
        report: dict[str, Any] = {"ceremonies": []}
        for ceremony in ceremonies:
            circuits = []
            for circuit in self._registry.circuits(ceremony.ceremony_id):
                queue = self._registry.queue(circuit.circuit_id)
                circuits.append({
                    "circuit_id": circuit.circuit_id,
                    "sequence_position": circuit.sequence_position,
                    "completed": circuit.completed,
                    "holder": queue.holder,
                    "attempt_id": queue.attempt_id,
                    "expires_utc": queue.expires_utc.isoformat() if queue.expires_utc else None,
                    "waiting": list(queue.waiting_ids),
                    "completed_contributions": queue.completed_contributions,
                    "failed_contributions": queue.failed_contributions,
                    "avg_full_contribution_ms": round(circuit.timings.full_contribution_ms),
                })
            report["ceremonies"].append({
                "ceremony_id": ceremony.ceremony_id,
                "title": ceremony.title,
                "state": ceremony.state.value,
                "circuits": circuits,
            })
        report["events"] = self._event_log.count
        report["armed_timers"] = len(self._monitor.armed())
        return report

    # ------------------------------------------------------------------
    # Contributor: turn-taking
    # ------------------------------------------------------------------

    def check_eligibility(self, ctx: RequestContext, ceremony_id: str) -> bool:
        """True when the caller may request a circuit in this ceremony now.

        Registers the participant on first call. False while the ceremony
        is not accepting contributions, while a lock-out is in force, or
        once every circuit has been contributed to.
        """
        now = self._begin(ctx)
        ceremony = self._store.get_ceremony(ceremony_id)
        if not ceremony.accepts_contributions(now):
            return False
        participant = self._ensure_participant(ceremony_id, ctx.contributor_id, now)
        if participant.active_lockout(now) is not None:
            return False
        if self._current_attempt(participant) is not None:
            return True
        if self._registry.next_circuit_for(participant) is None:
            self._set_status(participant, ParticipantStatus.DONE)
            return False
        if participant.status in (ParticipantStatus.WAITING, ParticipantStatus.TIMEDOUT):
            self._set_status(participant, ParticipantStatus.READY)
        return True

    def request_next_circuit(
        self,
        ctx: RequestContext,
        ceremony_id: str,
    ) -> Union[CircuitAssignment, NoneAvailable]:
        """Queue for the caller's next circuit and take the lock if it is free.

        Only a fresh grant returns a CircuitAssignment. A caller already
        holding a lock (including one granted while it waited) gets
        NoneAvailable(ALREADY_HOLDING) with the attempt id to resume.
        """
        now = self._begin(ctx)
        ceremony = self._store.get_ceremony(ceremony_id)
        if not ceremony.accepts_contributions(now):
            return NoneAvailable(reason=NoneAvailableReason.CEREMONY_NOT_OPEN)

        contributor_id = ctx.contributor_id
        participant = self._ensure_participant(ceremony_id, contributor_id, now)
        lockout = participant.active_lockout(now)
        if lockout is not None:
            return NoneAvailable(
                reason=NoneAvailableReason.LOCKED_OUT,
                circuit_id=lockout.circuit_id,
                lockout_until_utc=lockout.end_utc,
            )
        current = self._current_attempt(participant)
        if current is not None:
            return NoneAvailable(
                reason=NoneAvailableReason.ALREADY_HOLDING,
                circuit_id=current.circuit_id,
                attempt_id=current.attempt_id,
            )

        circuit = self._registry.next_circuit_for(participant)
        if circuit is None:
            self._set_status(participant, ParticipantStatus.DONE)
            return NoneAvailable(reason=NoneAvailableReason.ALL_DONE)

        self._scheduler.enqueue(circuit.circuit_id, contributor_id, now)
        attempt = self._scheduler.try_grant(circuit.circuit_id, contributor_id, now)
        if attempt is not None:
            return self._assignment(attempt, circuit)

        queue = self._registry.queue(circuit.circuit_id)
        if queue.holder == contributor_id:
            return NoneAvailable(
                reason=NoneAvailableReason.ALREADY_HOLDING,
                circuit_id=circuit.circuit_id,
                attempt_id=queue.attempt_id,
            )
        self._set_status(participant, ParticipantStatus.WAITING)
        return NoneAvailable(
            reason=NoneAvailableReason.QUEUED,
            circuit_id=circuit.circuit_id,
            position=queue.position_of(contributor_id),
        )

    def declare_contribution(
        self,
        ctx: RequestContext,
        attempt_id: str,
        content_hash: str,
        computation_ms: int,
    ) -> ContributionAttempt:
        """Record the hash and computation time of the caller's new zkey."""
        now = self._begin(ctx)
        self._live_attempt(ctx, attempt_id, now)
        return self._scheduler.declare(attempt_id, content_hash, computation_ms, now)

    # ------------------------------------------------------------------
    # Contributor: upload
    # ------------------------------------------------------------------

    def open_upload(
        self,
        ctx: RequestContext,
        attempt_id: str,
        size: int,
        chunk_size: Optional[int] = None,
    ) -> UploadSession:
        now = self._begin(ctx)
        attempt = self._live_attempt(ctx, attempt_id, now)
        circuit = self._registry.circuit(attempt.circuit_id)
        index = self._registry.queue(circuit.circuit_id).completed_contributions
        target = self._registry.target_location(circuit, index)
        session = self._uploads.open_session(attempt, target, size, chunk_size, now)
        try:
            self._scheduler.mark_uploading(attempt_id, session.session_id)
        except CeremonyError:
            self._uploads.abort_session(session.session_id, now)
            raise
        return session

    def authorize_parts(self, ctx: RequestContext, session_id: str) -> List[PartAuthorization]:
        now = self._begin(ctx)
        session = self._store.get_session(session_id)
        attempt = self._live_attempt(ctx, session.attempt_id, now)
        return self._uploads.authorize_parts(session_id, now, not_after=attempt.expires_utc)

    def report_part_complete(
        self,
        ctx: RequestContext,
        session_id: str,
        part_index: int,
        tag: str,
    ) -> UploadSnapshot:
        """Acknowledge one uploaded part.

        The deadline is re-checked first. After an eviction the session is
        aborted, so a late report fails with SessionAbortedError rather
        than TimeoutEvicted.
        """
        now = self._begin(ctx)
        session = self._store.get_session(session_id)
        attempt = self._owned_attempt(ctx, session.attempt_id)
        if attempt.active and now >= attempt.expires_utc:
            self._scheduler.evict(attempt.circuit_id, attempt.attempt_id, now)
        return UploadSnapshot.of(self._uploads.acknowledge_part(session_id, part_index, tag))

    def submit_for_verification(self, ctx: RequestContext, session_id: str) -> VerificationResult:
        """Close the upload and run the verification gate.

        On a valid verdict the contribution takes the circuit's next index
        and the lock passes to the next contributor. On an invalid verdict
        the attempt is rejected and the gate's error is raised
        (HashMismatchError, UploadIntegrityError or VerificationFailure).

        Missing parts leave the session open so the upload can be finished.
        Any other integrity failure at close (a part tag that storage does
        not recognise) aborts the session and rejects the attempt.
        """
        if self._gate is None:
            raise InvalidStateTransition("Coordinator has no verifier configured")
        now = self._begin(ctx)
        session = self._store.get_session(session_id)
        attempt = self._live_attempt(ctx, session.attempt_id, now)
        attempt_id = attempt.attempt_id

        try:
            self._uploads.close_session(session_id, attempt.declared_hash, now)
        except IncompletePartsError:
            raise
        except UploadIntegrityError as e:
            self._uploads.abort_session(session_id, now)
            self._scheduler.mark_verifying(attempt_id)
            self._scheduler.reject(attempt_id, e.reason, now)
            raise
        attempt = self._scheduler.mark_verifying(attempt_id)
        session = self._store.get_session(session_id)
        circuit = self._registry.circuit(attempt.circuit_id)
        index = self._registry.queue(circuit.circuit_id).completed_contributions
        predecessor = self._registry.predecessor_location(circuit, index)

        try:
            result = self._gate.verify(session, attempt, predecessor, circuit.metadata)
        except CeremonyError as e:
            self._scheduler.reject(attempt_id, e.reason, ctx.now())
            raise

        decided = ctx.now()
        if not result.valid:
            self._scheduler.reject(attempt_id, result.reason, decided)
            assert result.error is not None
            raise result.error
        assert result.computed_hash is not None
        self._scheduler.complete(
            attempt_id,
            result.computed_hash,
            result.location.uri,
            result.verification_ms,
            decided,
        )
        return result

    def resume_after_reconnect(self, ctx: RequestContext, attempt_id: str) -> AttemptSnapshot:
        """Current state of the caller's attempt. Changes nothing.

        Raises TimeoutEvicted once the attempt has been evicted; resuming
        is only possible strictly before the deadline.
        """
        now = self._begin(ctx)
        attempt = self._owned_attempt(ctx, attempt_id)
        if attempt.active:
            attempt = self._live_attempt(ctx, attempt_id, now)
        elif attempt.state == AttemptState.EVICTED:
            raise TimeoutEvicted(
                f"Attempt was evicted ({attempt.terminal_reason})",
                circuit_id=attempt.circuit_id,
                attempt_id=attempt_id,
            )
        session = self._uploads.session_for_attempt(attempt_id)
        assignment = None
        if attempt.active:
            assignment = self._assignment(attempt, self._registry.circuit(attempt.circuit_id))
        return AttemptSnapshot(
            attempt_id=attempt_id,
            circuit_id=attempt.circuit_id,
            state=attempt.state,
            expires_utc=attempt.expires_utc,
            declared_hash=attempt.declared_hash,
            upload=UploadSnapshot.of(session) if session is not None else None,
            assignment=assignment,
        )

    # ------------------------------------------------------------------
    # Coordinator: finalization and attestation
    # ------------------------------------------------------------------

    def finalize_ceremony(self, ctx: RequestContext, ceremony_id: str) -> Ceremony:
        """Seal the ceremony: no further grants on any circuit.

        Only the ceremony's coordinator may finalize. Current holders are
        released without a lock-out penalty and their uploads aborted.
        """
        now = self._begin(ctx)
        ceremony = self._store.get_ceremony(ceremony_id)
        if ctx.contributor_id != ceremony.coordinator_id:
            raise AuthorizationError(
                f"{ctx.contributor_id} is not the coordinator of {ceremony_id}"
            )
        previous = ceremony.state
        ceremony.transition_to(CeremonyState.FINALIZED)
        ceremony.finalized_utc = now
        self._store.save_ceremony(ceremony)
        self._event_log.record(EventKind.CEREMONY_TRANSITION, ctx.contributor_id, {
            "ceremony_id": ceremony_id,
            "from": previous.value,
            "to": CeremonyState.FINALIZED.value,
        }, now)
        for circuit in self._registry.circuits(ceremony_id):
            self._scheduler.close_circuit(circuit.circuit_id, now)
        return ceremony

    def attestation(self, ctx: RequestContext, ceremony_id: str) -> str:
        ceremony = self._store.get_ceremony(ceremony_id)
        pairs = []
        for circuit in self._registry.circuits(ceremony_id):
            for contribution in self._registry.contributions(circuit.circuit_id):
                if contribution.contributor_id == ctx.contributor_id:
                    pairs.append((circuit, contribution))
        return build_attestation(ceremony, ctx.contributor_id, pairs)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _begin(self, ctx: RequestContext) -> datetime:
        """Validate the context and evict expired locks before acting.

        The first request served over a store this process did not build
        rebuilds the lock timers from it.
        """
        if ctx.handles is not self._handles:
            raise ValueError("Request context is bound to a different coordinator")
        ctx.check_cancelled()
        now = ctx.now()
        with self._reconcile_lock:
            if not self._reconciled:
                self.reconcile(now)
        self._scheduler.sweep(now)
        return now

    def _owned_attempt(self, ctx: RequestContext, attempt_id: str) -> ContributionAttempt:
        attempt = self._store.get_attempt(attempt_id)
        if attempt.contributor_id != ctx.contributor_id:
            raise AuthorizationError(
                "Attempt belongs to another contributor",
                circuit_id=attempt.circuit_id,
                attempt_id=attempt_id,
            )
        return attempt

    def _live_attempt(self, ctx: RequestContext, attempt_id: str, now: datetime) -> ContributionAttempt:
        """The caller's attempt, re-checked against its deadline."""
        attempt = self._owned_attempt(ctx, attempt_id)
        if attempt.active and now >= attempt.expires_utc:
            self._scheduler.evict(attempt.circuit_id, attempt_id, now)
            attempt = self._store.get_attempt(attempt_id)
        if attempt.state == AttemptState.EVICTED:
            raise TimeoutEvicted(
                f"Attempt was evicted ({attempt.terminal_reason})",
                circuit_id=attempt.circuit_id,
                attempt_id=attempt_id,
            )
        return attempt

    def _current_attempt(self, participant: Participant) -> Optional[ContributionAttempt]:
        if participant.current_attempt_id is None:
            return None
        attempt = self._store.get_attempt(participant.current_attempt_id)
        return attempt if attempt.active else None

    def _ensure_participant(self, ceremony_id: str, contributor_id: str, now: datetime) -> Participant:
        participant = self._store.get_participant(ceremony_id, contributor_id)
        if participant is not None:
            return participant
        participant = self._scheduler.update_participant(ceremony_id, contributor_id, lambda p: None)
        self._event_log.record(EventKind.PARTICIPANT_REGISTERED, contributor_id, {
            "ceremony_id": ceremony_id,
        }, now)
        return participant

    def _set_status(self, participant: Participant, status: ParticipantStatus) -> None:
        if participant.status == status:
            return

        def apply(p: Participant) -> None:
            # a grant that landed since the read wins
            if p.current_attempt_id is None:
                p.status = status

        self._scheduler.update_participant(participant.ceremony_id, participant.participant_id, apply)

    def _assignment(self, attempt: ContributionAttempt, circuit: Circuit) -> CircuitAssignment:
        index = self._registry.queue(circuit.circuit_id).completed_contributions
        size = estimate_zkey_size_bytes(circuit.metadata)
        return CircuitAssignment(
            ceremony_id=attempt.ceremony_id,
            circuit_id=circuit.circuit_id,
            attempt_id=attempt.attempt_id,
            contributor_id=attempt.contributor_id,
            index=index,
            acquired_utc=attempt.acquired_utc,
            expires_utc=attempt.expires_utc,
            predecessor=self._registry.predecessor_location(circuit, index),
            target=self._registry.target_location(circuit, index),
            zkey_size_bytes=size,
            disk_space_gb=zkey_space_requirement_gb(size),
        )
