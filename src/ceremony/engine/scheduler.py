"""Contribution scheduler — turn-taking, locks and progress.

Every grant, completion, rejection and eviction on a circuit is a
compare-and-swap on that circuit's WaitingQueue: read the snapshot,
derive the next one, write it only if the holder and revision are
unchanged. A lost race is retried with bounded backoff and surfaces as
ConcurrencyConflict when the budget runs out. Because the holder and
attempt id are part of the compare, a lock is released exactly once,
whichever of complete / reject / evict gets there first.

Side effects that follow a successful write (attempt transition,
contribution record, timer, participant progress, events) are applied
by the single winner of that write.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from ceremony.config import CoordinatorConfig, RequeuePolicy
from ceremony.engine.attempt_state_machine import AttemptStateMachine
from ceremony.engine.timeout_monitor import TimeoutMonitor
from ceremony.errors import ConcurrencyConflict, InvalidStateTransition, TimeoutEvicted
from ceremony.interfaces import MetadataStore
from ceremony.models.ceremony import WaitingQueue
from ceremony.models.contribution import (
    AttemptState,
    Contribution,
    ContributionAttempt,
    ContributionStep,
    Participant,
    ParticipantStatus,
    TimeoutRecord,
)
from ceremony.persistence.event_log import EventKind, EventLog
from ceremony.upload.retry import RetryPolicy


SYSTEM_ACTOR = "system"

AbortUpload = Callable[[Optional[str], datetime], bool]


class ContributionScheduler:
    """Owns the per-circuit turn-taking state machine.

    Usage:
        scheduler = ContributionScheduler(store, monitor, config, event_log)
        scheduler.enqueue(circuit_id, "alice", now)
        attempt = scheduler.try_grant(circuit_id, "alice", now)
        scheduler.mark_uploading(attempt.attempt_id, session_id)
        scheduler.mark_verifying(attempt.attempt_id)
        contribution = scheduler.complete(attempt.attempt_id, ...)
    """

    def __init__(
        self,
        store: MetadataStore,
        monitor: TimeoutMonitor,
        config: CoordinatorConfig,
        event_log: Optional[EventLog] = None,
        abort_upload: Optional[AbortUpload] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._monitor = monitor
        self._config = config
        self._event_log = event_log
        self._abort_upload = abort_upload
        self._sleep = sleep
        self._conflict_retry = RetryPolicy(
            max_attempts=config.conflict_retry_attempts,
            base_delay_seconds=config.conflict_retry_base_delay_seconds,
            max_delay_seconds=config.conflict_retry_base_delay_seconds
            * 2 ** (config.conflict_retry_attempts - 1),
        )
        self._participant_lock = threading.Lock()
        self._attempt_locks: Dict[str, threading.RLock] = {}
        self._attempt_locks_guard = threading.Lock()

    def set_abort_upload(self, abort_upload: AbortUpload) -> None:
        self._abort_upload = abort_upload

    # ------------------------------------------------------------------
    # Queueing and grants
    # ------------------------------------------------------------------

    def enqueue(self, circuit_id: str, contributor_id: str, now: Optional[datetime] = None) -> WaitingQueue:
        """Append the contributor to the back of the waiting line.

        No-op when already waiting or holding the lock.
        """
        now = now or datetime.now(timezone.utc)

        def mutate(queue: WaitingQueue):
            updated = queue.enqueued(contributor_id)
            return (updated if updated is not queue else None), None

        before, after, _ = self._cas(circuit_id, mutate)
        if after is None:
            return before
        self._record(EventKind.CONTRIBUTOR_QUEUED, contributor_id, {
            "circuit_id": circuit_id,
            "position": after.position_of(contributor_id),
        }, now)
        return self._store.read_queue(circuit_id)

    def try_grant(
        self,
        circuit_id: str,
        contributor_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[ContributionAttempt]:
        """Grant the circuit's lock if the contributor is at the head.

        Returns the new LOCKED attempt, or None when the circuit is held,
        the contributor is not at the head, the circuit is complete, or
        the ceremony is not accepting contributions.
        """
        now = now or datetime.now(timezone.utc)
        circuit = self._store.get_circuit(circuit_id)
        ceremony = self._store.get_ceremony(circuit.ceremony_id)
        if circuit.completed or not ceremony.accepts_contributions(now):
            return None

        expires = self._monitor.compute_deadline(ceremony, circuit, now)
        attempt_id = f"att_{uuid4().hex[:12]}"

        def mutate(queue: WaitingQueue):
            if not queue.idle or queue.head != contributor_id:
                return None, None
            return queue.granted(contributor_id, attempt_id, now, expires), None

        _, after, _ = self._cas(circuit_id, mutate)
        if after is None:
            return None

        attempt = ContributionAttempt(
            attempt_id=attempt_id,
            ceremony_id=ceremony.ceremony_id,
            circuit_id=circuit_id,
            contributor_id=contributor_id,
            state=AttemptState.WAITING,
            acquired_utc=now,
            expires_utc=expires,
        )
        AttemptStateMachine.apply_transition(attempt, AttemptState.LOCKED)
        self._store.save_attempt(attempt)
        lock = after.lock
        assert lock is not None
        self._monitor.arm(lock)

        def on_grant(p: Participant) -> None:
            p.status = ParticipantStatus.CONTRIBUTING
            p.current_attempt_id = attempt_id
            p.contribution_step = ContributionStep.DOWNLOADING

        self.update_participant(ceremony.ceremony_id, contributor_id, on_grant)
        self._record(EventKind.LOCK_GRANTED, contributor_id, {
            "circuit_id": circuit_id,
            "attempt_id": attempt_id,
            "index": after.completed_contributions,
            "expires_utc": expires.isoformat(),
        }, now)
        return attempt

    def grant_next(self, circuit_id: str, now: Optional[datetime] = None) -> Optional[ContributionAttempt]:
        """Grant the lock to whoever is at the head of an idle queue."""
        queue = self._store.read_queue(circuit_id)
        if not queue.idle or queue.head is None:
            return None
        return self.try_grant(circuit_id, queue.head, now)

    # ------------------------------------------------------------------
    # Attempt progress
    # ------------------------------------------------------------------

    def declare(
        self,
        attempt_id: str,
        content_hash: str,
        computation_ms: int,
        now: Optional[datetime] = None,
    ) -> ContributionAttempt:
        """Record the contributor's declared hash and computation time."""
        if not content_hash:
            raise ValueError("content_hash must be non-empty")
        if computation_ms < 0:
            raise ValueError("computation_ms must be non-negative")
        with self._attempt_guard(attempt_id):
            attempt = self._store.get_attempt(attempt_id)
            self._require_not_evicted(attempt)
            if not attempt.active:
                raise InvalidStateTransition(
                    f"Attempt is {attempt.state.value}",
                    circuit_id=attempt.circuit_id,
                    attempt_id=attempt_id,
                )
            attempt.declared_hash = content_hash
            attempt.computation_ms = computation_ms
            self._store.save_attempt(attempt)
        self._record(EventKind.CONTRIBUTION_DECLARED, attempt.contributor_id, {
            "circuit_id": attempt.circuit_id,
            "attempt_id": attempt_id,
            "content_hash": content_hash,
            "computation_ms": computation_ms,
        }, now)
        return attempt

    def mark_uploading(self, attempt_id: str, session_id: str) -> ContributionAttempt:
        """LOCKED → UPLOADING once the attempt's session is open."""
        with self._attempt_guard(attempt_id):
            attempt = self._store.get_attempt(attempt_id)
            self._require_transition(attempt, AttemptState.UPLOADING)
            attempt.state = AttemptState.UPLOADING
            attempt.upload_session_id = session_id
            self._store.save_attempt(attempt)
        self._set_step(attempt, ContributionStep.UPLOADING)
        return attempt

    def mark_verifying(self, attempt_id: str) -> ContributionAttempt:
        """UPLOADING → VERIFYING once the session is closed."""
        with self._attempt_guard(attempt_id):
            attempt = self._store.get_attempt(attempt_id)
            self._require_transition(attempt, AttemptState.VERIFYING)
            attempt.state = AttemptState.VERIFYING
            self._store.save_attempt(attempt)
        self._set_step(attempt, ContributionStep.VERIFYING)
        return attempt

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def complete(
        self,
        attempt_id: str,
        content_hash: str,
        artifact_uri: str,
        verification_ms: int,
        now: Optional[datetime] = None,
    ) -> Contribution:
        """VERIFYING → COMPLETED: consume the next index and advance the queue.

        The index is the queue's completed_contributions at the moment of
        the winning write, so valid indices are 0..N-1 without gaps.

        Raises:
            TimeoutEvicted: the window elapsed before the verdict arrived
                (the attempt is evicted instead), or the lock was already
                released by an eviction.
        """
        now = now or datetime.now(timezone.utc)
        with self._attempt_guard(attempt_id):
            attempt = self._store.get_attempt(attempt_id)
            self._require_transition(attempt, AttemptState.COMPLETED)
            if now >= attempt.expires_utc:
                self.evict(attempt.circuit_id, attempt_id, now, reason="verification_overran_window")
                raise TimeoutEvicted(
                    "Contribution window elapsed during verification",
                    circuit_id=attempt.circuit_id,
                    attempt_id=attempt_id,
                )

            def mutate(queue: WaitingQueue):
                self._require_holder(queue, attempt)
                return queue.released(completed=True), queue.completed_contributions

            _, after, index = self._cas(attempt.circuit_id, mutate)

            attempt.state = AttemptState.COMPLETED
            attempt.ended_utc = now
            self._store.save_attempt(attempt)
        self._forget_guard(attempt_id)
        self._monitor.disarm(attempt.circuit_id, attempt_id)

        assert attempt.upload_session_id is not None
        contribution = Contribution(
            circuit_id=attempt.circuit_id,
            index=index,
            contributor_id=attempt.contributor_id,
            attempt_id=attempt_id,
            started_utc=attempt.acquired_utc,
            ended_utc=now,
            computation_ms=attempt.computation_ms or 0,
            verification_ms=verification_ms,
            content_hash=content_hash,
            artifact_uri=artifact_uri,
            upload_session_id=attempt.upload_session_id,
        )
        self._store.append_contribution_record(contribution)

        circuit = self._store.get_circuit(attempt.circuit_id)
        ceremony = self._store.get_ceremony(circuit.ceremony_id)
        circuit.timings.record(contribution.full_contribution_ms, verification_ms)
        required = ceremony.required_contributions
        newly_complete = required is not None and after.completed_contributions >= required
        if newly_complete:
            circuit.completed = True
        self._store.save_circuit(circuit)
        total_circuits = len(self._store.circuits_for(ceremony.ceremony_id))

        def on_complete(p: Participant) -> None:
            p.contribution_progress = max(p.contribution_progress, circuit.sequence_position)
            p.contribution_hashes[circuit.circuit_id] = content_hash
            p.contribution_step = ContributionStep.COMPLETED
            p.current_attempt_id = None
            if p.contribution_progress >= total_circuits:
                p.status = ParticipantStatus.DONE
            else:
                p.status = ParticipantStatus.CONTRIBUTED

        self.update_participant(ceremony.ceremony_id, attempt.contributor_id, on_complete)
        self._record(EventKind.CONTRIBUTION_VERIFIED, attempt.contributor_id, {
            "circuit_id": circuit.circuit_id,
            "attempt_id": attempt_id,
            "index": index,
            "content_hash": content_hash,
            "artifact_uri": artifact_uri,
            "verification_ms": verification_ms,
        }, now)
        self._record_release(attempt, "completed", now)

        if newly_complete:
            self._record(EventKind.CIRCUIT_COMPLETED, SYSTEM_ACTOR, {
                "circuit_id": circuit.circuit_id,
                "completed_contributions": after.completed_contributions,
            }, now)
            self._drain_waiting(circuit.circuit_id)
        else:
            self.grant_next(circuit.circuit_id, now)
        return contribution

    def reject(self, attempt_id: str, reason: str, now: Optional[datetime] = None) -> ContributionAttempt:
        """VERIFYING → REJECTED: release without consuming an index.

        The contributor is re-queued according to the configured
        RequeuePolicy.
        """
        now = now or datetime.now(timezone.utc)
        policy = self._config.rejected_requeue_policy
        with self._attempt_guard(attempt_id):
            attempt = self._store.get_attempt(attempt_id)
            self._require_transition(attempt, AttemptState.REJECTED)

            def mutate(queue: WaitingQueue):
                self._require_holder(queue, attempt)
                released = queue.released(failed=True)
                if policy == RequeuePolicy.BACK:
                    released = released.enqueued(attempt.contributor_id)
                elif policy == RequeuePolicy.FRONT:
                    released = released.enqueued(attempt.contributor_id, front=True)
                return released, None

            self._cas(attempt.circuit_id, mutate)

            attempt.state = AttemptState.REJECTED
            attempt.ended_utc = now
            attempt.terminal_reason = reason
            self._store.save_attempt(attempt)
        self._forget_guard(attempt_id)
        self._monitor.disarm(attempt.circuit_id, attempt_id)

        def on_reject(p: Participant) -> None:
            p.current_attempt_id = None
            p.contribution_step = None
            if policy == RequeuePolicy.REMOVE:
                p.status = ParticipantStatus.READY
            else:
                p.status = ParticipantStatus.WAITING

        self.update_participant(attempt.ceremony_id, attempt.contributor_id, on_reject)
        self._record(EventKind.CONTRIBUTION_REJECTED, attempt.contributor_id, {
            "circuit_id": attempt.circuit_id,
            "attempt_id": attempt_id,
            "reason": reason,
            "requeue_policy": policy.value,
        }, now)
        self._record_release(attempt, "rejected", now)
        self.grant_next(attempt.circuit_id, now)
        return attempt

    def evict(
        self,
        circuit_id: str,
        attempt_id: str,
        now: Optional[datetime] = None,
        reason: str = "timeout",
        penalize: bool = True,
    ) -> Optional[ContributionAttempt]:
        """Evict the lock holder. Effective exactly once per attempt.

        Aborts the attempt's open upload session before releasing the
        lock, removes the contributor from the waiting line and, when
        `penalize` is set, imposes the ceremony's lock-out penalty.
        Returns None when the attempt had already left the lock.
        """
        now = now or datetime.now(timezone.utc)
        with self._attempt_guard(attempt_id):
            attempt = self._store.get_attempt(attempt_id)
            if attempt.terminal:
                return None

            if self._abort_upload is not None:
                session_id = attempt.upload_session_id
                if session_id is None:
                    session = self._store.session_for_attempt(attempt_id)
                    session_id = session.session_id if session is not None else None
                self._abort_upload(session_id, now)

            def mutate(queue: WaitingQueue):
                if queue.attempt_id != attempt_id:
                    return None, False
                return queue.released().without(attempt.contributor_id), True

            _, _, won = self._cas(circuit_id, mutate)
            if not won:
                return None

            AttemptStateMachine.apply_transition(attempt, AttemptState.EVICTED)
            attempt.ended_utc = now
            attempt.terminal_reason = reason
            self._store.save_attempt(attempt)
        self._forget_guard(attempt_id)
        self._monitor.disarm(circuit_id, attempt_id)

        ceremony = self._store.get_ceremony(attempt.ceremony_id)
        penalty = ceremony.timeout_policy.penalty

        def on_evict(p: Participant) -> None:
            p.current_attempt_id = None
            p.contribution_step = None
            if penalize:
                p.status = ParticipantStatus.TIMEDOUT
                p.timeouts.append(TimeoutRecord(
                    circuit_id=circuit_id,
                    attempt_id=attempt_id,
                    start_utc=now,
                    end_utc=now + penalty,
                ))
            else:
                p.status = ParticipantStatus.FINALIZED

        self.update_participant(attempt.ceremony_id, attempt.contributor_id, on_evict)
        self._record(EventKind.CONTRIBUTOR_EVICTED, SYSTEM_ACTOR, {
            "circuit_id": circuit_id,
            "attempt_id": attempt_id,
            "contributor_id": attempt.contributor_id,
            "reason": reason,
            "lockout_until_utc": (now + penalty).isoformat() if penalize else None,
        }, now)
        self._record_release(attempt, "evicted", now)
        self.grant_next(circuit_id, now)
        return attempt

    # ------------------------------------------------------------------
    # Deadline supervision
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> List[ContributionAttempt]:
        """Evict every lock whose deadline has passed."""
        now = now or datetime.now(timezone.utc)
        evicted = []
        for event in self._monitor.due(now):
            attempt = self.evict(event.circuit_id, event.attempt_id, now)
            if attempt is not None:
                evicted.append(attempt)
        return evicted

    def reconcile(self, now: Optional[datetime] = None) -> List[ContributionAttempt]:
        """Rebuild timers from persisted locks; evict the expired ones."""
        now = now or datetime.now(timezone.utc)
        queues = [
            self._store.read_queue(circuit.circuit_id)
            for ceremony in self._store.list_ceremonies()
            for circuit in self._store.circuits_for(ceremony.ceremony_id)
        ]
        events = self._monitor.reconcile(queues, now)
        evicted = []
        for event in events:
            attempt = self.evict(event.circuit_id, event.attempt_id, now, reason="expired_before_restart")
            if attempt is not None:
                evicted.append(attempt)
        self._record(EventKind.TIMEOUTS_RECONCILED, SYSTEM_ACTOR, {
            "locks_seen": sum(1 for q in queues if not q.idle),
            "evicted": [a.attempt_id for a in evicted],
        }, now)
        return evicted

    def close_circuit(self, circuit_id: str, now: Optional[datetime] = None) -> Optional[ContributionAttempt]:
        """Release any holder without penalty and empty the waiting line."""
        now = now or datetime.now(timezone.utc)
        # drain first so the eviction below has nobody to grant next
        self._drain_waiting(circuit_id)
        queue = self._store.read_queue(circuit_id)
        if queue.attempt_id is None:
            return None
        return self.evict(
            circuit_id, queue.attempt_id, now, reason="ceremony_finalized", penalize=False,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _cas(self, circuit_id: str, mutate) -> Tuple[WaitingQueue, Optional[WaitingQueue], object]:
        """Read-derive-write loop on one circuit's queue.

        `mutate(queue)` returns (new_queue, result); a None new_queue means
        nothing to write.
        """

        def once():
            queue = self._store.read_queue(circuit_id)
            new_queue, result = mutate(queue)
            if new_queue is None:
                return queue, None, result
            if not self._store.write_queue_conditional(circuit_id, queue.holder, new_queue):
                raise ConcurrencyConflict(
                    "Waiting queue changed during update", circuit_id=circuit_id,
                )
            return queue, new_queue, result

        return self._conflict_retry.run(once, sleep=self._sleep)

    def _drain_waiting(self, circuit_id: str) -> None:
        def mutate(queue: WaitingQueue):
            if not queue.waiting_ids:
                return None, None
            return dataclasses.replace(queue, waiting_ids=()), None

        self._cas(circuit_id, mutate)

    @staticmethod
    def _require_holder(queue: WaitingQueue, attempt: ContributionAttempt) -> None:
        if queue.attempt_id != attempt.attempt_id:
            raise TimeoutEvicted(
                "Attempt no longer holds the circuit lock",
                circuit_id=attempt.circuit_id,
                attempt_id=attempt.attempt_id,
            )

    @staticmethod
    def _require_not_evicted(attempt: ContributionAttempt) -> None:
        if attempt.state == AttemptState.EVICTED:
            raise TimeoutEvicted(
                f"Attempt was evicted ({attempt.terminal_reason})",
                circuit_id=attempt.circuit_id,
                attempt_id=attempt.attempt_id,
            )

    @classmethod
    def _require_transition(cls, attempt: ContributionAttempt, target: AttemptState) -> None:
        cls._require_not_evicted(attempt)
        errors = AttemptStateMachine.validate_transition(attempt, target)
        if errors:
            raise InvalidStateTransition(
                errors[0],
                circuit_id=attempt.circuit_id,
                attempt_id=attempt.attempt_id,
            )

    def _attempt_guard(self, attempt_id: str) -> threading.RLock:
        with self._attempt_locks_guard:
            lock = self._attempt_locks.get(attempt_id)
            if lock is None:
                lock = threading.RLock()
                self._attempt_locks[attempt_id] = lock
            return lock

    def _forget_guard(self, attempt_id: str) -> None:
        """Drop the guard of an attempt that reached a terminal state."""
        with self._attempt_locks_guard:
            self._attempt_locks.pop(attempt_id, None)

    def _set_step(self, attempt: ContributionAttempt, step: ContributionStep) -> None:
        def apply(p: Participant) -> None:
            p.contribution_step = step

        self.update_participant(attempt.ceremony_id, attempt.contributor_id, apply)

    def update_participant(
        self,
        ceremony_id: str,
        contributor_id: str,
        apply: Callable[[Participant], None],
    ) -> Participant:
        """Read-modify-write a participant record, creating it on first use."""
        with self._participant_lock:
            participant = self._store.get_participant(ceremony_id, contributor_id)
            if participant is None:
                participant = Participant(participant_id=contributor_id, ceremony_id=ceremony_id)
            apply(participant)
            self._store.save_participant(participant)
            return participant

    def _record_release(self, attempt: ContributionAttempt, outcome: str, now: datetime) -> None:
        self._record(EventKind.LOCK_RELEASED, attempt.contributor_id, {
            "circuit_id": attempt.circuit_id,
            "attempt_id": attempt.attempt_id,
            "outcome": outcome,
        }, now)

    def _record(self, kind: EventKind, actor_id: str, payload: dict, now: Optional[datetime]) -> None:
        if self._event_log is not None:
            self._event_log.record(kind, actor_id, payload, now)
