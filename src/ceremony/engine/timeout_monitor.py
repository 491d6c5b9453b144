"""Timeout monitor — one deadline per locked circuit.

The monitor owns no thread. Deadlines are monotonic: they are fixed at
grant time and re-checked on every state-changing request (`due`), by the
operator's sweep loop, and once on restart (`reconcile`). Each expired
lock produces exactly one EvictionEvent; a heartbeat after expiry reports
the lock dead and never re-arms it.

Window length:
    FIXED    fixed_window_minutes.
    DYNAMIC  average full contribution time on the circuit plus
             dynamic_threshold_pct; before any valid contribution, an
             estimate from the constraint count. Never shorter than the
             configured minimum.
A configured verification carve-out is added on top of either.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from ceremony.config import CoordinatorConfig
from ceremony.errors import InvalidStateTransition
from ceremony.models.ceremony import Ceremony, Circuit, Lock, TimeoutMechanism, WaitingQueue


@dataclass(frozen=True)
class EvictionEvent:
    circuit_id: str
    attempt_id: str
    contributor_id: str
    expires_utc: datetime
    detected_utc: datetime


@dataclass
class _Timer:
    lock: Lock
    fired: bool = False


class TimeoutMonitor:
    """Tracks lock deadlines and emits evictions exactly once."""

    def __init__(self, config: CoordinatorConfig) -> None:
        self._config = config
        self._timers: Dict[str, _Timer] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Deadline policy
    # ------------------------------------------------------------------

    def window_for(self, ceremony: Ceremony, circuit: Circuit) -> timedelta:
        policy = ceremony.timeout_policy
        if policy.mechanism == TimeoutMechanism.FIXED:
            seconds = policy.fixed_window_minutes * 60.0
        else:
            factor = 1 + policy.dynamic_threshold_pct / 100.0
            if circuit.timings.samples > 0:
                base = circuit.timings.full_contribution_ms / 1000.0
            else:
                base = (
                    circuit.metadata.constraints / 1_000_000
                    * self._config.seconds_per_million_constraints
                )
            seconds = max(float(self._config.dynamic_min_window_seconds), base * factor)
        seconds += self._config.verification_carve_out_seconds
        return timedelta(seconds=seconds)

    def compute_deadline(self, ceremony: Ceremony, circuit: Circuit, acquired_utc: datetime) -> datetime:
        return acquired_utc + self.window_for(ceremony, circuit)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def arm(self, lock: Lock) -> None:
        """Start the timer for a freshly granted lock.

        Raises InvalidStateTransition if the circuit already has a live
        timer for a different attempt.
        """
        with self._lock:
            existing = self._timers.get(lock.circuit_id)
            if existing is not None and existing.lock.attempt_id == lock.attempt_id:
                return
            if existing is not None and not existing.fired:
                raise InvalidStateTransition(
                    f"Circuit already timed for attempt {existing.lock.attempt_id}",
                    circuit_id=lock.circuit_id,
                    attempt_id=lock.attempt_id,
                )
            self._timers[lock.circuit_id] = _Timer(lock=lock)

    def disarm(self, circuit_id: str, attempt_id: str) -> None:
        """Stop the timer after a terminal transition. Unknown ids are a no-op."""
        with self._lock:
            timer = self._timers.get(circuit_id)
            if timer is not None and timer.lock.attempt_id == attempt_id:
                del self._timers[circuit_id]

    def heartbeat(self, circuit_id: str, attempt_id: str, now: datetime) -> bool:
        """True while the attempt's lock is alive. Never extends or re-arms."""
        with self._lock:
            timer = self._timers.get(circuit_id)
            if timer is None or timer.lock.attempt_id != attempt_id:
                return False
            return not timer.fired and not timer.lock.expired(now)

    def deadline(self, circuit_id: str) -> Optional[datetime]:
        with self._lock:
            timer = self._timers.get(circuit_id)
            return timer.lock.expires_utc if timer is not None else None

    def armed(self) -> List[Lock]:
        with self._lock:
            return [t.lock for t in self._timers.values() if not t.fired]

    def due(self, now: datetime) -> List[EvictionEvent]:
        """Expired, not yet fired timers. Each is returned exactly once."""
        events: List[EvictionEvent] = []
        with self._lock:
            for timer in self._timers.values():
                if timer.fired or not timer.lock.expired(now):
                    continue
                timer.fired = True
                events.append(self._event(timer.lock, now))
        return events

    def reconcile(self, queues: Iterable[WaitingQueue], now: datetime) -> List[EvictionEvent]:
        """Rebuild timers from persisted locks after a restart.

        Locks already past their deadline are returned for immediate
        eviction; the rest are re-armed with their persisted deadline.
        """
        events: List[EvictionEvent] = []
        with self._lock:
            for queue in queues:
                lock = queue.lock
                if lock is None:
                    continue
                existing = self._timers.get(lock.circuit_id)
                if existing is not None and existing.lock.attempt_id == lock.attempt_id:
                    if existing.fired:
                        continue
                    timer = existing
                else:
                    timer = _Timer(lock=lock)
                    self._timers[lock.circuit_id] = timer
                if lock.expired(now):
                    timer.fired = True
                    events.append(self._event(lock, now))
        return events

    @staticmethod
    def _event(lock: Lock, now: datetime) -> EvictionEvent:
        return EvictionEvent(
            circuit_id=lock.circuit_id,
            attempt_id=lock.attempt_id,
            contributor_id=lock.contributor_id,
            expires_utc=lock.expires_utc,
            detected_utc=now,
        )
