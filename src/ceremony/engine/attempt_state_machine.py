"""Attempt state machine — enforces the turn-taking transition rules.

    WAITING → LOCKED → UPLOADING → VERIFYING → COMPLETED
                                            → REJECTED
    LOCKED | UPLOADING | VERIFYING → EVICTED

Fail-closed: any transition not in the table raises
InvalidStateTransition. There are no implicit transitions. Side effects
(queue writes, session aborts, events) belong to the scheduler.
"""

from __future__ import annotations

from ceremony.errors import InvalidStateTransition
from ceremony.models.contribution import (
    AttemptState,
    ContributionAttempt,
    TERMINAL_ATTEMPT_STATES,
)


_TRANSITIONS: dict[AttemptState, set[AttemptState]] = {
    AttemptState.WAITING: {AttemptState.LOCKED},
    AttemptState.LOCKED: {AttemptState.UPLOADING, AttemptState.EVICTED},
    AttemptState.UPLOADING: {AttemptState.VERIFYING, AttemptState.EVICTED},
    AttemptState.VERIFYING: {
        AttemptState.COMPLETED,
        AttemptState.REJECTED,
        AttemptState.EVICTED,
    },
    AttemptState.COMPLETED: set(),
    AttemptState.EVICTED: set(),
    AttemptState.REJECTED: set(),
}


class AttemptStateMachine:
    """Validates and applies attempt transitions."""

    @staticmethod
    def validate_transition(attempt: ContributionAttempt, target: AttemptState) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = attempt.state
        allowed = _TRANSITIONS.get(current, set())
        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid attempt transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def apply_transition(attempt: ContributionAttempt, target: AttemptState) -> None:
        """Validate and apply, raising InvalidStateTransition on failure."""
        errors = AttemptStateMachine.validate_transition(attempt, target)
        if errors:
            raise InvalidStateTransition(
                errors[0],
                circuit_id=attempt.circuit_id,
                attempt_id=attempt.attempt_id,
            )
        attempt.state = target

    @staticmethod
    def is_terminal(state: AttemptState) -> bool:
        return state in TERMINAL_ATTEMPT_STATES

    @staticmethod
    def valid_transitions(state: AttemptState) -> set[AttemptState]:
        return set(_TRANSITIONS.get(state, set()))
