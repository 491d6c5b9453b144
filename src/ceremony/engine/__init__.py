"""Turn-taking engine — attempt state machine, scheduler and timeout monitor."""

from ceremony.engine.attempt_state_machine import AttemptStateMachine
from ceremony.engine.scheduler import ContributionScheduler
from ceremony.engine.timeout_monitor import EvictionEvent, TimeoutMonitor

__all__ = ["AttemptStateMachine", "ContributionScheduler", "EvictionEvent", "TimeoutMonitor"]
