"""Per-request context passed explicitly to every coordinator operation.

Carries who is calling, which backends serve the request, a cancellation
signal and an optional clock override. Nothing in the coordinator reads
identity or time from a global.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from ceremony.errors import RequestCancelled
from ceremony.interfaces import (
    ContributorIdentity,
    IdentityProvider,
    MetadataStore,
    ObjectStorage,
    Verifier,
)
from ceremony.persistence.event_log import EventLog


@dataclass(frozen=True)
class ServiceHandles:
    """The backends one coordinator instance is wired to.

    Without a verifier the coordinator serves every operation except
    submit_for_verification (operator tooling runs this way).
    """
    store: MetadataStore
    storage: ObjectStorage
    verifier: Optional[Verifier] = None
    event_log: EventLog = field(default_factory=EventLog)


@dataclass
class RequestContext:
    identity: ContributorIdentity
    handles: ServiceHandles
    cancel: threading.Event = field(default_factory=threading.Event)
    clock: Optional[Callable[[], datetime]] = None

    @classmethod
    def authenticate(
        cls,
        provider: IdentityProvider,
        handles: ServiceHandles,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> RequestContext:
        """Build a context from the identity provider's answer.

        AuthorizationError from the provider propagates unchanged.
        """
        return cls(identity=provider.authenticate(), handles=handles, clock=clock)

    @property
    def contributor_id(self) -> str:
        return self.identity.contributor_id

    def now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(timezone.utc)

    def check_cancelled(self) -> None:
        if self.cancel.is_set():
            raise RequestCancelled(f"Request by {self.contributor_id} was cancelled")
