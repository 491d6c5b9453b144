"""Upload coordinator — multipart session lifecycle and part accounting.

Clients never hold storage credentials. The coordinator opens a multipart
reservation, hands out presigned per-part URLs in bounded batches, records
each part's completion tag, and commits or aborts the reservation. The
artifact bytes flow from the client straight to storage.

Usage:
    coordinator = UploadCoordinator(store, storage, config, event_log)
    session = coordinator.open_session(attempt, target, total_size)
    for auth in coordinator.authorize_parts(session.session_id):
        tag = client_upload(auth.url, data[auth.byte_start:auth.byte_end])
        coordinator.acknowledge_part(session.session_id, auth.part_index, tag)
    location = coordinator.close_session(session.session_id, content_hash)

Storage calls that raise StorageUnavailable are retried with bounded
exponential backoff; each retry is recorded in the event log.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from ceremony.config import CoordinatorConfig
from ceremony.errors import (
    IncompletePartsError,
    InvalidStateTransition,
    SessionAbortedError,
    SessionAlreadyOpenError,
    StorageUnavailable,
    UnknownPartError,
)
from ceremony.interfaces import MetadataStore, ObjectStorage
from ceremony.models.contribution import ContributionAttempt
from ceremony.models.upload import (
    ArtifactLocation,
    Part,
    PartAuthorization,
    UploadSession,
    UploadSessionState,
    UploadSnapshot,
)
from ceremony.persistence.event_log import EventKind, EventLog
from ceremony.sizing import part_count
from ceremony.upload.retry import RetryDecision, RetryPolicy


class UploadCoordinator:
    """Owns upload sessions on behalf of contribution attempts."""

    def __init__(
        self,
        store: MetadataStore,
        storage: ObjectStorage,
        config: CoordinatorConfig,
        event_log: Optional[EventLog] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._storage = storage
        self._config = config
        self._event_log = event_log
        self._sleep = sleep
        self._retry = RetryPolicy(
            max_attempts=config.storage_retry_attempts,
            base_delay_seconds=config.storage_retry_base_delay_seconds,
            max_delay_seconds=config.storage_retry_max_delay_seconds,
        )
        self._guard = threading.Lock()
        self._session_locks: Dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open_session(
        self,
        attempt: ContributionAttempt,
        target: ArtifactLocation,
        total_size: int,
        chunk_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> UploadSession:
        """Open a multipart session for the attempt.

        Pre-allocates ceil(total_size / chunk_size) part descriptors.

        Raises:
            SessionAlreadyOpenError: the attempt already owns an open session.
            InvalidStateTransition: the attempt's session already ended.
            ValueError: non-positive size or chunk size.
        """
        chunk_size = chunk_size or self._config.chunk_size_bytes
        count = part_count(total_size, chunk_size)
        now = now or datetime.now(timezone.utc)

        with self._lock_for(attempt.attempt_id):
            existing = self._store.session_for_attempt(attempt.attempt_id)
            if existing is not None:
                if existing.open:
                    raise SessionAlreadyOpenError(
                        f"Upload session {existing.session_id} already open",
                        circuit_id=attempt.circuit_id,
                        attempt_id=attempt.attempt_id,
                    )
                raise InvalidStateTransition(
                    f"Upload session {existing.session_id} already {existing.state.value}",
                    circuit_id=attempt.circuit_id,
                    attempt_id=attempt.attempt_id,
                )

            upload_id = self._with_retry(
                lambda: self._storage.create_multipart_session(target.bucket, target.key),
                attempt,
            )
            parts = [
                Part(
                    index=i,
                    start=i * chunk_size,
                    end=min((i + 1) * chunk_size, total_size),
                )
                for i in range(count)
            ]
            session = UploadSession(
                session_id=f"upl_{uuid4().hex[:12]}",
                attempt_id=attempt.attempt_id,
                circuit_id=attempt.circuit_id,
                location=target,
                total_size=total_size,
                chunk_size=chunk_size,
                upload_id=upload_id,
                parts=parts,
                opened_utc=now,
            )
            self._store.save_session(session)

        self._forget_lock(attempt.attempt_id)
        self._record(EventKind.UPLOAD_OPENED, attempt.contributor_id, {
            "circuit_id": attempt.circuit_id,
            "attempt_id": attempt.attempt_id,
            "session_id": session.session_id,
            "total_size": total_size,
            "chunk_size": chunk_size,
            "parts": count,
        }, now)
        return session

    def authorize_parts(
        self,
        session_id: str,
        now: Optional[datetime] = None,
        not_after: Optional[datetime] = None,
    ) -> List[PartAuthorization]:
        """Presigned URLs for the next batch of unacknowledged parts.

        The batch is always the first `max_outstanding_authorizations`
        unacknowledged parts, so at most that many authorizations are live
        at once. Calling again re-signs the same window with a fresh
        expiry. When `not_after` is given (the holder's lock deadline), no
        authorization outlives it.
        """
        now = now or datetime.now(timezone.utc)
        ttl = self._config.presigned_url_expiration_seconds
        if not_after is not None:
            ttl = max(1, min(ttl, int((not_after - now).total_seconds())))
        with self._lock_for(session_id):
            session = self._store.get_session(session_id)
            self._require_open(session)
            pending = [p for p in session.parts if not p.acknowledged]
            batch = pending[: self._config.max_outstanding_authorizations]
            authorizations: List[PartAuthorization] = []
            for part in batch:
                url = self._with_retry(
                    lambda part=part: self._storage.sign_part_upload(
                        session.location.bucket,
                        session.location.key,
                        session.upload_id,
                        part.part_number,
                        part.size,
                        ttl,
                    ),
                    session,
                )
                part.authorized_until = now + timedelta(seconds=ttl)
                authorizations.append(PartAuthorization(
                    part_index=part.index,
                    part_number=part.part_number,
                    url=url,
                    byte_start=part.start,
                    byte_end=part.end,
                    expires_utc=part.authorized_until,
                ))
            if authorizations and session.state == UploadSessionState.OPENED:
                session.transition_to(UploadSessionState.IN_PROGRESS)
            self._store.save_session(session)
        return authorizations

    def acknowledge_part(self, session_id: str, part_index: int, tag: str) -> UploadSession:
        """Record a part's completion tag. Idempotent for the same tag.

        Raises:
            SessionAbortedError: the session was aborted (e.g. eviction).
            UnknownPartError: index out of range, or a different tag was
                already recorded for the part.
        """
        if not tag:
            raise ValueError("Completion tag must be non-empty")
        with self._lock_for(session_id):
            session = self._store.get_session(session_id)
            if session.state == UploadSessionState.ABORTED:
                self._forget_lock(session_id)
                raise SessionAbortedError(
                    f"Upload session {session_id} was aborted",
                    circuit_id=session.circuit_id,
                    attempt_id=session.attempt_id,
                )
            if not 0 <= part_index < session.part_count:
                raise UnknownPartError(
                    f"Part {part_index} out of range [0, {session.part_count})",
                    circuit_id=session.circuit_id,
                    attempt_id=session.attempt_id,
                )
            part = session.parts[part_index]
            if part.tag == tag:
                return session
            if part.tag is not None:
                raise UnknownPartError(
                    f"Part {part_index} already acknowledged with a different tag",
                    circuit_id=session.circuit_id,
                    attempt_id=session.attempt_id,
                )
            part.tag = tag
            if session.state == UploadSessionState.OPENED:
                session.transition_to(UploadSessionState.IN_PROGRESS)
            self._store.save_session(session)
            return session

    def close_session(
        self,
        session_id: str,
        content_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ArtifactLocation:
        """Commit all parts into the final object.

        Closing an already closed session returns the same location.

        Raises:
            IncompletePartsError: one or more parts unacknowledged.
            SessionAbortedError: the session was aborted.
        """
        now = now or datetime.now(timezone.utc)
        with self._lock_for(session_id):
            session = self._store.get_session(session_id)
            if session.state == UploadSessionState.CLOSED:
                assert session.final_location is not None
                self._forget_lock(session_id)
                return session.final_location
            if session.state == UploadSessionState.ABORTED:
                self._forget_lock(session_id)
                raise SessionAbortedError(
                    f"Upload session {session_id} was aborted",
                    circuit_id=session.circuit_id,
                    attempt_id=session.attempt_id,
                )
            missing = session.missing_parts()
            if missing:
                raise IncompletePartsError(
                    missing,
                    circuit_id=session.circuit_id,
                    attempt_id=session.attempt_id,
                )
            committed = self._with_retry(
                lambda: self._storage.complete_multipart_session(
                    session.location.bucket,
                    session.location.key,
                    session.upload_id,
                    [(p.part_number, p.tag) for p in session.parts],
                ),
                session,
            )
            final = ArtifactLocation(
                bucket=committed.bucket,
                key=committed.key,
                content_hash=content_hash,
            )
            session.transition_to(UploadSessionState.CLOSED)
            session.closed_utc = now
            session.final_location = final
            self._store.save_session(session)

        self._forget_lock(session_id)
        self._record(EventKind.UPLOAD_CLOSED, "system", {
            "circuit_id": session.circuit_id,
            "attempt_id": session.attempt_id,
            "session_id": session_id,
            "location": final.uri,
        }, now)
        return final

    def abort_session(self, session_id: Optional[str], now: Optional[datetime] = None) -> bool:
        """Abort a session and release its storage reservation.

        Always safe: unknown, closed and already aborted sessions are a
        no-op. The session is marked ABORTED before storage is contacted,
        so acknowledgements racing the abort are refused. Returns False if
        storage stayed unavailable and the reservation could not be
        released (recorded in the event log for operator cleanup).
        """
        if session_id is None:
            return True
        now = now or datetime.now(timezone.utc)
        with self._lock_for(session_id):
            try:
                session = self._store.get_session(session_id)
            except KeyError:
                session = None
            if session is None or not session.open:
                self._forget_lock(session_id)
                return True
            session.transition_to(UploadSessionState.ABORTED)
            session.aborted_utc = now
            self._store.save_session(session)

        self._forget_lock(session_id)
        released = True
        try:
            self._with_retry(
                lambda: self._storage.abort_multipart_session(
                    session.location.bucket, session.location.key, session.upload_id,
                ),
                session,
            )
        except StorageUnavailable:
            released = False

        self._record(EventKind.UPLOAD_ABORTED, "system", {
            "circuit_id": session.circuit_id,
            "attempt_id": session.attempt_id,
            "session_id": session_id,
            "storage_released": released,
        }, now)
        return released

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def snapshot(self, session_id: str) -> UploadSnapshot:
        return UploadSnapshot.of(self._store.get_session(session_id))

    def session_for_attempt(self, attempt_id: str) -> Optional[UploadSession]:
        return self._store.session_for_attempt(attempt_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_open(self, session: UploadSession) -> None:
        if not session.open:
            self._forget_lock(session.session_id)
        if session.state == UploadSessionState.ABORTED:
            raise SessionAbortedError(
                f"Upload session {session.session_id} was aborted",
                circuit_id=session.circuit_id,
                attempt_id=session.attempt_id,
            )
        if session.state == UploadSessionState.CLOSED:
            raise InvalidStateTransition(
                f"Upload session {session.session_id} is closed",
                circuit_id=session.circuit_id,
                attempt_id=session.attempt_id,
            )

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._session_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._session_locks[key] = lock
            return lock

    def _forget_lock(self, key: str) -> None:
        with self._guard:
            self._session_locks.pop(key, None)

    def _with_retry(self, fn, owner):
        """Run a storage call, retrying StorageUnavailable with backoff."""

        def on_retry(decision: RetryDecision) -> None:
            self._record(EventKind.STORAGE_RETRY, "system", {
                "circuit_id": owner.circuit_id,
                "attempt_id": owner.attempt_id,
                "attempt": decision.attempt,
                "max_attempts": decision.max_attempts,
                "delay_seconds": decision.delay_seconds,
                "reason": decision.error.reason,
            }, None)

        try:
            return self._retry.run(fn, sleep=self._sleep, on_retry=on_retry)
        except StorageUnavailable as e:
            raise StorageUnavailable(
                f"Storage unavailable after {self._retry.max_attempts} attempts: {e.reason}",
                circuit_id=owner.circuit_id,
                attempt_id=owner.attempt_id,
            ) from e

    def _record(self, kind: EventKind, actor_id: str, payload: dict, now: Optional[datetime]) -> None:
        if self._event_log is not None:
            self._event_log.record(kind, actor_id, payload, now)
