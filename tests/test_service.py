"""Tests for CoordinatorService — the contribution protocol end to end."""

import hashlib
import threading
from datetime import datetime, timedelta, timezone

import pytest

from ceremony.config import CoordinatorConfig
from ceremony.context import RequestContext, ServiceHandles
from ceremony.errors import (
    AuthorizationError,
    HashMismatchError,
    IncompletePartsError,
    InvalidStateTransition,
    RequestCancelled,
    SessionAbortedError,
    TimeoutEvicted,
    UploadIntegrityError,
    VerificationFailure,
)
from ceremony.interfaces import ContributorIdentity, VerifierVerdict
from ceremony.models.ceremony import CeremonyState, CircuitMetadata, TimeoutMechanism, TimeoutPolicy
from ceremony.models.contribution import AttemptState, ParticipantStatus
from ceremony.models.upload import UploadSessionState
from ceremony.persistence.event_log import EventKind
from ceremony.persistence.metadata_store import InMemoryMetadataStore
from ceremony.service import CircuitAssignment, CoordinatorService, NoneAvailable, NoneAvailableReason
from ceremony.storage.local import LocalObjectStorage


DATA = b"contributed zkey " * 8


def _now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self) -> None:
        self.now = _now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class StubVerifier:
    def __init__(self) -> None:
        self.valid = True
        self.calls = []
        self.on_verify = None

    def verify(self, previous, new, metadata) -> VerifierVerdict:
        self.calls.append((previous, new))
        if self.on_verify is not None:
            self.on_verify()
        return VerifierVerdict(valid=self.valid, reason="" if self.valid else "bad transformation")


class Harness:
    def __init__(self, circuits=("multiplier",), store=None, config=None) -> None:
        self.clock = Clock()
        self.verifier = StubVerifier()
        self.storage = LocalObjectStorage(clock=self.clock)
        self.handles = ServiceHandles(
            store=store or InMemoryMetadataStore(),
            storage=self.storage,
            verifier=self.verifier,
        )
        self.service = CoordinatorService(
            self.handles, config or CoordinatorConfig(), sleep=lambda s: None,
        )
        if store is None:
            self.service.create_ceremony(
                "cer", "My Setup", "coord",
                start_utc=_now() - timedelta(hours=1),
                end_utc=_now() + timedelta(days=1),
                timeout_policy=TimeoutPolicy(
                    mechanism=TimeoutMechanism.FIXED, fixed_window_minutes=30, penalty_minutes=10,
                ),
            )
            for name in circuits:
                self.service.add_circuit("cer", name, CircuitMetadata(constraints=100, wires=120, pot=8))
            assert self.service.open_ceremony("cer").success

    def ctx(self, name: str) -> RequestContext:
        return RequestContext(ContributorIdentity(name), self.handles, clock=self.clock)

    def request(self, name: str):
        return self.service.request_next_circuit(self.ctx(name), "cer")

    def upload(self, ctx, attempt_id: str, data: bytes = DATA, declared=None, parts=None):
        digest = declared or hashlib.blake2b(data).hexdigest()
        self.service.declare_contribution(ctx, attempt_id, digest, 1500)
        session = self.service.open_upload(ctx, attempt_id, len(data), chunk_size=32)
        uploaded = 0
        for auth in self.service.authorize_parts(ctx, session.session_id):
            if parts is not None and uploaded >= parts:
                break
            tag = self.storage.put_part(auth.url, data[auth.byte_start:auth.byte_end])
            self.service.report_part_complete(ctx, session.session_id, auth.part_index, tag)
            uploaded += 1
        return session

    def contribute(self, name: str, attempt_id: str = None, **kwargs):
        ctx = self.ctx(name)
        if attempt_id is None:
            assignment = self.request(name)
            assert isinstance(assignment, CircuitAssignment)
            attempt_id = assignment.attempt_id
        session = self.upload(ctx, attempt_id, **kwargs)
        return self.service.submit_for_verification(ctx, session.session_id)


@pytest.fixture
def h() -> Harness:
    return Harness()


class TestHappyPath:
    def test_single_contribution(self, h) -> None:
        assignment = h.request("alice")
        assert isinstance(assignment, CircuitAssignment)
        assert assignment.index == 0
        assert assignment.circuit_id == "cer/multiplier"
        assert assignment.predecessor.key.endswith("multiplier_00000.zkey")
        assert assignment.target.key.endswith("multiplier_00001.zkey")
        assert assignment.target.bucket == "my-setup-ph2-ceremony"
        assert assignment.expires_utc == _now() + timedelta(minutes=30)
        assert assignment.disk_space_gb > 0

        result = h.contribute("alice", assignment.attempt_id)
        assert result.valid
        records = h.service.registry.contributions("cer/multiplier")
        assert [r.index for r in records] == [0]
        assert records[0].content_hash == hashlib.blake2b(DATA).hexdigest()
        assert records[0].artifact_uri == result.location.uri
        assert b"".join(h.storage.iter_object(result.location, 64)) == DATA

        participant = h.handles.store.get_participant("cer", "alice")
        assert participant.status == ParticipantStatus.DONE
        assert h.request("alice") == NoneAvailable(reason=NoneAvailableReason.ALL_DONE)

    def test_indices_are_dense_and_chain(self, h) -> None:
        assert isinstance(h.request("alice"), CircuitAssignment)
        queued = h.request("bob")
        assert queued.reason == NoneAvailableReason.QUEUED
        assert queued.position == 0

        alice_attempt = h.handles.store.get_participant("cer", "alice").current_attempt_id
        first = h.contribute("alice", alice_attempt)

        holding = h.request("bob")
        assert holding.reason == NoneAvailableReason.ALREADY_HOLDING
        snapshot = h.service.resume_after_reconnect(h.ctx("bob"), holding.attempt_id)
        assert snapshot.assignment.index == 1
        assert snapshot.assignment.predecessor.key == first.location.key
        h.contribute("bob", holding.attempt_id)

        records = h.service.registry.contributions("cer/multiplier")
        assert [(r.index, r.contributor_id) for r in records] == [(0, "alice"), (1, "bob")]
        assert h.verifier.calls[1][0].key == first.location.key

    def test_progress_moves_to_next_circuit(self) -> None:
        h = Harness(circuits=("first", "second"))
        h.contribute("alice")
        assert h.handles.store.get_participant("cer", "alice").status == ParticipantStatus.CONTRIBUTED
        assignment = h.request("alice")
        assert assignment.circuit_id == "cer/second"
        h.contribute("alice", assignment.attempt_id)
        text = h.service.attestation(h.ctx("alice"), "cer")
        assert text.startswith("I, alice, contributed to the My Setup trusted setup ceremony.")
        assert text.index("Circuit: first") < text.index("Circuit: second")


class TestEviction:
    def test_late_part_after_eviction_is_refused(self, h) -> None:
        alice = h.ctx("alice")
        assignment = h.request("alice")
        assert h.request("bob").reason == NoneAvailableReason.QUEUED
        session = h.upload(alice, assignment.attempt_id, parts=1)
        pending = h.service.authorize_parts(alice, session.session_id)

        h.clock.advance(minutes=31)
        with pytest.raises(SessionAbortedError):
            h.service.report_part_complete(alice, session.session_id, pending[0].part_index, '"late"')

        queue = h.service.registry.queue("cer/multiplier")
        assert queue.holder == "bob"
        attempt = h.handles.store.get_attempt(assignment.attempt_id)
        assert attempt.state == AttemptState.EVICTED
        assert h.storage.pending_uploads() == 0
        with pytest.raises(TimeoutEvicted):
            h.service.resume_after_reconnect(alice, assignment.attempt_id)

    def test_restarted_coordinator_refuses_late_part(self, h) -> None:
        assignment = h.request("alice")
        h.request("bob")
        session = h.upload(h.ctx("alice"), assignment.attempt_id, parts=1)
        pending = h.service.authorize_parts(h.ctx("alice"), session.session_id)

        restarted = Harness(store=h.handles.store)
        restarted.clock.advance(minutes=45)
        with pytest.raises(SessionAbortedError):
            restarted.service.report_part_complete(
                restarted.ctx("alice"), session.session_id, pending[0].part_index, '"late"',
            )

        queue = restarted.service.registry.queue("cer/multiplier")
        assert queue.holder == "bob"
        attempt = h.handles.store.get_attempt(assignment.attempt_id)
        assert attempt.state == AttemptState.EVICTED
        assert attempt.terminal_reason == "expired_before_restart"
        assert restarted.service.status("cer")["armed_timers"] == 1

    def test_part_report_rechecks_deadline(self, h) -> None:
        alice = h.ctx("alice")
        assignment = h.request("alice")
        session = h.upload(alice, assignment.attempt_id, parts=1)
        pending = h.service.authorize_parts(alice, session.session_id)
        h.service._monitor.disarm("cer/multiplier", assignment.attempt_id)

        h.clock.advance(minutes=30)
        with pytest.raises(SessionAbortedError):
            h.service.report_part_complete(alice, session.session_id, pending[0].part_index, '"late"')
        attempt = h.handles.store.get_attempt(assignment.attempt_id)
        assert attempt.state == AttemptState.EVICTED

    def test_lockout_then_requeue(self, h) -> None:
        h.request("alice")
        h.request("bob")
        h.clock.advance(minutes=30)
        h.service.sweep_timeouts(h.clock.now)

        locked = h.request("alice")
        assert locked.reason == NoneAvailableReason.LOCKED_OUT
        assert locked.lockout_until_utc == h.clock.now + timedelta(minutes=10)
        assert not h.service.check_eligibility(h.ctx("alice"), "cer")

        h.clock.advance(minutes=10)
        assert h.service.check_eligibility(h.ctx("alice"), "cer")
        assert h.request("alice").reason == NoneAvailableReason.QUEUED

    def test_evicted_attempt_cannot_declare(self, h) -> None:
        assignment = h.request("alice")
        h.clock.advance(minutes=45)
        with pytest.raises(TimeoutEvicted):
            h.service.declare_contribution(h.ctx("alice"), assignment.attempt_id, "ab", 1)

    def test_verification_overrunning_window(self, h) -> None:
        assignment = h.request("alice")
        h.verifier.on_verify = lambda: h.clock.advance(minutes=40)
        with pytest.raises(TimeoutEvicted):
            h.contribute("alice", assignment.attempt_id)
        attempt = h.handles.store.get_attempt(assignment.attempt_id)
        assert attempt.state == AttemptState.EVICTED
        assert attempt.terminal_reason == "verification_overran_window"
        assert h.service.registry.contributions("cer/multiplier") == []

    def test_presigned_urls_end_at_deadline(self, h) -> None:
        alice = h.ctx("alice")
        assignment = h.request("alice")
        h.clock.advance(minutes=25)
        session = h.service.open_upload(alice, assignment.attempt_id, len(DATA), chunk_size=32)
        auths = h.service.authorize_parts(alice, session.session_id)
        assert all(a.expires_utc == assignment.expires_utc for a in auths)


class TestConcurrency:
    def test_two_contributors_one_grant(self, h) -> None:
        barrier = threading.Barrier(2)
        results = {}

        def request(name: str) -> None:
            barrier.wait()
            results[name] = h.request(name)

        threads = [threading.Thread(target=request, args=(n,)) for n in ("alice", "bob")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        granted = [r for r in results.values() if isinstance(r, CircuitAssignment)]
        queued = [r for r in results.values() if isinstance(r, NoneAvailable)]
        assert len(granted) == 1
        assert len(queued) == 1
        assert queued[0].reason == NoneAvailableReason.QUEUED
        assert len(h.handles.event_log.events(EventKind.LOCK_GRANTED)) == 1

    def test_same_contributor_twice(self, h) -> None:
        barrier = threading.Barrier(2)
        results = []

        def request() -> None:
            barrier.wait()
            results.append(h.request("alice"))

        threads = [threading.Thread(target=request) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        granted = [r for r in results if isinstance(r, CircuitAssignment)]
        assert len(granted) == 1
        holding = [r for r in results if isinstance(r, NoneAvailable)]
        assert holding[0].reason == NoneAvailableReason.ALREADY_HOLDING
        assert holding[0].attempt_id == granted[0].attempt_id


class TestResume:
    def test_resume_is_idempotent(self, h) -> None:
        alice = h.ctx("alice")
        assignment = h.request("alice")
        session = h.upload(alice, assignment.attempt_id, parts=2)
        first = h.service.resume_after_reconnect(alice, assignment.attempt_id)
        second = h.service.resume_after_reconnect(alice, assignment.attempt_id)
        assert first == second
        assert first.state == AttemptState.UPLOADING
        assert first.upload.session_id == session.session_id
        assert first.upload.acknowledged == (0, 1)
        assert first.assignment == assignment

    def test_finish_upload_after_reconnect(self, h) -> None:
        alice = h.ctx("alice")
        assignment = h.request("alice")
        session = h.upload(alice, assignment.attempt_id, parts=1)
        with pytest.raises(IncompletePartsError):
            h.service.submit_for_verification(alice, session.session_id)
        assert h.handles.store.get_attempt(assignment.attempt_id).state == AttemptState.UPLOADING

        for auth in h.service.authorize_parts(alice, session.session_id):
            tag = h.storage.put_part(auth.url, DATA[auth.byte_start:auth.byte_end])
            h.service.report_part_complete(alice, session.session_id, auth.part_index, tag)
        assert h.service.submit_for_verification(alice, session.session_id).valid


class TestRejection:
    def test_hash_mismatch_rejects(self) -> None:
        h = Harness()
        assignment = h.request("alice")
        h.request("bob")
        with pytest.raises(HashMismatchError):
            h.contribute("alice", assignment.attempt_id, declared="00" * 64)
        assert h.verifier.calls == []
        attempt = h.handles.store.get_attempt(assignment.attempt_id)
        assert attempt.state == AttemptState.REJECTED
        queue = h.service.registry.queue("cer/multiplier")
        assert queue.holder == "bob"
        assert queue.waiting_ids == ("alice",)
        assert queue.completed_contributions == 0
        bob_attempt = queue.attempt_id
        assert h.contribute("bob", bob_attempt).valid
        assert h.service.registry.contributions("cer/multiplier")[0].index == 0

    def test_unrecognised_part_tags_reject_at_close(self, h) -> None:
        alice = h.ctx("alice")
        assignment = h.request("alice")
        h.request("bob")
        h.service.declare_contribution(alice, assignment.attempt_id, hashlib.blake2b(DATA).hexdigest(), 1500)
        session = h.service.open_upload(alice, assignment.attempt_id, len(DATA), chunk_size=32)
        for auth in h.service.authorize_parts(alice, session.session_id):
            h.storage.put_part(auth.url, DATA[auth.byte_start:auth.byte_end])
            h.service.report_part_complete(
                alice, session.session_id, auth.part_index, f'"bogus-{auth.part_index}"',
            )

        with pytest.raises(UploadIntegrityError, match="tag mismatch"):
            h.service.submit_for_verification(alice, session.session_id)

        attempt = h.handles.store.get_attempt(assignment.attempt_id)
        assert attempt.state == AttemptState.REJECTED
        queue = h.service.registry.queue("cer/multiplier")
        assert queue.holder == "bob"
        assert queue.failed_contributions == 1
        assert queue.completed_contributions == 0
        assert h.handles.store.get_session(session.session_id).state == UploadSessionState.ABORTED
        assert h.storage.pending_uploads() == 0
        assert h.verifier.calls == []

    def test_verifier_rejection(self, h) -> None:
        h.verifier.valid = False
        assignment = h.request("alice")
        with pytest.raises(VerificationFailure, match="bad transformation"):
            h.contribute("alice", assignment.attempt_id)
        assert len(h.handles.event_log.events(EventKind.CONTRIBUTION_REJECTED)) == 1

    def test_missing_declaration_rejects(self, h) -> None:
        alice = h.ctx("alice")
        assignment = h.request("alice")
        session = h.service.open_upload(alice, assignment.attempt_id, len(DATA), chunk_size=len(DATA))
        auth = h.service.authorize_parts(alice, session.session_id)[0]
        tag = h.storage.put_part(auth.url, DATA)
        h.service.report_part_complete(alice, session.session_id, 0, tag)
        with pytest.raises(UploadIntegrityError, match="No content hash"):
            h.service.submit_for_verification(alice, session.session_id)


class TestContext:
    def test_cancelled_request(self, h) -> None:
        ctx = h.ctx("alice")
        ctx.cancel.set()
        with pytest.raises(RequestCancelled):
            h.service.request_next_circuit(ctx, "cer")
        assert h.service.registry.queue("cer/multiplier").waiting_ids == ()

    def test_foreign_handles_rejected(self, h) -> None:
        other = Harness()
        with pytest.raises(ValueError, match="different coordinator"):
            h.service.request_next_circuit(other.ctx("alice"), "cer")

    def test_other_contributors_attempt(self, h) -> None:
        assignment = h.request("alice")
        with pytest.raises(AuthorizationError):
            h.service.declare_contribution(h.ctx("mallory"), assignment.attempt_id, "ab", 1)

    def test_authenticate_from_provider(self, h) -> None:
        class Provider:
            def authenticate(self):
                return ContributorIdentity("carol", handle="@carol")

        ctx = RequestContext.authenticate(Provider(), h.handles, clock=h.clock)
        assert ctx.contributor_id == "carol"
        assert isinstance(h.service.request_next_circuit(ctx, "cer"), CircuitAssignment)

    def test_no_verifier_configured(self) -> None:
        handles = ServiceHandles(store=InMemoryMetadataStore(), storage=LocalObjectStorage())
        service = CoordinatorService(handles)
        ctx = RequestContext(ContributorIdentity("alice"), handles)
        with pytest.raises(InvalidStateTransition, match="no verifier"):
            service.submit_for_verification(ctx, "upl_x")


class TestOperator:
    def test_duplicate_ceremony(self, h) -> None:
        with pytest.raises(ValueError, match="already exists"):
            h.service.create_ceremony(
                "cer", "Again", "coord", _now(), _now() + timedelta(days=1),
                TimeoutPolicy(mechanism=TimeoutMechanism.FIXED),
            )

    def test_duplicate_circuit_position(self, h) -> None:
        with pytest.raises(ValueError, match="already taken"):
            h.service.add_circuit("cer", "other", CircuitMetadata(1, 1, 1), sequence_position=1)

    def test_open_twice_fails(self, h) -> None:
        result = h.service.open_ceremony("cer")
        assert not result.success
        assert "opened → opened" in result.errors[0]

    def test_closed_ceremony_refuses_requests(self, h) -> None:
        assert h.service.close_ceremony("cer").success
        assert h.request("alice").reason == NoneAvailableReason.CEREMONY_NOT_OPEN

    def test_status_report(self, h) -> None:
        h.request("alice")
        h.request("bob")
        report = h.service.status("cer")
        circuit = report["ceremonies"][0]["circuits"][0]
        assert circuit["holder"] == "alice"
        assert circuit["waiting"] == ["bob"]
        assert report["armed_timers"] == 1

    def test_restart_reconciles(self, h) -> None:
        assignment = h.request("alice")
        restarted = Harness(store=h.handles.store)
        result = restarted.service.reconcile(assignment.expires_utc + timedelta(seconds=1))
        assert result.data["evicted"] == [assignment.attempt_id]
        assert result.data["armed"] == 0


class TestFinalize:
    def test_only_coordinator_may_finalize(self, h) -> None:
        with pytest.raises(AuthorizationError):
            h.service.finalize_ceremony(h.ctx("alice"), "cer")

    def test_finalize_releases_holders_without_penalty(self, h) -> None:
        assignment = h.request("alice")
        h.request("bob")
        ceremony = h.service.finalize_ceremony(h.ctx("coord"), "cer")
        assert ceremony.state == CeremonyState.FINALIZED
        assert ceremony.finalized_utc == _now()
        attempt = h.handles.store.get_attempt(assignment.attempt_id)
        assert attempt.state == AttemptState.EVICTED
        assert attempt.terminal_reason == "ceremony_finalized"
        queue = h.service.registry.queue("cer/multiplier")
        assert queue.idle
        assert queue.waiting_ids == ()
        alice = h.handles.store.get_participant("cer", "alice")
        assert alice.status == ParticipantStatus.FINALIZED
        assert alice.timeouts == []
        assert h.request("bob").reason == NoneAvailableReason.CEREMONY_NOT_OPEN
