"""Tests for ceremony, queue, participant and upload-session models."""

from datetime import datetime, timedelta, timezone

import pytest

from ceremony.errors import InvalidStateTransition
from ceremony.models.ceremony import (
    Ceremony,
    CeremonyState,
    CircuitTimings,
    TimeoutMechanism,
    TimeoutPolicy,
    WaitingQueue,
)
from ceremony.models.contribution import Participant, TimeoutRecord
from ceremony.models.upload import (
    ArtifactLocation,
    Part,
    UploadSession,
    UploadSessionState,
    UploadSnapshot,
)


def _now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_ceremony(state: CeremonyState = CeremonyState.SCHEDULED) -> Ceremony:
    return Ceremony(
        ceremony_id="cer-1",
        prefix="test-setup",
        title="Test Setup",
        coordinator_id="coord",
        start_utc=_now() - timedelta(days=1),
        end_utc=_now() + timedelta(days=1),
        timeout_policy=TimeoutPolicy(mechanism=TimeoutMechanism.FIXED),
        state=state,
    )


def _make_session(parts: int = 3) -> UploadSession:
    return UploadSession(
        session_id="up-1",
        attempt_id="att-1",
        circuit_id="circ-1",
        location=ArtifactLocation(bucket="b", key="k"),
        total_size=parts * 10,
        chunk_size=10,
        upload_id="u-1",
        parts=[Part(index=i, start=i * 10, end=(i + 1) * 10) for i in range(parts)],
    )


class TestCeremonyLifecycle:
    def test_scheduled_to_opened(self) -> None:
        ceremony = _make_ceremony()
        ceremony.transition_to(CeremonyState.OPENED)
        assert ceremony.state == CeremonyState.OPENED

    def test_opened_can_finalize_directly(self) -> None:
        ceremony = _make_ceremony(CeremonyState.OPENED)
        ceremony.transition_to(CeremonyState.FINALIZED)
        assert ceremony.state == CeremonyState.FINALIZED

    def test_scheduled_cannot_close(self) -> None:
        with pytest.raises(InvalidStateTransition, match="scheduled → closed"):
            _make_ceremony().transition_to(CeremonyState.CLOSED)

    def test_finalized_is_terminal(self) -> None:
        ceremony = _make_ceremony(CeremonyState.FINALIZED)
        for state in CeremonyState:
            with pytest.raises(InvalidStateTransition):
                ceremony.transition_to(state)

    def test_accepts_contributions_only_when_open_and_in_period(self) -> None:
        assert not _make_ceremony().accepts_contributions(_now())
        opened = _make_ceremony(CeremonyState.OPENED)
        assert opened.accepts_contributions(_now())
        assert not opened.accepts_contributions(opened.end_utc)
        assert not opened.accepts_contributions(opened.start_utc - timedelta(seconds=1))


class TestTimeoutPolicy:
    def test_penalty_timedelta(self) -> None:
        policy = TimeoutPolicy(mechanism=TimeoutMechanism.DYNAMIC, penalty_minutes=15)
        assert policy.penalty == timedelta(minutes=15)

    @pytest.mark.parametrize("kwargs", [
        {"fixed_window_minutes": 0},
        {"dynamic_threshold_pct": -1},
        {"penalty_minutes": -1},
    ])
    def test_invalid_policy_rejected(self, kwargs) -> None:
        with pytest.raises(ValueError):
            TimeoutPolicy(mechanism=TimeoutMechanism.FIXED, **kwargs)


class TestCircuitTimings:
    def test_running_average(self) -> None:
        timings = CircuitTimings()
        timings.record(1000, 100)
        timings.record(3000, 300)
        assert timings.samples == 2
        assert timings.full_contribution_ms == 2000
        assert timings.verify_ms == 200


class TestWaitingQueue:
    def test_enqueue_is_idempotent(self) -> None:
        queue = WaitingQueue(circuit_id="c").enqueued("a").enqueued("b").enqueued("a")
        assert queue.waiting_ids == ("a", "b")
        assert queue.head == "a"
        assert queue.position_of("b") == 1
        assert queue.position_of("z") is None

    def test_enqueue_front(self) -> None:
        queue = WaitingQueue(circuit_id="c").enqueued("a").enqueued("b", front=True)
        assert queue.waiting_ids == ("b", "a")

    def test_holder_is_not_enqueued_again(self) -> None:
        queue = WaitingQueue(circuit_id="c").enqueued("a").granted("a", "att", _now(), _now())
        assert queue.enqueued("a").waiting_ids == ()

    def test_grant_moves_head_to_holder(self) -> None:
        queue = WaitingQueue(circuit_id="c").enqueued("a").enqueued("b")
        granted = queue.granted("a", "att-1", _now(), _now() + timedelta(minutes=5))
        assert granted.holder == "a"
        assert not granted.idle
        assert granted.waiting_ids == ("b",)
        assert granted.lock.attempt_id == "att-1"
        assert granted.lock.expired(_now() + timedelta(minutes=5))
        assert not granted.lock.expired(_now())
        # Snapshots are immutable
        assert queue.idle
        assert queue.lock is None

    def test_release_counts(self) -> None:
        queue = WaitingQueue(circuit_id="c").granted("a", "att", _now(), _now())
        done = queue.released(completed=True)
        assert done.idle
        assert done.completed_contributions == 1
        assert done.failed_contributions == 0
        failed = queue.released(failed=True)
        assert failed.completed_contributions == 0
        assert failed.failed_contributions == 1


class TestParticipant:
    def test_active_lockout(self) -> None:
        participant = Participant(participant_id="p", ceremony_id="cer")
        record = TimeoutRecord(
            circuit_id="c", attempt_id="a",
            start_utc=_now(), end_utc=_now() + timedelta(minutes=10),
        )
        participant.timeouts.append(record)
        assert participant.active_lockout(_now() + timedelta(minutes=5)) == record
        assert participant.active_lockout(_now() + timedelta(minutes=10)) is None

    def test_next_sequence_position(self) -> None:
        participant = Participant(participant_id="p", ceremony_id="cer", contribution_progress=2)
        assert participant.next_sequence_position == 3


class TestUploadSession:
    def test_lifecycle(self) -> None:
        session = _make_session()
        assert session.open
        session.transition_to(UploadSessionState.IN_PROGRESS)
        session.transition_to(UploadSessionState.CLOSED)
        assert not session.open

    def test_closed_cannot_abort(self) -> None:
        session = _make_session()
        session.transition_to(UploadSessionState.CLOSED)
        with pytest.raises(InvalidStateTransition, match="closed → aborted"):
            session.transition_to(UploadSessionState.ABORTED)

    def test_missing_and_acknowledged_parts(self) -> None:
        session = _make_session(parts=3)
        session.parts[1].tag = "etag-1"
        assert session.missing_parts() == [0, 2]
        assert session.acknowledged_parts() == [1]
        assert session.parts[1].part_number == 2
        assert session.parts[1].size == 10

    def test_snapshot(self) -> None:
        session = _make_session(parts=2)
        session.parts[0].tag = "etag-0"
        snapshot = UploadSnapshot.of(session)
        assert snapshot.part_count == 2
        assert snapshot.acknowledged == (0,)
        assert snapshot.state == UploadSessionState.OPENED


class TestArtifactLocation:
    def test_uri_round_trip_with_hash(self) -> None:
        location = ArtifactLocation(bucket="setup-ph2", key="circuits/x/x_00001.zkey", content_hash="ab12")
        assert location.uri == "store://setup-ph2/circuits/x/x_00001.zkey#blake2b=ab12"
        assert ArtifactLocation.parse(location.uri) == location

    def test_uri_without_hash(self) -> None:
        parsed = ArtifactLocation.parse("store://b/k/v")
        assert parsed.bucket == "b"
        assert parsed.key == "k/v"
        assert parsed.content_hash is None

    @pytest.mark.parametrize("uri", ["s3://b/k", "store://b", "store:///k"])
    def test_malformed_uri(self, uri) -> None:
        with pytest.raises(ValueError):
            ArtifactLocation.parse(uri)
