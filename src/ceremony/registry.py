"""Ceremony and circuit registry — read-side view over the metadata store.

Answers the questions the scheduler and service ask before they act:
which ceremonies are open, which circuit a participant should work on
next, where a circuit's zkey artifacts live, and whether a participant
is serving a lock-out.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from ceremony.config import CoordinatorConfig
from ceremony.interfaces import MetadataStore
from ceremony.models.ceremony import Ceremony, Circuit, WaitingQueue
from ceremony.models.contribution import Contribution, Participant, TimeoutRecord
from ceremony.models.upload import ArtifactLocation
from ceremony.sizing import GENESIS_ZKEY_INDEX, bucket_name, zkey_storage_key


class CeremonyRegistry:

    def __init__(self, store: MetadataStore, config: CoordinatorConfig) -> None:
        self._store = store
        self._config = config

    def ceremony(self, ceremony_id: str) -> Ceremony:
        return self._store.get_ceremony(ceremony_id)

    def opened_ceremonies(self, now: datetime) -> List[Ceremony]:
        return [c for c in self._store.list_ceremonies() if c.accepts_contributions(now)]

    def circuits(self, ceremony_id: str) -> List[Circuit]:
        """Circuits ordered by sequence position."""
        return self._store.circuits_for(ceremony_id)

    def circuit(self, circuit_id: str) -> Circuit:
        return self._store.get_circuit(circuit_id)

    def queue(self, circuit_id: str) -> WaitingQueue:
        return self._store.read_queue(circuit_id)

    def contributions(self, circuit_id: str) -> List[Contribution]:
        return self._store.contributions(circuit_id)

    def next_circuit_for(self, participant: Participant) -> Optional[Circuit]:
        """The first circuit after the participant's progress still open to them.

        Circuits that reached the required contribution count, and circuits
        the participant already contributed to, are skipped.
        """
        for circuit in self.circuits(participant.ceremony_id):
            if circuit.sequence_position < participant.next_sequence_position:
                continue
            if circuit.completed or circuit.circuit_id in participant.contribution_hashes:
                continue
            return circuit
        return None

    def active_lockout(self, ceremony_id: str, participant_id: str, now: datetime) -> Optional[TimeoutRecord]:
        participant = self._store.get_participant(ceremony_id, participant_id)
        if participant is None:
            return None
        return participant.active_lockout(now)

    # -- artifact locations -------------------------------------------------

    def bucket_for(self, ceremony: Ceremony) -> str:
        return bucket_name(ceremony.prefix, self._config.bucket_postfix)

    def zkey_location(self, circuit: Circuit, zkey_index: int) -> ArtifactLocation:
        ceremony = self._store.get_ceremony(circuit.ceremony_id)
        return ArtifactLocation(
            bucket=self.bucket_for(ceremony),
            key=zkey_storage_key(circuit.prefix, zkey_index),
        )

    def genesis_location(self, circuit: Circuit) -> ArtifactLocation:
        return self.zkey_location(circuit, GENESIS_ZKEY_INDEX)

    def predecessor_location(self, circuit: Circuit, index: int) -> ArtifactLocation:
        """Artifact the contribution at zero-based `index` transforms.

        Contribution i is stored as zkey i + 1, so its predecessor is
        zkey i (the genesis zkey for the first contribution).
        """
        if index == 0:
            return self.genesis_location(circuit)
        records = [c for c in self.contributions(circuit.circuit_id) if c.index == index - 1]
        if records:
            return ArtifactLocation.parse(records[0].artifact_uri)
        return self.zkey_location(circuit, index)

    def target_location(self, circuit: Circuit, index: int) -> ArtifactLocation:
        return self.zkey_location(circuit, index + 1)
