"""Public attestation text for a participant's valid contributions.

Participants publish the attestation so anyone can cross-check the
listed hashes against the ceremony's contribution records.
"""

from __future__ import annotations

from typing import Sequence, Tuple

from ceremony.models.ceremony import Ceremony, Circuit
from ceremony.models.contribution import Contribution
from ceremony.sizing import zkey_filename


def build_attestation(
    ceremony: Ceremony,
    participant_id: str,
    contributions: Sequence[Tuple[Circuit, Contribution]],
) -> str:
    """Attestation listing one line per circuit, in sequence order.

    Raises ValueError when there is nothing to attest.
    """
    if not contributions:
        raise ValueError(f"{participant_id} has no valid contributions in {ceremony.ceremony_id}")
    lines = [
        f"I, {participant_id}, contributed to the {ceremony.title} trusted setup ceremony.",
        "",
        "The following are my contribution hashes:",
        "",
    ]
    ordered = sorted(contributions, key=lambda pair: pair[0].sequence_position)
    for circuit, contribution in ordered:
        lines.append(
            f"- Circuit: {circuit.prefix}"
            f" | Contribution index: {contribution.index}"
            f" | File: {zkey_filename(circuit.prefix, contribution.index + 1)}"
        )
        lines.append(f"  Hash: {contribution.content_hash}")
    return "\n".join(lines) + "\n"
