"""Artifact naming and sizing helpers.

zkey files are named `<circuit prefix>_<index>.zkey` with a five-digit,
zero-padded index. Index 00000 is the circuit's genesis artifact; the
contribution accepted at zero-based position i is stored as index i + 1.
"""

from __future__ import annotations

import math
import re

from ceremony.models.ceremony import CircuitMetadata


ZKEY_INDEX_WIDTH = 5
GENESIS_ZKEY_INDEX = 0

# Uncompressed point sizes on bn128, in bytes.
_G1_BYTES = 64
_G2_BYTES = 128
_ZKEY_HEADER_BYTES = 4096


def extract_prefix(text: str) -> str:
    """Storage-safe prefix from a ceremony or circuit title.

    Lower-cased; every run of characters outside [a-z0-9] becomes a
    single dash; leading and trailing dashes are dropped.
    """
    prefix = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    if not prefix:
        raise ValueError(f"Cannot derive a prefix from {text!r}")
    return prefix


def format_zkey_index(index: int) -> str:
    if index < 0:
        raise ValueError("zkey index must be non-negative")
    return str(index).zfill(ZKEY_INDEX_WIDTH)


def zkey_filename(circuit_prefix: str, index: int) -> str:
    return f"{circuit_prefix}_{format_zkey_index(index)}.zkey"


def zkey_storage_key(circuit_prefix: str, index: int) -> str:
    return f"circuits/{circuit_prefix}/contributions/{zkey_filename(circuit_prefix, index)}"


def bucket_name(ceremony_prefix: str, postfix: str) -> str:
    return f"{ceremony_prefix}{postfix}"


def convert_to_gb(amount: float, is_bytes: bool = True) -> float:
    """Bytes (or kilobytes when is_bytes is False) to gigabytes."""
    if amount < 0:
        raise ValueError("amount must be non-negative")
    exponent = 3 if is_bytes else 2
    return amount / (1024 ** exponent)


def zkey_space_requirement_gb(zkey_size_bytes: int) -> float:
    """Disk space a contributor needs: the previous and the new zkey."""
    return convert_to_gb(zkey_size_bytes * 2)


def estimate_zkey_size_bytes(metadata: CircuitMetadata) -> int:
    """Size of a Groth16 zkey for the circuit.

    Uses the recorded size when known. Otherwise estimates from the
    section layout: per-wire A, B1, B2 and C points plus one H point per
    element of the evaluation domain (next power of two above
    constraints + public inputs).
    """
    if metadata.zkey_size_bytes is not None:
        return metadata.zkey_size_bytes
    domain = 1 << max(0, math.ceil(math.log2(max(1, metadata.constraints + metadata.public_inputs + 1))))
    per_wire = _G1_BYTES * 2 + _G2_BYTES
    private = max(0, metadata.wires - metadata.public_inputs - 1)
    return (
        _ZKEY_HEADER_BYTES
        + metadata.wires * per_wire
        + private * _G1_BYTES
        + domain * _G1_BYTES
    )


def part_count(total_size: int, chunk_size: int) -> int:
    if total_size <= 0:
        raise ValueError("total_size must be positive")
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return math.ceil(total_size / chunk_size)
