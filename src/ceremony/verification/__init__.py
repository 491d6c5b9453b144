"""Verification gate — integrity re-hash and external verifier."""

from ceremony.verification.gate import VerificationGate, VerificationResult, compute_artifact_hash

__all__ = ["VerificationGate", "VerificationResult", "compute_artifact_hash"]
