"""Commitment proofs and the verifier interface."""

from .proof_service import (
    DATA_ACCESS_FRESHNESS,
    GENERAL_FRESHNESS,
    NONCE_LENGTH,
    MerkleTree,
    Proof,
    ProofKind,
    ProofService,
    ProofVerification,
    ProofVerifier,
    freshness_window,
)

__all__ = [
    "DATA_ACCESS_FRESHNESS",
    "GENERAL_FRESHNESS",
    "NONCE_LENGTH",
    "MerkleTree",
    "Proof",
    "ProofKind",
    "ProofService",
    "ProofVerification",
    "ProofVerifier",
    "freshness_window",
]
