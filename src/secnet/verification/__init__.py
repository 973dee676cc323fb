"""
Layered verification for SecNet.

This module provides:
- IdentityResolver interface and a static in-memory resolver
- Gates: identity ownership, commitment proof, credential presentation,
  storage existence
- VerificationPipeline with pre-built single-factor and multi-factor pipelines
"""

from .gates import (
    CredentialGate,
    Gate,
    GateOutcome,
    IdentityClaim,
    IdentityGate,
    ProofGate,
    StorageGate,
    VerificationRequest,
)
from .identity import IdentityProfile, IdentityResolver, StaticIdentityResolver
from .pipeline import (
    VerificationPipeline,
    VerificationResult,
    credential_pipeline,
    identity_pipeline,
    multi_factor_pipeline,
    proof_pipeline,
    storage_pipeline,
)

__all__ = [
    "CredentialGate",
    "Gate",
    "GateOutcome",
    "IdentityClaim",
    "IdentityGate",
    "ProofGate",
    "StorageGate",
    "VerificationRequest",

    "IdentityProfile",
    "IdentityResolver",
    "StaticIdentityResolver",

    "VerificationPipeline",
    "VerificationResult",
    "credential_pipeline",
    "identity_pipeline",
    "multi_factor_pipeline",
    "proof_pipeline",
    "storage_pipeline",
]
