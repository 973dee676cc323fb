"""
Verification gates.

A gate checks one factor of a VerificationRequest and returns a
GateOutcome; it never raises. External calls run under call_with_timeout,
so an unreachable collaborator shows up as a failed outcome of kind
Transient, distinct from a verification failure.

Gates:
- IdentityGate: claimed address controls the name, and the name has a profile
- ProofGate: commitment proof verifies and its nonce has not been used
- CredentialGate: presentation verifies against the supplied challenge
- StorageGate: referenced content address exists
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..credentials import CredentialService
from ..errors import ErrorKind, SecNetError, wrap_unexpected
from ..nonces import NonceStore
from ..proofs import Proof, ProofVerifier, freshness_window
from ..storage import ContentStore
from ..timeouts import DEFAULT_TIMEOUT_SECONDS, call_with_timeout
from .identity import IdentityResolver

logger = logging.getLogger(__name__)


@dataclass
class IdentityClaim:
    name: str
    address: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "address": self.address}


@dataclass
class VerificationRequest:
    """
    Inputs for one verification attempt.

    Attributes:
        identity: Claimed (name, address); mandatory for multi-factor
        proof: Commitment proof to check
        proof_context: Verifier inputs (user_id/data_type/access_level for data access)
        presentation: Presentation JWT
        challenge: Challenge the presentation must be bound to
        content_address: Address that must exist in storage
    """
    identity: Optional[IdentityClaim] = None
    proof: Optional[Proof] = None
    proof_context: Dict[str, Any] = field(default_factory=dict)
    presentation: Optional[str] = None
    challenge: Optional[str] = None
    content_address: Optional[str] = None

    @property
    def actor(self) -> Optional[str]:
        return self.identity.address if self.identity else None


@dataclass
class GateOutcome:
    gate: str
    ran: bool
    passed: bool
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gate": self.gate,
            "ran": self.ran,
            "passed": self.passed,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
        }


class Gate(ABC):
    """One independent check. Subclasses implement ``applies`` and ``check``."""

    name: str = "gate"

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.timeout = timeout

    def applies(self, request: VerificationRequest) -> bool:
        """Whether the request carries the input this gate checks."""
        return True

    @abstractmethod
    def check(self, request: VerificationRequest) -> GateOutcome:
        pass

    def passed(self, **data) -> GateOutcome:
        return GateOutcome(gate=self.name, ran=True, passed=True, data=data)

    def failed(self, kind: ErrorKind, message: str) -> GateOutcome:
        return GateOutcome(gate=self.name, ran=True, passed=False, kind=kind, message=message)

    def skipped(self) -> GateOutcome:
        return GateOutcome(gate=self.name, ran=False, passed=False)

    def call(self, func, *args, **kwargs):
        operation = f"{self.name}.{getattr(func, '__name__', 'call')}"
        return call_with_timeout(func, *args, timeout=self.timeout, operation=operation, **kwargs)

    def run(self, request: VerificationRequest) -> GateOutcome:
        try:
            return self.check(request)
        except SecNetError as e:
            return self.failed(e.kind, e.message)
        except Exception as e:
            error = wrap_unexpected(e, self.name)
            logger.exception(f"Gate {self.name} failed unexpectedly")
            return self.failed(error.kind, error.message)


class IdentityGate(Gate):
    name = "identity"

    def __init__(self, resolver: IdentityResolver, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        super().__init__(timeout)
        self.resolver = resolver

    def applies(self, request: VerificationRequest) -> bool:
        return request.identity is not None

    def check(self, request: VerificationRequest) -> GateOutcome:
        claim = request.identity
        if not claim.name or not claim.address:
            return self.failed(ErrorKind.VALIDATION, "Identity name and address are required")

        owner = self.call(self.resolver.resolve_owner, claim.name)
        if owner is None or owner.strip().lower() != claim.address.strip().lower():
            return self.failed(ErrorKind.IDENTITY_NOT_OWNED, f"{claim.address} does not control {claim.name}")

        profile = self.call(self.resolver.lookup_profile, claim.name)
        if profile is None:
            return self.failed(ErrorKind.PROFILE_NOT_FOUND, f"No profile found for {claim.name}")

        return self.passed(verified_identity={
            "type": "ens",
            "name": claim.name,
            "address": claim.address.strip().lower(),
            "profile": profile.to_dict(),
        })


class ProofGate(Gate):
    name = "proof"

    def __init__(self, verifier: ProofVerifier, nonce_store: NonceStore, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        super().__init__(timeout)
        self.verifier = verifier
        self.nonce_store = nonce_store

    def applies(self, request: VerificationRequest) -> bool:
        return request.proof is not None

    def check(self, request: VerificationRequest) -> GateOutcome:
        proof = request.proof
        verification = self.call(self.verifier.verify, proof, request.proof_context)
        if not verification.is_valid:
            return self.failed(ErrorKind.PROOF_INVALID, verification.reason or "Proof verification failed")

        window = freshness_window(proof.kind).total_seconds()
        if not self.call(self.nonce_store.consume, proof.nonce, window):
            logger.warning(f"Replayed proof rejected: {proof.proof_id}")
            return self.failed(ErrorKind.PROOF_INVALID, "Proof has already been used")

        return self.passed(proof_verification=verification.to_dict())


class CredentialGate(Gate):
    name = "credential"

    def __init__(self, credentials: CredentialService, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        super().__init__(timeout)
        self.credentials = credentials

    def applies(self, request: VerificationRequest) -> bool:
        return bool(request.presentation)

    def check(self, request: VerificationRequest) -> GateOutcome:
        if not request.challenge:
            return self.failed(ErrorKind.CREDENTIAL_INVALID, "A challenge is required to verify a presentation")

        result = self.call(self.credentials.verify_presentation, request.presentation, request.challenge)
        if not result.is_valid:
            return self.failed(ErrorKind.CREDENTIAL_INVALID, result.error or "Presentation verification failed")

        return self.passed(presentation={
            "holder": result.holder,
            "credentials": [c.credential.get("id") for c in result.credentials if c.credential],
        })


class StorageGate(Gate):
    name = "storage"

    def __init__(self, content_store: ContentStore, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        super().__init__(timeout)
        self.content_store = content_store

    def applies(self, request: VerificationRequest) -> bool:
        return bool(request.content_address)

    def check(self, request: VerificationRequest) -> GateOutcome:
        if not self.content_store.exists(request.content_address):
            return self.failed(ErrorKind.CONTENT_NOT_FOUND, f"Content {request.content_address} not found")
        return self.passed(content_address=request.content_address)
