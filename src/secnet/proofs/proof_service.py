"""
Proof Service

Simplified commitment proofs over hashed inputs:
- Age: actual_age >= minimum_age
- Location: user location matches an allowed (country, state) region
- Credential set: every required credential is held with status "valid"
- Data access: commitment to (user_id, data_type, access_level)
- Merkle commitment over a batch of items

Limitations:
    Validity is computed in plaintext when the proof is generated and stored
    as a flag; the hashes do not cryptographically bind to it. This is a
    commitment/attestation scheme, not a zero-knowledge circuit. Callers use
    the ProofVerifier interface so a circuit-backed verifier can replace
    ProofService without changes on their side.

Freshness:
    General proofs are accepted for 24 hours, data-access proofs for 1 hour.
    A nonce must be exactly 32 hex characters (16 random bytes).
"""

import logging
import math
import secrets
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..errors import ValidationError
from ..hashing import canonical_json, hash_json, sha256_hex

logger = logging.getLogger(__name__)

NONCE_BYTES = 16
NONCE_LENGTH = NONCE_BYTES * 2
GENERAL_FRESHNESS = timedelta(hours=24)
DATA_ACCESS_FRESHNESS = timedelta(hours=1)
MAX_CLOCK_SKEW = timedelta(minutes=5)


class ProofKind(str, Enum):
    AGE = "age"
    LOCATION = "location"
    CREDENTIAL = "credential"
    DATA_ACCESS = "data_access"


def freshness_window(kind: ProofKind) -> timedelta:
    return DATA_ACCESS_FRESHNESS if kind is ProofKind.DATA_ACCESS else GENERAL_FRESHNESS


@dataclass(frozen=True)
class Proof:
    """
    A commitment proof.

    Attributes:
        proof_id: Unique identifier
        kind: What the proof attests
        commitment: Hash over the committed inputs
        public_hashes: The individually hashed inputs
        is_valid: Validity computed at generation time
        created_at: Generation time (UTC)
        nonce: 32 hex characters
    """
    proof_id: str
    kind: ProofKind
    commitment: str
    public_hashes: Dict[str, Any]
    is_valid: bool
    created_at: datetime
    nonce: str

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof_id": self.proof_id,
            "kind": self.kind.value,
            "commitment": self.commitment,
            "public_hashes": self.public_hashes,
            "is_valid": self.is_valid,
            "created_at": self.created_at.isoformat(),
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proof":
        """
        Parse a serialized proof.

        Raises:
            ValidationError: missing field, unknown kind or bad timestamp
        """
        if not isinstance(data, dict):
            raise ValidationError("Proof must be an object")
        try:
            kind = ProofKind(data["kind"])
        except KeyError:
            raise ValidationError("Proof kind is required", details={"field": "kind"})
        except ValueError:
            raise ValidationError(
                f"Unknown proof kind '{data['kind']}'",
                details={"allowed": ", ".join(k.value for k in ProofKind)},
            )

        missing = [k for k in ("proof_id", "commitment", "is_valid", "created_at", "nonce") if k not in data]
        if missing:
            raise ValidationError(f"Proof is missing fields: {', '.join(missing)}")

        created_at = data["created_at"]
        if not isinstance(created_at, datetime):
            try:
                created_at = datetime.fromisoformat(str(created_at))
            except ValueError:
                raise ValidationError("Proof created_at is not a timestamp")
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        return cls(
            proof_id=str(data["proof_id"]),
            kind=kind,
            commitment=str(data["commitment"]),
            public_hashes=dict(data.get("public_hashes") or {}),
            is_valid=bool(data["is_valid"]),
            created_at=created_at,
            nonce=str(data["nonce"]),
        )


@dataclass
class ProofVerification:
    """Result of checking a proof."""
    is_valid: bool
    proof_id: str
    kind: ProofKind
    reason: Optional[str] = None
    access_granted: Optional[bool] = None

    def to_dict(self) -> dict:
        result = {
            "is_valid": self.is_valid,
            "proof_id": self.proof_id,
            "kind": self.kind.value,
            "reason": self.reason,
        }
        if self.access_granted is not None:
            result["accessGranted"] = self.access_granted
        return result


@dataclass
class MerkleTree:
    root: str
    leaves: List[str] = field(default_factory=list)
    height: int = 0

    def to_dict(self) -> dict:
        return {"root": self.root, "leaves": self.leaves, "tree_height": self.height}


class ProofVerifier(ABC):
    """Verifier interface consumed by the proof gate."""

    @abstractmethod
    def verify(self, proof: Proof, context: Optional[Dict[str, Any]] = None) -> ProofVerification:
        """
        Check a proof.

        Args:
            proof: The proof to check
            context: Verifier inputs; data-access proofs need user_id,
                data_type and access_level
        """


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProofService(ProofVerifier):
    """
    Generates and verifies commitment proofs.

    Usage:
        proofs = ProofService()
        proof = proofs.generate_age_proof(actual_age=30, minimum_age=18)
        assert proofs.verify_proof(proof).is_valid
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or _utcnow

    def _new_proof(self, kind: ProofKind, commitment: str, public_hashes: Dict[str, Any], is_valid: bool) -> Proof:
        proof = Proof(
            proof_id=str(uuid.uuid4()),
            kind=kind,
            commitment=commitment,
            public_hashes=public_hashes,
            is_valid=is_valid,
            created_at=self.clock(),
            nonce=secrets.token_hex(NONCE_BYTES),
        )
        logger.debug(f"Generated {kind.value} proof {proof.proof_id} (valid={is_valid})")
        return proof

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_age_proof(self, actual_age: int, minimum_age: int) -> Proof:
        for name, value in (("actual_age", actual_age), ("minimum_age", minimum_age)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer", details={"field": name})

        public_hashes = {
            "age_hash": sha256_hex(str(actual_age)),
            "minimum_age_hash": sha256_hex(str(minimum_age)),
        }
        return self._new_proof(ProofKind.AGE, hash_json(public_hashes), public_hashes, actual_age >= minimum_age)

    def generate_location_proof(self, user_location: Dict[str, Any], allowed_regions: List[Dict[str, Any]]) -> Proof:
        if not isinstance(user_location, dict):
            raise ValidationError("user_location must be an object", details={"field": "user_location"})
        if not isinstance(allowed_regions, list) or not all(isinstance(r, dict) for r in allowed_regions):
            raise ValidationError("allowed_regions must be a list of objects", details={"field": "allowed_regions"})

        in_region = any(
            user_location.get("country") == region.get("country")
            and user_location.get("state") == region.get("state")
            for region in allowed_regions
        )
        public_hashes = {
            "location_hash": hash_json(user_location),
            "regions_hash": hash_json(allowed_regions),
        }
        return self._new_proof(ProofKind.LOCATION, hash_json(public_hashes), public_hashes, in_region)

    def generate_credential_proof(
        self,
        credentials: List[Dict[str, Any]],
        required_credentials: List[Dict[str, Any]],
    ) -> Proof:
        for name, value in (("credentials", credentials), ("required_credentials", required_credentials)):
            if not isinstance(value, list) or not all(isinstance(c, dict) for c in value):
                raise ValidationError(f"{name} must be a list of objects", details={"field": name})

        has_all = all(
            any(
                held.get("type") == required.get("type")
                and held.get("issuer") == required.get("issuer")
                and held.get("status") == "valid"
                for held in credentials
            )
            for required in required_credentials
        )
        public_hashes = {
            "credential_hashes": [hash_json(c) for c in credentials],
            "required_hashes": [hash_json(c) for c in required_credentials],
        }
        return self._new_proof(ProofKind.CREDENTIAL, hash_json(public_hashes), public_hashes, has_all)

    @staticmethod
    def data_access_hash(user_id: str, data_type: str, access_level: str) -> str:
        return sha256_hex(f"{user_id}-{data_type}-{access_level}")

    def generate_data_access_proof(self, user_id: str, data_type: str, access_level: str) -> Proof:
        for name, value in (("user_id", user_id), ("data_type", data_type), ("access_level", access_level)):
            if not isinstance(value, str) or not value:
                raise ValidationError(f"{name} is required", details={"field": name})

        public_hashes = {
            "user_id": sha256_hex(user_id),
            "data_type": sha256_hex(data_type),
            "access_level": sha256_hex(access_level),
        }
        return self._new_proof(
            ProofKind.DATA_ACCESS,
            self.data_access_hash(user_id, data_type, access_level),
            public_hashes,
            True,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _freshness_failure(self, proof: Proof, window: timedelta) -> Optional[str]:
        age = proof.age(self.clock())
        if age < -MAX_CLOCK_SKEW:
            return "Proof is dated in the future"
        if age >= window:
            return "Proof has expired"
        if len(proof.nonce) != NONCE_LENGTH:
            return "Proof nonce has the wrong length"
        return None

    def verify_proof(self, proof: Proof, verification_data: Any = None) -> ProofVerification:
        """
        Check a general proof: validity flag set, younger than 24 hours,
        nonce of the fixed length.
        """
        reason = None
        if not proof.is_valid:
            reason = "Proof attests an unsatisfied predicate"
        else:
            reason = self._freshness_failure(proof, GENERAL_FRESHNESS)

        if verification_data is not None:
            logger.debug(f"Proof {proof.proof_id} verified against data hash {hash_json(verification_data)[:12]}")

        return ProofVerification(is_valid=reason is None, proof_id=proof.proof_id, kind=proof.kind, reason=reason)

    def verify_data_access_proof(self, proof: Proof, user_id: str, data_type: str, access_level: str) -> ProofVerification:
        """
        Grant access iff the commitment equals hash(user_id, data_type,
        access_level), the proof is younger than 1 hour and the nonce has the
        fixed length.
        """
        reason = None
        if proof.commitment != self.data_access_hash(user_id, data_type, access_level):
            reason = "Proof does not match the requested access"
        else:
            reason = self._freshness_failure(proof, DATA_ACCESS_FRESHNESS)

        granted = reason is None
        return ProofVerification(
            is_valid=granted,
            proof_id=proof.proof_id,
            kind=proof.kind,
            reason=reason,
            access_granted=granted,
        )

    def verify(self, proof: Proof, context: Optional[Dict[str, Any]] = None) -> ProofVerification:
        context = context or {}
        if proof.kind is ProofKind.DATA_ACCESS:
            missing = [k for k in ("user_id", "data_type", "access_level") if not context.get(k)]
            if missing:
                return ProofVerification(
                    is_valid=False,
                    proof_id=proof.proof_id,
                    kind=proof.kind,
                    reason=f"Missing verification inputs: {', '.join(missing)}",
                    access_granted=False,
                )
            return self.verify_data_access_proof(
                proof, context["user_id"], context["data_type"], context["access_level"]
            )
        return self.verify_proof(proof, context.get("verification_data"))

    # ------------------------------------------------------------------
    # Merkle commitment
    # ------------------------------------------------------------------

    def generate_merkle_tree(self, items: List[Any]) -> MerkleTree:
        """
        Build a Merkle commitment over ``items``.

        Leaves are SHA-256 of each item's canonical JSON; parents are
        SHA-256 of the two child hex digests concatenated; an odd level
        duplicates its last node.

        Raises:
            ValidationError: empty list
        """
        if not isinstance(items, list) or not items:
            raise ValidationError("Merkle tree needs at least one item")

        leaves = [sha256_hex(canonical_json(item)) for item in items]
        level = leaves
        while len(level) > 1:
            level = [
                sha256_hex(level[i] + (level[i + 1] if i + 1 < len(level) else level[i]))
                for i in range(0, len(level), 2)
            ]

        return MerkleTree(root=level[0], leaves=leaves, height=math.ceil(math.log2(len(leaves))))
