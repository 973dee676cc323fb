"""
Verification Pipeline Tests

Tests for layered verification:
- Identity ownership and profile checks
- Proof verification with replay protection
- Presentation checks through the credential gate
- Storage existence
- Multi-factor ordering, optional gates and short-circuiting
- One audit row per run
- Collaborator timeouts reported as retryable

Run with:
    poetry run pytest tests/test_verification_pipeline.py -v
"""

import os
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

os.environ["FLASK_ENV"] = "development"
os.environ["DB_ENCRYPTION_KEY"] = "test-encryption-key-32-chars-ok!"

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from secnet.credentials import CredentialService
from secnet.database import AuditAction, Base
from secnet.errors import ErrorKind
from secnet.nonces import MemoryNonceStore
from secnet.proofs import ProofService
from secnet.storage import ContentStore, InMemoryBlobStore
from secnet.verification import (
    CredentialGate,
    IdentityClaim,
    IdentityGate,
    ProofGate,
    StaticIdentityResolver,
    StorageGate,
    VerificationPipeline,
    VerificationRequest,
    identity_pipeline,
    multi_factor_pipeline,
    proof_pipeline,
)

ALICE = "0xa11ce00000000000000000000000000000000001"
MALLORY = "0xbad0000000000000000000000000000000000666"


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def audit():
    return MagicMock()


@pytest.fixture
def resolver():
    resolver = StaticIdentityResolver()
    resolver.register("alice.eth", ALICE, description="Patient")
    resolver.register("noprofile.eth", ALICE, with_profile=False)
    return resolver


@pytest.fixture
def proofs():
    return ProofService()


@pytest.fixture
def nonces():
    return MemoryNonceStore()


@pytest.fixture
def credentials(session_factory):
    return CredentialService(session_factory, "pipeline-signing-secret-0123456789abcdef", domain="secnet.test")


@pytest.fixture
def content():
    return ContentStore(InMemoryBlobStore(), "server-secret")


@pytest.fixture
def gates(resolver, proofs, nonces, credentials, content):
    return {
        "identity": IdentityGate(resolver),
        "proof": ProofGate(proofs, nonces),
        "credential": CredentialGate(credentials),
        "storage": StorageGate(content),
    }


@pytest.fixture
def multi_factor(gates, audit):
    return multi_factor_pipeline(gates["identity"], gates["proof"], gates["credential"], gates["storage"], audit)


@pytest.fixture
def presentation(credentials):
    issuer = credentials.create_did("0x1550000000000000000000000000000000000001").did
    holder = credentials.create_did(ALICE).did
    issued = credentials.issue_credential(
        issuer, holder, "KYCCredential", {"level": "basic"},
        datetime.now(timezone.utc) + timedelta(days=30),
    )
    return credentials.create_presentation(holder, [issued.jwt], "challenge-1").jwt


# ============================================================================
# Identity
# ============================================================================

class TestIdentityGate:

    def test_owner_with_profile_passes(self, gates, audit):
        result = identity_pipeline(gates["identity"], audit).run(
            VerificationRequest(identity=IdentityClaim("alice.eth", ALICE.upper().replace("0X", "0x")))
        )

        assert result.passed is True
        assert result.data["verified_identity"]["profile"]["description"] == "Patient"

    def test_wrong_address(self, gates):
        result = identity_pipeline(gates["identity"]).run(
            VerificationRequest(identity=IdentityClaim("alice.eth", MALLORY))
        )
        assert result.passed is False
        assert result.kind is ErrorKind.IDENTITY_NOT_OWNED
        assert result.failed_gate == "identity"

    def test_missing_profile(self, gates):
        result = identity_pipeline(gates["identity"]).run(
            VerificationRequest(identity=IdentityClaim("noprofile.eth", ALICE))
        )
        assert result.kind is ErrorKind.PROFILE_NOT_FOUND

    def test_required_input_missing(self, gates):
        result = identity_pipeline(gates["identity"]).run(VerificationRequest())
        assert result.passed is False
        assert result.kind is ErrorKind.VALIDATION

    def test_resolver_timeout_is_transient(self, audit):
        class SlowResolver(StaticIdentityResolver):
            def resolve_owner(self, name):
                time.sleep(0.5)
                return super().resolve_owner(name)

        pipeline = identity_pipeline(IdentityGate(SlowResolver(), timeout=0.05), audit)
        result = pipeline.run(VerificationRequest(identity=IdentityClaim("alice.eth", ALICE)))

        assert result.passed is False
        assert result.kind is ErrorKind.TRANSIENT
        assert result.retryable is True
        assert audit.record.call_count == 1

    def test_resolver_crash_is_internal(self):
        resolver = MagicMock()
        resolver.resolve_owner.side_effect = RuntimeError("boom")
        result = identity_pipeline(IdentityGate(resolver)).run(
            VerificationRequest(identity=IdentityClaim("alice.eth", ALICE))
        )
        assert result.kind is ErrorKind.INTERNAL
        assert result.retryable is False


# ============================================================================
# Proofs
# ============================================================================

class TestProofGate:

    def test_valid_proof_passes_once(self, gates, proofs):
        proof = proofs.generate_age_proof(30, 18)
        pipeline = proof_pipeline(gates["proof"])

        assert pipeline.run(VerificationRequest(proof=proof)).passed is True

        replay = pipeline.run(VerificationRequest(proof=proof))
        assert replay.passed is False
        assert replay.kind is ErrorKind.PROOF_INVALID
        assert replay.message == "Proof has already been used"

    def test_unsatisfied_predicate(self, gates, proofs):
        result = proof_pipeline(gates["proof"]).run(VerificationRequest(proof=proofs.generate_age_proof(16, 18)))
        assert result.kind is ErrorKind.PROOF_INVALID

    def test_invalid_proof_does_not_consume_nonce(self, gates, proofs, nonces):
        proof = proofs.generate_data_access_proof(ALICE, "medical", "read")
        proof_pipeline(gates["proof"]).run(VerificationRequest(proof=proof, proof_context={"user_id": ALICE}))
        assert nonces.seen(proof.nonce) is False

    def test_data_access_context(self, gates, proofs):
        proof = proofs.generate_data_access_proof(ALICE, "medical", "read")
        result = proof_pipeline(gates["proof"]).run(VerificationRequest(
            proof=proof,
            proof_context={"user_id": ALICE, "data_type": "medical", "access_level": "read"},
        ))
        assert result.passed is True
        assert result.data["proof_verification"]["accessGranted"] is True


# ============================================================================
# Multi-factor
# ============================================================================

class TestMultiFactor:

    def test_identity_only_skips_optional_gates(self, multi_factor, audit):
        result = multi_factor.run(VerificationRequest(identity=IdentityClaim("alice.eth", ALICE)))

        assert result.passed is True
        assert [(c.gate, c.ran) for c in result.checks] == [
            ("identity", True),
            ("proof", False),
            ("credential", False),
            ("storage", False),
        ]
        audit.record.assert_called_once()
        assert audit.record.call_args.args[0] is AuditAction.VERIFICATION
        assert audit.record.call_args.kwargs["success"] is True

    def test_identity_is_mandatory(self, multi_factor, proofs):
        result = multi_factor.run(VerificationRequest(proof=proofs.generate_age_proof(30, 18)))
        assert result.passed is False
        assert result.failed_gate == "identity"
        assert result.kind is ErrorKind.VALIDATION

    def test_all_factors(self, multi_factor, proofs, presentation, content):
        receipt = content.store_encrypted({"x": 1}, ALICE, "medical")
        result = multi_factor.run(VerificationRequest(
            identity=IdentityClaim("alice.eth", ALICE),
            proof=proofs.generate_age_proof(30, 18),
            presentation=presentation,
            challenge="challenge-1",
            content_address=receipt.data_address,
        ))

        assert result.passed is True
        assert all(c.ran and c.passed for c in result.checks)
        assert result.data["content_address"] == receipt.data_address
        assert len(result.data["presentation"]["credentials"]) == 1

    def test_first_failure_stops_pipeline(self, multi_factor, proofs, presentation, audit):
        result = multi_factor.run(VerificationRequest(
            identity=IdentityClaim("alice.eth", ALICE),
            proof=proofs.generate_age_proof(16, 18),
            presentation=presentation,
            challenge="challenge-1",
        ))

        assert result.failed_gate == "proof"
        assert [c.gate for c in result.checks] == ["identity", "proof"]
        audit.record.assert_called_once()
        assert audit.record.call_args.kwargs["success"] is False

    def test_wrong_challenge(self, multi_factor, presentation):
        result = multi_factor.run(VerificationRequest(
            identity=IdentityClaim("alice.eth", ALICE),
            presentation=presentation,
            challenge="other",
        ))
        assert result.kind is ErrorKind.CREDENTIAL_INVALID
        assert result.message == "Invalid challenge"

    def test_missing_content(self, multi_factor):
        result = multi_factor.run(VerificationRequest(
            identity=IdentityClaim("alice.eth", ALICE),
            content_address="f" * 64,
        ))
        assert result.kind is ErrorKind.CONTENT_NOT_FOUND

    def test_result_serializes(self, multi_factor):
        result = multi_factor.run(VerificationRequest(identity=IdentityClaim("alice.eth", MALLORY)))
        data = result.to_dict()
        assert data["passed"] is False
        assert data["kind"] == "IdentityNotOwned"
        assert data["retryable"] is False

    def test_pipeline_needs_gates(self):
        with pytest.raises(ValueError):
            VerificationPipeline("empty", [])
