"""
Proof Service Tests

Tests for commitment proofs:
- Predicate evaluation for age, location and credential-set proofs
- Freshness windows and nonce length
- Data-access proofs bound to (user_id, data_type, access_level)
- Merkle commitments

Run with:
    poetry run pytest tests/test_proof_service.py -v
"""

import hashlib
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from secnet.errors import ValidationError
from secnet.proofs import NONCE_LENGTH, Proof, ProofKind, ProofService

START = datetime(2030, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def sha(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def proofs(clock):
    return ProofService(clock=clock)


class TestGeneration:

    def test_age_proof_valid_when_old_enough(self, proofs, clock):
        proof = proofs.generate_age_proof(actual_age=30, minimum_age=18)

        assert proof.kind is ProofKind.AGE
        assert proof.is_valid is True
        assert proof.created_at == clock()
        assert proof.public_hashes["age_hash"] == sha("30")
        assert len(proof.nonce) == NONCE_LENGTH == 32

    def test_age_proof_invalid_when_too_young(self, proofs):
        proof = proofs.generate_age_proof(actual_age=16, minimum_age=18)
        assert proof.is_valid is False
        assert proofs.verify_proof(proof).is_valid is False

    def test_age_must_be_non_negative_integer(self, proofs):
        with pytest.raises(ValidationError):
            proofs.generate_age_proof(actual_age=-1, minimum_age=18)
        with pytest.raises(ValidationError):
            proofs.generate_age_proof(actual_age="30", minimum_age=18)

    def test_location_proof_matches_country_and_state(self, proofs):
        regions = [{"country": "US", "state": "CA"}, {"country": "US", "state": "NY"}]

        assert proofs.generate_location_proof({"country": "US", "state": "NY"}, regions).is_valid is True
        assert proofs.generate_location_proof({"country": "US", "state": "TX"}, regions).is_valid is False

    def test_credential_proof_requires_valid_status(self, proofs):
        required = [{"type": "MedicalLicense", "issuer": "did:ethr:0xboard"}]
        held = [{"type": "MedicalLicense", "issuer": "did:ethr:0xboard", "status": "valid"}]
        suspended = [{"type": "MedicalLicense", "issuer": "did:ethr:0xboard", "status": "suspended"}]

        assert proofs.generate_credential_proof(held, required).is_valid is True
        assert proofs.generate_credential_proof(suspended, required).is_valid is False

    def test_nonces_are_unique(self, proofs):
        nonces = {proofs.generate_age_proof(30, 18).nonce for _ in range(20)}
        assert len(nonces) == 20


class TestFreshness:

    def test_general_proof_expires_after_24_hours(self, proofs, clock):
        proof = proofs.generate_age_proof(30, 18)

        clock.advance(hours=23, minutes=59)
        assert proofs.verify_proof(proof).is_valid is True

        clock.advance(minutes=1)
        result = proofs.verify_proof(proof)
        assert result.is_valid is False
        assert result.reason == "Proof has expired"

    def test_future_dated_proof_rejected(self, proofs, clock):
        proof = proofs.generate_age_proof(30, 18)

        slightly_ahead = replace(proof, created_at=clock() + timedelta(minutes=4))
        assert proofs.verify_proof(slightly_ahead).is_valid is True

        far_ahead = replace(proof, created_at=clock() + timedelta(days=365))
        result = proofs.verify_proof(far_ahead)
        assert result.is_valid is False
        assert result.reason == "Proof is dated in the future"

        data_proof = proofs.generate_data_access_proof("0xabc", "medical", "read")
        forged = replace(data_proof, created_at=clock() + timedelta(hours=2))
        assert proofs.verify_data_access_proof(forged, "0xabc", "medical", "read").access_granted is False

    def test_wrong_nonce_length_rejected(self, proofs):
        proof = replace(proofs.generate_age_proof(30, 18), nonce="abc")
        result = proofs.verify_proof(proof)
        assert result.is_valid is False
        assert "nonce" in result.reason


class TestDataAccessProof:

    def test_commitment_binds_request(self, proofs):
        proof = proofs.generate_data_access_proof("0xabc", "medical", "read")
        assert proof.commitment == sha("0xabc-medical-read")

    def test_matching_request_grants_access(self, proofs):
        proof = proofs.generate_data_access_proof("0xabc", "medical", "read")
        result = proofs.verify_data_access_proof(proof, "0xabc", "medical", "read")

        assert result.access_granted is True
        assert result.to_dict()["accessGranted"] is True

    def test_different_access_level_denied(self, proofs):
        proof = proofs.generate_data_access_proof("0xabc", "medical", "read")
        result = proofs.verify_data_access_proof(proof, "0xabc", "medical", "write")
        assert result.access_granted is False

    def test_data_access_window_is_one_hour(self, proofs, clock):
        proof = proofs.generate_data_access_proof("0xabc", "medical", "read")
        clock.advance(hours=1)
        assert proofs.verify_data_access_proof(proof, "0xabc", "medical", "read").access_granted is False

    def test_verify_requires_context_for_data_access(self, proofs):
        proof = proofs.generate_data_access_proof("0xabc", "medical", "read")

        missing = proofs.verify(proof, {"user_id": "0xabc"})
        assert missing.is_valid is False
        assert "data_type" in missing.reason

        full = proofs.verify(proof, {"user_id": "0xabc", "data_type": "medical", "access_level": "read"})
        assert full.is_valid is True


class TestSerialization:

    def test_from_dict_restores_proof(self, proofs):
        proof = proofs.generate_location_proof({"country": "US", "state": "CA"}, [{"country": "US", "state": "CA"}])
        assert Proof.from_dict(proof.to_dict()) == proof

    def test_unknown_kind_rejected(self, proofs):
        data = proofs.generate_age_proof(30, 18).to_dict()
        data["kind"] = "face"
        with pytest.raises(ValidationError):
            Proof.from_dict(data)


class TestMerkleTree:

    def test_three_items_duplicate_last_node(self, proofs):
        tree = proofs.generate_merkle_tree(["a", "b", "c"])

        leaves = [sha('"a"'), sha('"b"'), sha('"c"')]
        left = sha(leaves[0] + leaves[1])
        right = sha(leaves[2] + leaves[2])

        assert tree.leaves == leaves
        assert tree.root == sha(left + right)
        assert tree.height == 2

    def test_single_item_root_is_leaf(self, proofs):
        tree = proofs.generate_merkle_tree([{"id": 1}])
        assert tree.root == tree.leaves[0] == sha('{"id":1}')
        assert tree.height == 0

    def test_empty_list_rejected(self, proofs):
        with pytest.raises(ValidationError):
            proofs.generate_merkle_tree([])
