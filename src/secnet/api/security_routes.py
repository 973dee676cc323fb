"""
Security API Routes

Flask Blueprint exposing verification, commitment proofs and
self-sovereign identity:
- POST /api/security/verify - Multi-factor verification
- POST /api/security/zkp/generate-*-proof - Age, location, credential, data access proofs
- POST /api/security/zkp/verify - Check a proof
- POST /api/security/zkp/merkle-tree - Merkle commitment over items
- POST /api/security/ssi/* - DIDs, credentials, presentations, revocation

All endpoints require JWT authentication. DID-controlling operations
require the caller to be the DID's controller; revocation additionally
requires a passing multi-factor check in body["verification"].
"""

import logging

from flask import Blueprint, jsonify
from flask_jwt_extended import jwt_required

from ..errors import Forbidden, NotFound, ValidationError
from ..proofs import Proof
from .common import current_identity, get_json_body, get_services, parse_timestamp, require_fields
from .verification_middleware import build_verification_request, multi_factor_required

logger = logging.getLogger(__name__)

security_bp = Blueprint("security", __name__)


def _require_controller(did: str) -> None:
    resolved = get_services().credentials.resolve_did(did)
    if resolved is None:
        raise NotFound(f"DID {did} not found", details={"did": did})
    if resolved.controller != current_identity():
        raise Forbidden("Caller does not control this DID", details={"did": did})


# ============================================================================
# Multi-factor verification
# ============================================================================

@security_bp.route("/verify", methods=["POST"])
@jwt_required()
def verify():
    """
    Run the multi-factor pipeline.

    Request Body:
        {"identity": {...}, "proof": {...}, "proof_context": {...},
         "presentation": "<jwt>", "challenge": "...", "content_address": "..."}

    Response:
        200 with the VerificationResult when every check that ran passed,
        403 when a check failed, 503 when a collaborator was unavailable.
    """
    verification = build_verification_request(get_json_body())
    if verification.identity and verification.identity.address.strip().lower() != current_identity():
        raise Forbidden("The verified identity must belong to the authenticated wallet")

    result = get_services().run_multi_factor_verification(verification)
    if result.passed:
        return jsonify(result.to_dict()), 200
    return jsonify(result.to_dict()), 503 if result.retryable else 403


# ============================================================================
# Commitment proofs
# ============================================================================

@security_bp.route("/zkp/generate-age-proof", methods=["POST"])
@jwt_required()
def generate_age_proof():
    data = get_json_body()
    require_fields(data, "actual_age", "minimum_age")
    proof = get_services().proofs.generate_age_proof(data["actual_age"], data["minimum_age"])
    return jsonify({"success": True, "proof": proof.to_dict()}), 200


@security_bp.route("/zkp/generate-location-proof", methods=["POST"])
@jwt_required()
def generate_location_proof():
    data = get_json_body()
    require_fields(data, "user_location", "allowed_regions")
    proof = get_services().proofs.generate_location_proof(data["user_location"], data["allowed_regions"])
    return jsonify({"success": True, "proof": proof.to_dict()}), 200


@security_bp.route("/zkp/generate-credential-proof", methods=["POST"])
@jwt_required()
def generate_credential_proof():
    data = get_json_body()
    require_fields(data, "credentials", "required_credentials")
    proof = get_services().proofs.generate_credential_proof(data["credentials"], data["required_credentials"])
    return jsonify({"success": True, "proof": proof.to_dict()}), 200


@security_bp.route("/zkp/generate-data-access-proof", methods=["POST"])
@jwt_required()
def generate_data_access_proof():
    data = get_json_body()
    require_fields(data, "data_type", "access_level")
    proof = get_services().proofs.generate_data_access_proof(
        current_identity(), data["data_type"], data["access_level"]
    )
    return jsonify({"success": True, "proof": proof.to_dict()}), 200


@security_bp.route("/zkp/verify", methods=["POST"])
@jwt_required()
def verify_proof():
    """
    Request Body:
        {"proof": {...}, "context": {...} (data access proofs: user_id, data_type, access_level)}
    """
    data = get_json_body()
    require_fields(data, "proof")
    context = data.get("context") or {}
    if not isinstance(context, dict):
        raise ValidationError("context must be an object", details={"field": "context"})

    result = get_services().proofs.verify(Proof.from_dict(data["proof"]), context)
    return jsonify(result.to_dict()), 200


@security_bp.route("/zkp/merkle-tree", methods=["POST"])
@jwt_required()
def merkle_tree():
    data = get_json_body()
    items = data.get("items")
    if not isinstance(items, list):
        raise ValidationError("items must be a list", details={"field": "items"})
    tree = get_services().proofs.generate_merkle_tree(items)
    return jsonify({"success": True, "merkle_tree": tree.to_dict()}), 200


# ============================================================================
# Self-sovereign identity
# ============================================================================

@security_bp.route("/ssi/create-did", methods=["POST"])
@jwt_required()
def create_did():
    data = get_json_body(allow_empty=True)
    resolved = get_services().credentials.create_did(current_identity(), data.get("document"))
    return jsonify({"success": True, "did": resolved.to_dict()}), 201


@security_bp.route("/ssi/resolve-did", methods=["POST"])
@jwt_required()
def resolve_did():
    data = get_json_body()
    require_fields(data, "did")
    resolved = get_services().credentials.resolve_did(data["did"])
    if resolved is None:
        raise NotFound(f"DID {data['did']} not found", details={"did": data["did"]})
    return jsonify({"success": True, "did": resolved.to_dict()}), 200


@security_bp.route("/ssi/create-credential", methods=["POST"])
@jwt_required()
def create_credential():
    """
    Request Body:
        {
            "issuer_did": "did:ethr:0x...",   (controlled by the caller)
            "subject_did": "did:ethr:0x...",
            "credential_type": "MedicalLicense",
            "claims": {...},
            "expires_at": "ISO8601",
            "schema": {...} (optional),
            "evidence": ... (optional)
        }
    """
    data = get_json_body()
    require_fields(data, "issuer_did", "subject_did", "credential_type", "claims", "expires_at")
    _require_controller(data["issuer_did"])

    issued = get_services().credentials.issue_credential(
        issuer_did=data["issuer_did"],
        subject_did=data["subject_did"],
        credential_type=data["credential_type"],
        claims=data["claims"],
        expires_at=parse_timestamp(data["expires_at"], "expires_at"),
        schema=data.get("schema"),
        evidence=data.get("evidence"),
    )
    return jsonify({"success": True, **issued.to_dict()}), 201


@security_bp.route("/ssi/verify-credential", methods=["POST"])
@jwt_required()
def verify_credential():
    data = get_json_body()
    require_fields(data, "jwt")
    result = get_services().credentials.verify_credential(data["jwt"])
    return jsonify(result.to_dict()), 200


@security_bp.route("/ssi/create-presentation", methods=["POST"])
@jwt_required()
def create_presentation():
    data = get_json_body()
    require_fields(data, "holder_did", "credentials", "challenge")
    _require_controller(data["holder_did"])

    credentials = data["credentials"]
    if not isinstance(credentials, list) or not all(isinstance(c, str) for c in credentials):
        raise ValidationError("credentials must be a list of credential JWTs", details={"field": "credentials"})

    presentation = get_services().credentials.create_presentation(data["holder_did"], credentials, data["challenge"])
    return jsonify({"success": True, "presentation": presentation.credential, "jwt": presentation.jwt}), 201


@security_bp.route("/ssi/verify-presentation", methods=["POST"])
@jwt_required()
def verify_presentation():
    data = get_json_body()
    require_fields(data, "jwt", "challenge")
    result = get_services().credentials.verify_presentation(data["jwt"], data["challenge"])
    return jsonify(result.to_dict()), 200


@security_bp.route("/ssi/revoke-credential", methods=["POST"])
@jwt_required()
@multi_factor_required
def revoke_credential():
    data = get_json_body()
    require_fields(data, "credential_id", "issuer_did")
    _require_controller(data["issuer_did"])

    revocation = get_services().credentials.revoke_credential(
        data["credential_id"], data["issuer_did"], data.get("reason")
    )
    return jsonify({"success": True, "revocation": revocation}), 200
