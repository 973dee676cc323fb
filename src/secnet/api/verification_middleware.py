"""
Verification Middleware for Flask Routes

Decorators that enforce SecNet checks before a route executes.

Usage:
    from secnet.api.verification_middleware import multi_factor_required, approved_consent_required

    @data_bp.route('/retrieve', methods=['POST'])
    @jwt_required()
    @approved_consent_required()
    def retrieve():
        # Only executes if the caller owns the data or holds an approved consent
        pass

    @security_bp.route('/sensitive', methods=['POST'])
    @jwt_required()
    @multi_factor_required
    def sensitive():
        result = g.verification   # VerificationResult that passed
        pass

Failed checks are audited by the verification pipeline itself; the
decorators only translate the outcome into an HTTP response.
"""

import functools
import logging
from typing import Any, Callable, Dict, Optional

from flask import g, jsonify, request

from ..consent import parse_enum
from ..database import DataCategory
from ..errors import ValidationError
from ..proofs import Proof
from ..verification import IdentityClaim, VerificationRequest
from .common import current_identity, get_client_ip, get_json_body, get_services

logger = logging.getLogger(__name__)


def build_verification_request(data: Optional[Dict[str, Any]]) -> VerificationRequest:
    """
    Build a VerificationRequest from a JSON object.

    Expected shape (every key optional):
        {
            "identity": {"name": "alice.eth", "address": "0x..."},
            "proof": {...Proof.to_dict()...},
            "proof_context": {"user_id": "...", "data_type": "...", "access_level": "..."},
            "presentation": "<jwt>",
            "challenge": "...",
            "content_address": "..."
        }
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ValidationError("verification must be an object")

    identity = None
    if data.get("identity") is not None:
        raw = data["identity"]
        if not isinstance(raw, dict):
            raise ValidationError("identity must be an object with name and address")
        identity = IdentityClaim(name=raw.get("name") or "", address=raw.get("address") or "")

    proof = Proof.from_dict(data["proof"]) if data.get("proof") else None

    proof_context = data.get("proof_context") or {}
    if not isinstance(proof_context, dict):
        raise ValidationError("proof_context must be an object")

    return VerificationRequest(
        identity=identity,
        proof=proof,
        proof_context=proof_context,
        presentation=data.get("presentation"),
        challenge=data.get("challenge"),
        content_address=data.get("content_address"),
    )


def multi_factor_required(f: Callable) -> Callable:
    """
    Run the multi-factor pipeline on ``body["verification"]`` before the route.

    The claimed identity address must be the JWT identity.

    Response on failure (403, or 503 when a collaborator was unavailable):
        {
            "error": "Verification failed",
            "verification": {...VerificationResult.to_dict()...}
        }
    """
    @functools.wraps(f)
    def decorated_function(*args, **kwargs) -> Any:
        caller = current_identity()
        body = get_json_body()
        verification = build_verification_request(body.get("verification"))

        if verification.identity and verification.identity.address.strip().lower() != caller:
            return jsonify({
                "error": "Identity mismatch",
                "message": "The verified identity must belong to the authenticated wallet",
            }), 403

        result = get_services().run_multi_factor_verification(verification)
        if not result.passed:
            logger.warning(
                f"Multi-factor check failed for {caller} from {get_client_ip()} at {request.endpoint}: "
                f"{result.failed_gate}"
            )
            return jsonify({
                "error": "Verification failed",
                "verification": result.to_dict(),
            }), 503 if result.retryable else 403

        g.verification = result
        return f(*args, **kwargs)

    return decorated_function


def approved_consent_required(owner_field: str = "owner", category_field: str = "category"):
    """
    Require the caller to own the data or hold an approved consent for it.

    Owner and category are read from the JSON body.

    Response on failure (403 Forbidden):
        {
            "error": "Consent required",
            "owner": "0x...",
            "category": "medical",
            "message": "..."
        }
    """
    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def decorated_function(*args, **kwargs) -> Any:
            caller = current_identity()
            body = get_json_body()

            owner = body.get(owner_field)
            if not isinstance(owner, str) or not owner.strip():
                raise ValidationError(f"{owner_field} is required", details={"field": owner_field})
            owner = owner.strip().lower()
            category = parse_enum(DataCategory, body.get(category_field), category_field)

            if caller != owner and not get_services().ledger.has_active_consent(caller, owner, category):
                logger.warning(
                    f"Consent check failed: {caller} -> {owner} ({category.value}) from {get_client_ip()}"
                )
                return jsonify({
                    "error": "Consent required",
                    "owner": owner,
                    "category": category.value,
                    "message": f"An approved {category.value} consent from {owner} is required.",
                }), 403

            g.consent_owner = owner
            g.consent_category = category
            return f(*args, **kwargs)

        return decorated_function
    return decorator
