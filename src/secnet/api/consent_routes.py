"""
Consent API Routes

Flask Blueprint over the consent ledger:
- POST /api/consent/request - Create a consent request (caller is the requester)
- GET /api/consent/pending - Pending requests addressed to the caller
- GET /api/consent/all - Paginated requests by role and status
- GET /api/consent/<id> - One request (parties only)
- POST /api/consent/<id>/approve - Approve (owner only)
- POST /api/consent/<id>/deny - Deny (owner only)
- POST /api/consent/<id>/revoke - Revoke an approval (owner only)

All endpoints require JWT authentication; the JWT identity is the
caller's wallet address.
"""

import logging
from typing import Optional

from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required

from ..consent import Party
from .common import (
    current_identity,
    get_json_body,
    get_services,
    parse_int_arg,
    parse_timestamp,
    require_fields,
)

logger = logging.getLogger(__name__)

consent_bp = Blueprint("consent", __name__)


@consent_bp.route("/request", methods=["POST"])
@jwt_required()
def create_request():
    """
    Create a consent request.

    Request Body:
        {
            "owner": "0x..." | {"address": "0x...", "ens_name": "bob.eth"},
            "category": "medical | financial | identity | ...",
            "purpose": "Why the data is needed (max 500 chars)",
            "scope": {"fields": [...], "time_range": {...}, "access_level": "read"} (optional),
            "expires_at": "ISO8601",
            "requester_ens_name": "alice.eth" (optional)
        }

    Response (201):
        {"success": true, "request": {...}}
    """
    data = get_json_body()
    require_fields(data, "owner", "category", "purpose", "expires_at")

    requester = Party.of(
        current_identity(),
        ens_name=data.get("requester_ens_name"),
        display_name=data.get("requester_display_name"),
    )
    consent = get_services().create_consent_request(
        requester=requester,
        owner=data["owner"],
        category=data["category"],
        purpose=data["purpose"],
        scope=data.get("scope"),
        expires_at=parse_timestamp(data["expires_at"], "expires_at"),
    )
    return jsonify({"success": True, "request": consent.to_dict()}), 201


@consent_bp.route("/pending", methods=["GET"])
@jwt_required()
def pending_requests():
    requests = get_services().ledger.pending_for_owner(current_identity())
    return jsonify({"requests": [r.to_dict() for r in requests], "count": len(requests)}), 200


@consent_bp.route("/all", methods=["GET"])
@jwt_required()
def all_requests():
    """
    Query Parameters:
        role: owner | requester (default owner)
        status: pending | approved | denied | expired | revoked (optional)
        page: default 1
        limit: default 10, max 100
    """
    result = get_services().ledger.list_for(
        current_identity(),
        role=request.args.get("role", "owner"),
        status=request.args.get("status"),
        page=parse_int_arg("page", 1),
        limit=parse_int_arg("limit", 10),
    )
    return jsonify({
        "requests": [r.to_dict() for r in result["requests"]],
        "pagination": result["pagination"],
    }), 200


@consent_bp.route("/<request_id>", methods=["GET"])
@jwt_required()
def get_request(request_id: str):
    consent = get_services().ledger.get(request_id, viewer=current_identity())
    return jsonify({"request": consent.to_dict()}), 200


def _reason() -> Optional[str]:
    data = request.get_json(silent=True) or {}
    return data.get("reason") if isinstance(data, dict) else None


@consent_bp.route("/<request_id>/approve", methods=["POST"])
@jwt_required()
def approve_request(request_id: str):
    """
    Approve a pending request.

    Errors:
        403 - Caller is not the data owner
        404 - Unknown request
        409 - Request is not pending (or expired on this call)
        503 - Settlement unavailable; nothing was changed, retry later
    """
    consent = get_services().approve_consent_request(request_id, current_identity(), _reason())
    return jsonify({"success": True, "request": consent.to_dict()}), 200


@consent_bp.route("/<request_id>/deny", methods=["POST"])
@jwt_required()
def deny_request(request_id: str):
    consent = get_services().deny_consent_request(request_id, current_identity(), _reason())
    return jsonify({"success": True, "request": consent.to_dict()}), 200


@consent_bp.route("/<request_id>/revoke", methods=["POST"])
@jwt_required()
def revoke_request(request_id: str):
    consent = get_services().revoke_consent_request(request_id, current_identity(), _reason())
    return jsonify({"success": True, "request": consent.to_dict()}), 200
