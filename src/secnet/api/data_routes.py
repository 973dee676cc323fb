"""
Data API Routes

Flask Blueprint over the encrypted content store:
- POST /api/data/store - Encrypt and store a payload owned by the caller
- POST /api/data/retrieve - Decrypt content (owner, or holder of an approved consent)
- POST /api/data/pin - Keep content from garbage collection
- POST /api/data/unpin - Release a pin

All endpoints require JWT authentication.
"""

from flask import Blueprint, g, jsonify
from flask_jwt_extended import jwt_required

from ..storage import parse_metadata
from .common import current_identity, get_json_body, get_services, require_fields
from .verification_middleware import approved_consent_required


data_bp = Blueprint("data", __name__)


@data_bp.route("/store", methods=["POST"])
@jwt_required()
def store():
    """
    Request Body:
        {
            "payload": <any JSON value>,
            "category": "medical | financial | ...",
            "metadata": {"kind": "data", ...} (optional),
            "pin": true (optional)
        }

    Response (201):
        {"success": true, "data_address": "...", "metadata_address": "...", "timestamp": "ISO8601"}
    """
    data = get_json_body()
    require_fields(data, "payload", "category")
    metadata = parse_metadata(data["metadata"]) if data.get("metadata") else None

    receipt = get_services().store_encrypted(
        data["payload"],
        owner=current_identity(),
        category=data["category"],
        metadata=metadata,
        pin=bool(data.get("pin", True)),
    )
    return jsonify({"success": True, **receipt.to_dict()}), 201


@data_bp.route("/retrieve", methods=["POST"])
@jwt_required()
@approved_consent_required()
def retrieve():
    """
    Request Body:
        {"data_address": "...", "metadata_address": "...", "owner": "0x...", "category": "medical"}

    Errors:
        403 - Caller is not the owner and holds no approved consent
        404 - Content not found
        422 - Content cannot be decrypted with the owner's key
    """
    data = get_json_body()
    require_fields(data, "data_address", "metadata_address")

    content = get_services().retrieve_encrypted(
        data["data_address"],
        data["metadata_address"],
        owner=g.consent_owner,
        category=g.consent_category,
        actor=current_identity(),
    )
    return jsonify({"success": True, **content.to_dict()}), 200


def _set_pinned(pinned: bool):
    data = get_json_body()
    require_fields(data, "data_address", "metadata_address", "category")
    get_services().set_pinned(
        data["data_address"],
        data["metadata_address"],
        data["category"],
        actor=current_identity(),
        pinned=pinned,
    )
    return jsonify({
        "success": True,
        "data_address": data["data_address"],
        "metadata_address": data["metadata_address"],
        "pinned": pinned,
    }), 200


@data_bp.route("/pin", methods=["POST"])
@jwt_required()
def pin():
    """
    Request Body:
        {"data_address": "...", "metadata_address": "...", "category": "medical"}

    Errors:
        403 - Caller does not own the content
        404 - Content not found
    """
    return _set_pinned(True)


@data_bp.route("/unpin", methods=["POST"])
@jwt_required()
def unpin():
    """Same body and errors as /pin. Unpinned content may be garbage collected."""
    return _set_pinned(False)
