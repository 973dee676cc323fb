"""
Analytics API Routes

Flask Blueprint over the anomaly monitor:
- GET /api/analytics/summary - Alert and risk summary for the caller
- GET /api/analytics/alerts - The caller's alerts (?unread=true for unread only)
- POST /api/analytics/monitor - Start monitoring a category and analyze it now
- POST /api/analytics/alerts/<id>/read - Mark an alert read
- POST /api/analytics/alerts/<id>/resolve - Resolve an alert

All endpoints require JWT authentication.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required

from ..database import DataCategory
from .common import current_identity, get_json_body, get_services

logger = logging.getLogger(__name__)

monitoring_bp = Blueprint("analytics", __name__)


@monitoring_bp.route("/summary", methods=["GET"])
@jwt_required()
def summary():
    return jsonify(get_services().monitor.get_user_summary(current_identity())), 200


@monitoring_bp.route("/alerts", methods=["GET"])
@jwt_required()
def alerts():
    unread_only = request.args.get("unread", "false").lower() == "true"
    found = get_services().monitor.alerts_for(current_identity(), unread_only=unread_only)
    return jsonify({"alerts": found, "count": len(found)}), 200


@monitoring_bp.route("/monitor", methods=["POST"])
@jwt_required()
def monitor():
    """
    Request Body:
        {"category": "medical"} (optional, default medical)
    """
    data = get_json_body(allow_empty=True)
    analysis = get_services().monitor.monitor_user(
        current_identity(),
        data.get("category") or DataCategory.MEDICAL,
    )
    return jsonify({"success": True, "analysis": analysis.to_dict()}), 200


@monitoring_bp.route("/alerts/<alert_id>/read", methods=["POST"])
@jwt_required()
def mark_read(alert_id: str):
    alert = get_services().monitor.mark_alert_read(alert_id, current_identity())
    return jsonify({"success": True, "alert": alert}), 200


@monitoring_bp.route("/alerts/<alert_id>/resolve", methods=["POST"])
@jwt_required()
def resolve(alert_id: str):
    alert = get_services().monitor.resolve_alert(alert_id, current_identity())
    return jsonify({"success": True, "alert": alert}), 200
