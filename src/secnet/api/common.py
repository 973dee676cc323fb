"""
Shared helpers for the SecNet Flask blueprints.

Routes stay thin: they parse the request, call a SecNetServices operation
and serialize the result. SecNetErrors are turned into JSON responses by
the handlers registered here.
"""

import logging
from datetime import datetime
from typing import Any, Dict

from flask import current_app, jsonify, request
from flask_jwt_extended import get_jwt_identity
from werkzeug.exceptions import HTTPException

from ..errors import ErrorKind, SecNetError, ValidationError

logger = logging.getLogger(__name__)


def get_services():
    """SecNetServices registered on the current app."""
    return current_app.config["SECNET_SERVICES"]


def current_identity() -> str:
    """Wallet address carried by the JWT, normalized."""
    identity = get_jwt_identity()
    if not identity:
        raise ValidationError("JWT token contains no identity")
    return str(identity).strip().lower()


def get_json_body(allow_empty: bool = False) -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None and allow_empty:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body required")
    return data


def require_fields(data: Dict[str, Any], *names: str) -> None:
    missing = [name for name in names if data.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", details={"required": list(names)})


def parse_timestamp(value: Any, field_name: str) -> datetime:
    """Parse an ISO 8601 timestamp (``Z`` suffix accepted)."""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be an ISO 8601 timestamp", details={"field": field_name})
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO 8601 timestamp", details={"field": field_name})


def parse_int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", details={"field": name})


def get_client_ip() -> str:
    """Get client IP address from request."""
    if request.headers.get("X-Forwarded-For"):
        return request.headers.get("X-Forwarded-For").split(",")[0].strip()
    if request.headers.get("X-Real-IP"):
        return request.headers.get("X-Real-IP")
    return request.remote_addr or "unknown"


def register_error_handlers(app) -> None:

    @app.errorhandler(SecNetError)
    def handle_secnet_error(error: SecNetError):
        if error.kind in (ErrorKind.INTERNAL, ErrorKind.TRANSIENT):
            logger.warning(f"{request.method} {request.path} failed: {error}")
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(Exception)
    def handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return jsonify({
            "error": ErrorKind.INTERNAL.value,
            "kind": ErrorKind.INTERNAL.value,
            "message": "Internal server error",
            "details": {},
            "retryable": False,
        }), 500
