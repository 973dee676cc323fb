"""
HTTP adapter for SecNet.

``create_app`` builds a Flask application over a SecNetServices instance
with Flask-JWT-Extended authentication (JWT identity = wallet address).

Usage:
    from secnet.api import create_app
    from secnet.services import build_services

    app = create_app(build_services())
    app.run()
"""

import logging
from typing import Optional

from flask import Flask, jsonify
from flask_jwt_extended import JWTManager

from ..config import Settings
from ..services import SecNetServices, build_services
from .common import register_error_handlers
from .consent_routes import consent_bp
from .data_routes import data_bp
from .monitoring_routes import monitoring_bp
from .security_routes import security_bp
from .verification_middleware import approved_consent_required, multi_factor_required

logger = logging.getLogger(__name__)


def create_app(services: Optional[SecNetServices] = None, settings: Optional[Settings] = None) -> Flask:
    """
    Create the Flask application.

    Args:
        services: SecNetServices (built from settings when omitted)
        settings: Settings (taken from services, or the environment, when omitted)
    """
    if services is None:
        services = build_services(settings)
    settings = settings or services.settings

    app = Flask(__name__)
    app.config["JWT_SECRET_KEY"] = settings.jwt_secret_key
    app.config["SECNET_SERVICES"] = services
    JWTManager(app)

    app.register_blueprint(consent_bp, url_prefix="/api/consent")
    app.register_blueprint(security_bp, url_prefix="/api/security")
    app.register_blueprint(data_bp, url_prefix="/api/data")
    app.register_blueprint(monitoring_bp, url_prefix="/api/analytics")
    register_error_handlers(app)

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "healthy", "environment": settings.environment}), 200

    logger.info("SecNet API initialized")
    return app


__all__ = [
    "create_app",
    "approved_consent_required",
    "multi_factor_required",
]
