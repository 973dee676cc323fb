"""
Runtime configuration for SecNet.

All settings come from environment variables so that secrets are never
hardcoded. ``Settings.from_env()`` is called once at startup by the
composition root; components receive the values they need explicitly.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass
class Settings:
    """
    Process-wide settings.

    Attributes:
        database_url: SQLAlchemy URL for the consent/audit/profile tables
        server_secret: Secret mixed into content key derivation
        signing_secret: HS256 secret for credential and presentation JWTs
        domain: Audience used for verifiable presentations
        external_timeout: Seconds before an external call is treated as transient
        monitor_interval: Seconds between anomaly sweeps
        ipfs_api_url: Kubo HTTP API base URL (in-memory blob store if unset)
        jwt_secret_key: Secret for Flask-JWT-Extended session tokens
    """
    database_url: str = "sqlite:///./secnet.db"
    server_secret: str = "development-server-secret"
    signing_secret: str = "development-signing-secret"
    domain: str = "secnet.app"
    external_timeout: float = 5.0
    monitor_interval: float = 300.0
    ipfs_api_url: Optional[str] = None
    jwt_secret_key: str = "development-jwt-secret"
    environment: str = "development"

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            server_secret=os.getenv("SECNET_SERVER_SECRET", cls.server_secret),
            signing_secret=os.getenv("SECNET_SIGNING_SECRET", cls.signing_secret),
            domain=os.getenv("SECNET_DOMAIN", cls.domain),
            external_timeout=_env_float("SECNET_EXTERNAL_TIMEOUT", cls.external_timeout),
            monitor_interval=_env_float("SECNET_MONITOR_INTERVAL", cls.monitor_interval),
            ipfs_api_url=os.getenv("IPFS_API_URL") or None,
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", cls.jwt_secret_key),
            environment=os.getenv("FLASK_ENV", cls.environment),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Refuse development secrets in production."""
        if self.external_timeout <= 0:
            raise ValueError("SECNET_EXTERNAL_TIMEOUT must be positive")
        if self.monitor_interval <= 0:
            raise ValueError("SECNET_MONITOR_INTERVAL must be positive")

        if self.environment == "production":
            for name, value in (
                ("SECNET_SERVER_SECRET", self.server_secret),
                ("SECNET_SIGNING_SECRET", self.signing_secret),
                ("JWT_SECRET_KEY", self.jwt_secret_key),
            ):
                if value.startswith("development-"):
                    raise ValueError(f"{name} must be set in production")
