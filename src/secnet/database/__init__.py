"""
Database module for the SecNet consent core.

This module provides:
- SQLAlchemy ORM models (ConsentRequestRecord, AuditLog, DIDRecord,
  CredentialRecord, AnomalyProfile, AnomalyAlert, AnomalyInsight)
- AES-GCM column encryption utilities for audit metadata
- Database initialization tools

Usage:
    from secnet.database import (
        ConsentRequestRecord,
        ConsentStatus,
        DataCategory,
        get_db,
        SessionLocal,
    )

    db = next(get_db())
    pending = db.query(ConsentRequestRecord).filter_by(status=ConsentStatus.PENDING).all()
"""

from .models import (
    # Base class
    Base,

    # Models
    ConsentRequestRecord,
    AuditLog,
    DIDRecord,
    CredentialRecord,
    AnomalyProfile,
    AnomalyAlert,
    AnomalyInsight,

    # Enums
    DataCategory,
    AccessLevel,
    ConsentStatus,
    AuditAction,
    AlertType,
    AlertSeverity,
    RiskLevel,
    InsightType,

    # Database utilities
    UTCDateTime,
    utcnow,
    engine,
    make_engine,
    SessionLocal,
    get_db,
    create_tables,
    drop_tables,
    get_database_url,
)

from .encryption_utils import (
    encrypt_column_data,
    decrypt_column_data,
    encrypt_json_metadata,
    decrypt_json_metadata,
    get_encryption_key,
)

__all__ = [
    # Base
    "Base",

    # Models
    "ConsentRequestRecord",
    "AuditLog",
    "DIDRecord",
    "CredentialRecord",
    "AnomalyProfile",
    "AnomalyAlert",
    "AnomalyInsight",

    # Enums
    "DataCategory",
    "AccessLevel",
    "ConsentStatus",
    "AuditAction",
    "AlertType",
    "AlertSeverity",
    "RiskLevel",
    "InsightType",

    # Database utilities
    "UTCDateTime",
    "utcnow",
    "engine",
    "make_engine",
    "SessionLocal",
    "get_db",
    "create_tables",
    "drop_tables",
    "get_database_url",

    # Encryption functions
    "encrypt_column_data",
    "decrypt_column_data",
    "encrypt_json_metadata",
    "decrypt_json_metadata",
    "get_encryption_key",
]
