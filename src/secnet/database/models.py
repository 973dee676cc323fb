"""
SQLAlchemy ORM models for the SecNet consent core.

Tables:
- consent_requests: consent lifecycle rows (owned by ConsentLedger)
- audit_logs: append-only audit trail (UPDATE prohibited)
- did_records: registered decentralized identifiers (document hash only)
- credentials: issued verifiable credential index with revocation state
- anomaly_profiles / anomaly_alerts / anomaly_insights: AnomalyMonitor state

All timestamps are stored as UTC and returned timezone-aware.
"""

import enum
import os
import uuid
from datetime import datetime, timezone
from typing import Generator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    create_engine,
    event,
    inspect,
    select,
)
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker


# ============================================================================
# Enums
# ============================================================================

class DataCategory(str, enum.Enum):
    MEDICAL = "medical"
    FINANCIAL = "financial"
    IDENTITY = "identity"
    EDUCATION = "education"
    LOCATION = "location"
    BIOMETRIC = "biometric"
    CUSTOM = "custom"


class AccessLevel(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class ConsentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    REVOKED = "revoked"


class AuditAction(str, enum.Enum):
    CONSENT_CREATE = "CONSENT_CREATE"
    CONSENT_APPROVE = "CONSENT_APPROVE"
    CONSENT_DENY = "CONSENT_DENY"
    CONSENT_REVOKE = "CONSENT_REVOKE"
    CONSENT_EXPIRE = "CONSENT_EXPIRE"
    CONSENT_TRANSITION_FAIL = "CONSENT_TRANSITION_FAIL"
    VERIFICATION = "VERIFICATION"
    DATA_STORE = "DATA_STORE"
    DATA_RETRIEVE = "DATA_RETRIEVE"
    CREDENTIAL_ISSUE = "CREDENTIAL_ISSUE"
    CREDENTIAL_REVOKE = "CREDENTIAL_REVOKE"


class AlertType(str, enum.Enum):
    UNUSUAL_ACCESS = "unusual_access"
    DATA_BREACH = "data_breach"
    PRIVACY_VIOLATION = "privacy_violation"
    CONSENT_VIOLATION = "consent_violation"
    ANOMALY_DETECTED = "anomaly_detected"


class AlertSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class InsightType(str, enum.Enum):
    PATTERN_DETECTED = "pattern_detected"
    RISK_ASSESSMENT = "risk_assessment"
    RECOMMENDATION = "recommendation"
    TREND_ANALYSIS = "trend_analysis"


def _enum_column(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# ============================================================================
# Custom types
# ============================================================================

class UTCDateTime(TypeDecorator):
    """
    DateTime that always round-trips as timezone-aware UTC.

    SQLite drops tzinfo on storage; values are normalized to naive UTC on
    the way in and re-tagged on the way out.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Base = declarative_base()


# ============================================================================
# Consent requests
# ============================================================================

class ConsentRequestRecord(Base):
    """Persisted consent request. Mapped to/from the immutable ConsentRequest."""
    __tablename__ = "consent_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    requester_address = Column(String(128), nullable=False)
    requester_ens_name = Column(String(255))
    requester_display_name = Column(String(255))
    owner_address = Column(String(128), nullable=False)
    owner_ens_name = Column(String(255))

    category = Column(_enum_column(DataCategory, "data_category"), nullable=False)
    purpose = Column(String(500), nullable=False)

    scope_fields = Column(JSON, nullable=False, default=list)
    scope_start = Column(UTCDateTime)
    scope_end = Column(UTCDateTime)
    access_level = Column(_enum_column(AccessLevel, "access_level"), nullable=False, default=AccessLevel.READ)

    status = Column(_enum_column(ConsentStatus, "consent_status"), nullable=False, default=ConsentStatus.PENDING)
    expires_at = Column(UTCDateTime, nullable=False)
    responded_at = Column(UTCDateTime)
    response_reason = Column(Text)

    settlement = Column(JSON)
    proof_ref = Column(JSON)
    storage_ref = Column(JSON)

    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_consent_requester", "requester_address"),
        Index("ix_consent_owner_status", "owner_address", "status"),
        Index("ix_consent_owner_category_created", "owner_address", "category", "created_at"),
        Index("ix_consent_expires", "expires_at"),
    )

    @property
    def is_expired(self) -> bool:
        return utcnow() > self.expires_at

    def __repr__(self):
        return f"<ConsentRequestRecord {self.id} {self.status.value if self.status else None}>"


# ============================================================================
# Audit log
# ============================================================================

class AuditLog(Base):
    """
    Append-only audit trail.

    Rows can be inserted but never updated; see the before_update listener
    below and the database trigger installed by init_db.
    """
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor = Column(String(128))
    action = Column(_enum_column(AuditAction, "audit_action"), nullable=False)
    target = Column(String(255))
    metadata_encrypted = Column(Text)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text)
    timestamp = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_actor_timestamp", "actor", "timestamp"),
        Index("ix_audit_action", "action"),
    )


@event.listens_for(AuditLog, "before_update")
def _prevent_audit_log_update(mapper, connection, target):
    raise ValueError("Audit log records are immutable and cannot be updated")


# ============================================================================
# Decentralized identifiers and credentials
# ============================================================================

class DIDRecord(Base):
    __tablename__ = "did_records"

    did = Column(String(255), primary_key=True)
    controller = Column(String(128), nullable=False)
    document_hash = Column(String(64), nullable=False)
    public_key = Column(Text)
    services = Column(JSON, nullable=False, default=list)
    verification_methods = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class CredentialRecord(Base):
    """Index row for an issued credential. The signed JWT itself stays with the holder."""
    __tablename__ = "credentials"

    id = Column(String(64), primary_key=True)  # urn:uuid:<uuid4>
    issuer_did = Column(String(255), nullable=False)
    subject_did = Column(String(255), nullable=False)
    credential_type = Column(String(128), nullable=False)
    token_hash = Column(String(64), nullable=False)
    issued_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False)
    is_revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(UTCDateTime)
    revocation_reason = Column(Text)

    __table_args__ = (
        Index("ix_credentials_subject", "subject_did"),
    )


@event.listens_for(CredentialRecord, "before_update")
def _prevent_credential_unrevoke(mapper, connection, target):
    history = inspect(target).attrs.is_revoked.history
    if not history.has_changes() or target.is_revoked:
        return
    if history.deleted:
        was_revoked = history.deleted[0]
    else:
        # Attribute was expired before the change, so read the stored value
        was_revoked = connection.scalar(
            select(CredentialRecord.is_revoked).where(CredentialRecord.id == target.id)
        )
    if was_revoked:
        raise ValueError("Credential revocation is permanent")


# ============================================================================
# Anomaly monitoring
# ============================================================================

class AnomalyProfile(Base):
    __tablename__ = "anomaly_profiles"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_address = Column(String(128), nullable=False)
    category = Column(_enum_column(DataCategory, "data_category"), nullable=False)

    top_requester = Column(String(255))
    frequency = Column(Integer, nullable=False, default=0)
    hours_of_day = Column(JSON, nullable=False, default=list)
    days_of_week = Column(JSON, nullable=False, default=list)
    data_volume = Column(Float, nullable=False, default=0.0)
    access_duration = Column(Float, nullable=False, default=0.0)

    anomaly_score = Column(Integer, nullable=False, default=0)
    risk_level = Column(_enum_column(RiskLevel, "risk_level"), nullable=False, default=RiskLevel.LOW)
    consent_compliance_rate = Column(Float, nullable=False, default=100.0)

    is_active = Column(Boolean, nullable=False, default=True)
    last_analyzed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    alerts = relationship(
        "AnomalyAlert",
        back_populates="profile",
        order_by="AnomalyAlert.timestamp",
        cascade="all, delete-orphan",
    )
    insights = relationship(
        "AnomalyInsight",
        back_populates="profile",
        order_by="AnomalyInsight.timestamp",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_anomaly_owner_category", "owner_address", "category", unique=True),
        Index("ix_anomaly_score", "anomaly_score"),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "owner": self.owner_address,
            "category": self.category.value,
            "access_pattern": {
                "requester": self.top_requester,
                "frequency": self.frequency,
                "hours_of_day": list(self.hours_of_day or []),
                "days_of_week": list(self.days_of_week or []),
                "data_volume": self.data_volume,
                "access_duration": self.access_duration,
            },
            "anomaly_score": self.anomaly_score,
            "risk_level": self.risk_level.value,
            "consent_compliance_rate": self.consent_compliance_rate,
            "is_active": self.is_active,
            "last_analyzed_at": self.last_analyzed_at.isoformat() if self.last_analyzed_at else None,
        }


class AnomalyAlert(Base):
    __tablename__ = "anomaly_alerts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    profile_id = Column(Uuid, ForeignKey("anomaly_profiles.id"), nullable=False)
    alert_type = Column(_enum_column(AlertType, "alert_type"), nullable=False)
    severity = Column(_enum_column(AlertSeverity, "alert_severity"), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON)
    timestamp = Column(UTCDateTime, nullable=False, default=utcnow)
    is_read = Column(Boolean, nullable=False, default=False)
    is_resolved = Column(Boolean, nullable=False, default=False)

    profile = relationship("AnomalyProfile", back_populates="alerts")

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "is_read": self.is_read,
            "is_resolved": self.is_resolved,
        }


class AnomalyInsight(Base):
    __tablename__ = "anomaly_insights"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    profile_id = Column(Uuid, ForeignKey("anomaly_profiles.id"), nullable=False)
    insight_type = Column(_enum_column(InsightType, "insight_type"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    confidence = Column(Integer, nullable=False)
    timestamp = Column(UTCDateTime, nullable=False, default=utcnow)

    profile = relationship("AnomalyProfile", back_populates="insights")

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "type": self.insight_type.value,
            "title": self.title,
            "description": self.description,
            "confidence": self.confidence,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


# ============================================================================
# Engine and sessions
# ============================================================================

def get_database_url() -> str:
    """Database URL from DATABASE_URL (SQLite file by default)."""
    return os.getenv("DATABASE_URL", "sqlite:///./secnet.db")


def make_engine(url: Optional[str] = None, **kwargs):
    url = url or get_database_url()
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, **kwargs)


engine = make_engine()
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    """Yield a session and close it afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind=None) -> None:
    Base.metadata.create_all(bind=bind or engine)


def drop_tables(bind=None) -> None:
    Base.metadata.drop_all(bind=bind or engine)
