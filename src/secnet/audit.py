"""
Audit trail writer.

Every consent transition, verification and storage operation records one
AuditLog row. Details are a closed set of dataclasses; they are serialized
and encrypted into ``metadata_encrypted`` before they reach the database.

An audit failure never aborts the primary operation: it is logged at
WARNING and counted in ``AuditRecorder.failures``.

Usage:
    audit = AuditRecorder(SessionLocal)
    audit.record(
        AuditAction.CONSENT_APPROVE,
        actor=owner.address,
        target=str(request.id),
        details=ConsentAuditDetails(request_id=str(request.id), category="medical",
                                    from_status="pending", to_status="approved"),
    )
"""

import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union

from .database import AuditAction, AuditLog, decrypt_json_metadata, encrypt_json_metadata

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsentAuditDetails:
    request_id: str
    category: str
    from_status: Optional[str]
    to_status: Optional[str]
    reason: Optional[str] = None
    kind: str = field(default="consent", init=False)


@dataclass(frozen=True)
class VerificationAuditDetails:
    pipeline: str
    passed: bool
    failed_gate: Optional[str] = None
    error_kind: Optional[str] = None
    checks: List[Dict[str, Any]] = field(default_factory=list)
    kind: str = field(default="verification", init=False)


@dataclass(frozen=True)
class StorageAuditDetails:
    owner: str
    category: str
    data_address: Optional[str] = None
    metadata_address: Optional[str] = None
    kind: str = field(default="storage", init=False)


@dataclass(frozen=True)
class CredentialAuditDetails:
    credential_id: str
    issuer_did: str
    subject_did: Optional[str] = None
    credential_type: Optional[str] = None
    reason: Optional[str] = None
    kind: str = field(default="credential", init=False)


AuditDetails = Union[ConsentAuditDetails, VerificationAuditDetails, StorageAuditDetails, CredentialAuditDetails]


class AuditRecorder:
    """
    Writes append-only audit rows.

    Args:
        session_factory: Callable returning a SQLAlchemy session
        encryption_key: Optional key for metadata encryption (defaults to DB_ENCRYPTION_KEY)
    """

    def __init__(self, session_factory, encryption_key: Optional[str] = None):
        self.session_factory = session_factory
        self.encryption_key = encryption_key
        self._failures = 0
        self._lock = threading.Lock()

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    def record(
        self,
        action: AuditAction,
        actor: Optional[str],
        target: Optional[str] = None,
        details: Optional[AuditDetails] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Write one audit row.

        Returns:
            True if the row was committed, False if the write failed
        """
        session = None
        try:
            session = self.session_factory()
            metadata = encrypt_json_metadata(asdict(details), self.encryption_key) if details else None
            session.add(AuditLog(
                actor=actor,
                action=action,
                target=target,
                metadata_encrypted=metadata,
                success=success,
                error_message=error_message,
            ))
            session.commit()
            return True
        except Exception as e:
            if session is not None:
                session.rollback()
            with self._lock:
                self._failures += 1
            logger.warning(f"Audit write failed for {action.value}: {e}")
            return False
        finally:
            if session is not None:
                session.close()

    def entries(
        self,
        actor: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Read back audit rows with decrypted details, newest first."""
        session = self.session_factory()
        try:
            query = session.query(AuditLog)
            if actor is not None:
                query = query.filter(AuditLog.actor == actor)
            if action is not None:
                query = query.filter(AuditLog.action == action)

            rows = query.order_by(AuditLog.timestamp.desc()).limit(limit).all()
            return [
                {
                    "id": str(row.id),
                    "actor": row.actor,
                    "action": row.action.value,
                    "target": row.target,
                    "success": row.success,
                    "error_message": row.error_message,
                    "timestamp": row.timestamp.isoformat(),
                    "details": (
                        decrypt_json_metadata(row.metadata_encrypted, self.encryption_key)
                        if row.metadata_encrypted else None
                    ),
                }
                for row in rows
            ]
        finally:
            session.close()
