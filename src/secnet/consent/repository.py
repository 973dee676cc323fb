"""
Persistence for consent requests.

ConsentRepository is the storage contract used by ConsentLedger. ``update``
is an optimistic compare-and-set on ``version``: a writer that read a stale
copy gets StaleRecord and nothing is written.

Implementations:
- SqlAlchemyConsentRepository: consent_requests table
- InMemoryConsentRepository: thread-safe dict, for tests and single-process use
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from ..database import ConsentRequestRecord, ConsentStatus, DataCategory
from ..errors import NotFound, StaleRecord
from ..settlement import SettlementRecord
from .records import AccessScope, ConsentRequest, Party, ProofRef, StorageRef

logger = logging.getLogger(__name__)


class ConsentRepository(ABC):

    @abstractmethod
    def add(self, request: ConsentRequest) -> ConsentRequest:
        """Insert a new request."""

    @abstractmethod
    def get(self, request_id: UUID) -> Optional[ConsentRequest]:
        """Fetch a request by id, or None."""

    @abstractmethod
    def update(self, request: ConsentRequest, expected_version: int) -> ConsentRequest:
        """
        Replace the stored request if its version still equals ``expected_version``.

        Raises:
            NotFound: no such request
            StaleRecord: the stored version moved on
        """

    @abstractmethod
    def query(
        self,
        owner: Optional[str] = None,
        requester: Optional[str] = None,
        category: Optional[DataCategory] = None,
        status: Optional[ConsentStatus] = None,
        created_since: Optional[datetime] = None,
        active_only: bool = True,
    ) -> List[ConsentRequest]:
        """Requests matching every given filter, newest first."""

    @abstractmethod
    def due_for_expiry(self, now: datetime) -> List[ConsentRequest]:
        """Pending requests whose expiry has passed."""


def _matches(
    request: ConsentRequest,
    owner: Optional[str],
    requester: Optional[str],
    category: Optional[DataCategory],
    status: Optional[ConsentStatus],
    created_since: Optional[datetime],
    active_only: bool,
) -> bool:
    if owner is not None and request.owner.address != owner:
        return False
    if requester is not None and request.requester.address != requester:
        return False
    if category is not None and request.category is not category:
        return False
    if status is not None and request.status is not status:
        return False
    if created_since is not None and request.created_at < created_since:
        return False
    if active_only and not request.is_active:
        return False
    return True


class InMemoryConsentRepository(ConsentRepository):

    def __init__(self):
        self._requests: Dict[UUID, ConsentRequest] = {}
        self._lock = threading.Lock()

    def add(self, request: ConsentRequest) -> ConsentRequest:
        with self._lock:
            self._requests[request.id] = request
        return request

    def get(self, request_id: UUID) -> Optional[ConsentRequest]:
        with self._lock:
            return self._requests.get(request_id)

    def update(self, request: ConsentRequest, expected_version: int) -> ConsentRequest:
        with self._lock:
            current = self._requests.get(request.id)
            if current is None:
                raise NotFound(f"Consent request {request.id} not found")
            if current.version != expected_version:
                raise StaleRecord(
                    "Consent request was modified concurrently",
                    details={"request_id": str(request.id), "status": current.status.value},
                )
            self._requests[request.id] = request
        return request

    def query(self, owner=None, requester=None, category=None, status=None,
              created_since=None, active_only=True) -> List[ConsentRequest]:
        with self._lock:
            found = [
                r for r in self._requests.values()
                if _matches(r, owner, requester, category, status, created_since, active_only)
            ]
        return sorted(found, key=lambda r: r.created_at, reverse=True)

    def due_for_expiry(self, now: datetime) -> List[ConsentRequest]:
        with self._lock:
            return [r for r in self._requests.values() if r.is_overdue(now)]


# ============================================================================
# SQLAlchemy
# ============================================================================

def _to_domain(row: ConsentRequestRecord) -> ConsentRequest:
    time_range = None
    if row.scope_start is not None and row.scope_end is not None:
        time_range = (row.scope_start, row.scope_end)

    return ConsentRequest(
        id=row.id,
        requester=Party(row.requester_address, row.requester_ens_name, row.requester_display_name),
        owner=Party(row.owner_address, row.owner_ens_name),
        category=row.category,
        purpose=row.purpose,
        scope=AccessScope(
            fields=tuple(row.scope_fields or ()),
            time_range=time_range,
            access_level=row.access_level,
        ),
        status=row.status,
        expires_at=row.expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        responded_at=row.responded_at,
        response_reason=row.response_reason,
        settlement=SettlementRecord.from_dict(row.settlement) if row.settlement else None,
        proof_ref=ProofRef.from_dict(row.proof_ref) if row.proof_ref else None,
        storage_ref=StorageRef.from_dict(row.storage_ref) if row.storage_ref else None,
        is_active=row.is_active,
        version=row.version,
    )


def _mutable_columns(request: ConsentRequest) -> dict:
    return {
        "status": request.status,
        "updated_at": request.updated_at,
        "responded_at": request.responded_at,
        "response_reason": request.response_reason,
        "settlement": request.settlement.to_dict() if request.settlement else None,
        "proof_ref": request.proof_ref.to_dict() if request.proof_ref else None,
        "storage_ref": request.storage_ref.to_dict() if request.storage_ref else None,
        "is_active": request.is_active,
        "version": request.version,
    }


class SqlAlchemyConsentRepository(ConsentRepository):
    """
    consent_requests table access.

    Args:
        session_factory: Callable returning a new SQLAlchemy session
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def add(self, request: ConsentRequest) -> ConsentRequest:
        session = self.session_factory()
        try:
            time_range = request.scope.time_range
            session.add(ConsentRequestRecord(
                id=request.id,
                requester_address=request.requester.address,
                requester_ens_name=request.requester.ens_name,
                requester_display_name=request.requester.display_name,
                owner_address=request.owner.address,
                owner_ens_name=request.owner.ens_name,
                category=request.category,
                purpose=request.purpose,
                scope_fields=list(request.scope.fields),
                scope_start=time_range[0] if time_range else None,
                scope_end=time_range[1] if time_range else None,
                access_level=request.scope.access_level,
                expires_at=request.expires_at,
                created_at=request.created_at,
                **_mutable_columns(request),
            ))
            session.commit()
            return request
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, request_id: UUID) -> Optional[ConsentRequest]:
        session = self.session_factory()
        try:
            row = session.query(ConsentRequestRecord).filter_by(id=request_id).first()
            return _to_domain(row) if row else None
        finally:
            session.close()

    def update(self, request: ConsentRequest, expected_version: int) -> ConsentRequest:
        session = self.session_factory()
        try:
            updated = (
                session.query(ConsentRequestRecord)
                .filter_by(id=request.id, version=expected_version)
                .update(_mutable_columns(request), synchronize_session=False)
            )
            if updated == 0:
                session.rollback()
                current = session.query(ConsentRequestRecord).filter_by(id=request.id).first()
                if current is None:
                    raise NotFound(f"Consent request {request.id} not found")
                raise StaleRecord(
                    "Consent request was modified concurrently",
                    details={"request_id": str(request.id), "status": current.status.value},
                )
            session.commit()
            return request
        except (NotFound, StaleRecord):
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def query(self, owner=None, requester=None, category=None, status=None,
              created_since=None, active_only=True) -> List[ConsentRequest]:
        session = self.session_factory()
        try:
            q = session.query(ConsentRequestRecord)
            if owner is not None:
                q = q.filter(ConsentRequestRecord.owner_address == owner)
            if requester is not None:
                q = q.filter(ConsentRequestRecord.requester_address == requester)
            if category is not None:
                q = q.filter(ConsentRequestRecord.category == category)
            if status is not None:
                q = q.filter(ConsentRequestRecord.status == status)
            if created_since is not None:
                q = q.filter(ConsentRequestRecord.created_at >= created_since)
            if active_only:
                q = q.filter(ConsentRequestRecord.is_active.is_(True))
            rows = q.order_by(ConsentRequestRecord.created_at.desc()).all()
            return [_to_domain(row) for row in rows]
        finally:
            session.close()

    def due_for_expiry(self, now: datetime) -> List[ConsentRequest]:
        session = self.session_factory()
        try:
            rows = (
                session.query(ConsentRequestRecord)
                .filter(
                    ConsentRequestRecord.status == ConsentStatus.PENDING,
                    ConsentRequestRecord.expires_at <= now,
                )
                .all()
            )
            return [_to_domain(row) for row in rows]
        finally:
            session.close()
