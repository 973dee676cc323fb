"""
Consent Ledger

Owns the consent-request lifecycle:
- Create a pending request (requester action)
- Approve / deny / revoke (owner actions)
- Lazy expiry: a pending request past ``expires_at`` is persisted as
  expired on the next read or transition attempt, before anything else
- Reference attachments (proof, storage) that never change status

Every successful transition writes one audit row and publishes one
notification. Failed transitions are all-or-nothing: nothing is persisted
and the failure is audited with success=False.

Concurrency:
- approve/deny/revoke on one request id are serialized by a named lock
- the repository's optimistic version check catches writers that bypass
  the lock (e.g. another process)

Usage:
    ledger = ConsentLedger(repository, settlement, notifier, audit)

    request = ledger.create(
        requester=Party.of("0xabc"),
        owner=Party.of("0xdef"),
        category="medical",
        purpose="Clinical trial eligibility screening",
        scope=AccessScope(fields=("blood_type",)),
        expires_at=datetime.now(timezone.utc) + timedelta(days=7),
    )
    ledger.approve(request.id, actor="0xdef", reason="OK for this trial")
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from ..audit import AuditRecorder, ConsentAuditDetails
from ..database import AuditAction, ConsentStatus, DataCategory
from ..errors import Forbidden, NotFound, SecNetError, StaleRecord, TransientError, ValidationError
from ..locking import LocalLockManager, LockManager
from ..notifications import NotificationSink, notify
from ..settlement import SettlementRecorder
from ..timeouts import DEFAULT_TIMEOUT_SECONDS, call_with_timeout
from . import transitions
from .records import AccessScope, ConsentRequest, Party, ProofRef, StorageRef, parse_enum
from .repository import ConsentRepository

logger = logging.getLogger(__name__)

MAX_PURPOSE_LENGTH = 500

_TRANSITION_ACTIONS = {
    ConsentStatus.APPROVED: AuditAction.CONSENT_APPROVE,
    ConsentStatus.DENIED: AuditAction.CONSENT_DENY,
    ConsentStatus.REVOKED: AuditAction.CONSENT_REVOKE,
    ConsentStatus.EXPIRED: AuditAction.CONSENT_EXPIRE,
}

_TRANSITION_EVENTS = {
    ConsentStatus.APPROVED: "access_granted",
    ConsentStatus.DENIED: "access_denied",
    ConsentStatus.REVOKED: "access_revoked",
    ConsentStatus.EXPIRED: "consent_expired",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(request_id: Union[UUID, str]) -> UUID:
    if isinstance(request_id, UUID):
        return request_id
    try:
        return UUID(str(request_id))
    except ValueError:
        raise NotFound(f"Consent request {request_id} not found")


def _normalize(address: Optional[str]) -> str:
    return (address or "").strip().lower()


class ConsentLedger:
    """
    State machine service for consent requests.

    Args:
        repository: ConsentRepository implementation
        settlement: SettlementRecorder anchoring approvals
        notifier: NotificationSink (best effort)
        audit: AuditRecorder (never raises)
        lock_manager: Named locks for per-request serialization
        clock: Callable returning the current aware UTC datetime
        external_timeout: Seconds allowed for the settlement call
    """

    LOCK_TIMEOUT_SECONDS = 10.0

    def __init__(
        self,
        repository: ConsentRepository,
        settlement: SettlementRecorder,
        notifier: Optional[NotificationSink],
        audit: AuditRecorder,
        lock_manager: Optional[LockManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
        external_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.repository = repository
        self.settlement = settlement
        self.notifier = notifier
        self.audit = audit
        self.locks = lock_manager or LocalLockManager()
        self.clock = clock or _utcnow
        self.external_timeout = external_timeout

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_name(self, request_id: UUID) -> str:
        return f"consent:{request_id}"

    def _event_payload(self, request: ConsentRequest) -> Dict[str, Any]:
        return {
            "request_id": str(request.id),
            "requester": request.requester.address,
            "owner": request.owner.address,
            "category": request.category.value,
            "status": request.status.value,
        }

    def _audit(
        self,
        action: AuditAction,
        actor: Optional[str],
        request: ConsentRequest,
        from_status: Optional[ConsentStatus],
        to_status: Optional[ConsentStatus],
        reason: Optional[str] = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> None:
        self.audit.record(
            action,
            actor=actor,
            target=str(request.id),
            details=ConsentAuditDetails(
                request_id=str(request.id),
                category=request.category.value,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value if to_status else None,
                reason=reason,
            ),
            success=success,
            error_message=error,
        )

    def _load(self, request_id: UUID) -> ConsentRequest:
        request = self.repository.get(request_id)
        if request is None:
            raise NotFound(f"Consent request {request_id} not found", details={"request_id": str(request_id)})
        return request

    def _expire_if_due(self, request: ConsentRequest) -> ConsentRequest:
        """Persist expiry for an overdue pending request; otherwise return it unchanged."""
        if not request.is_overdue(self.clock()):
            return request

        with self.locks.lock(self._lock_name(request.id), timeout=self.LOCK_TIMEOUT_SECONDS):
            current = self._load(request.id)
            expired, changed = transitions.expire_if_due(current, self.clock())
            if not changed:
                return current
            try:
                self.repository.update(expired, expected_version=current.version)
            except StaleRecord:
                return self._load(request.id)

        logger.info(f"Consent request expired: id={expired.id}")
        self._audit(AuditAction.CONSENT_EXPIRE, None, expired, ConsentStatus.PENDING, ConsentStatus.EXPIRED)
        notify(self.notifier, expired.requester.address, "consent_expired", self._event_payload(expired))
        return expired

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        requester: Party,
        owner: Party,
        category: Union[DataCategory, str],
        purpose: str,
        scope: Optional[AccessScope],
        expires_at: datetime,
    ) -> ConsentRequest:
        """
        Create a pending consent request.

        Raises:
            ValidationError: missing/malformed field, unknown enum value,
                purpose over 500 characters, or expiry not in the future
        """
        if not isinstance(requester, Party) or not isinstance(owner, Party):
            raise ValidationError("Requester and owner are required")
        if requester.address == owner.address:
            raise ValidationError("Requester and owner must be different identities")

        category = parse_enum(DataCategory, category, "category")

        if not isinstance(purpose, str) or not purpose.strip():
            raise ValidationError("Purpose is required", details={"field": "purpose"})
        purpose = purpose.strip()
        if len(purpose) > MAX_PURPOSE_LENGTH:
            raise ValidationError(
                f"Purpose must be at most {MAX_PURPOSE_LENGTH} characters",
                details={"field": "purpose", "length": len(purpose)},
            )

        if scope is None:
            scope = AccessScope()
        elif not isinstance(scope, AccessScope):
            raise ValidationError("Scope is malformed", details={"field": "scope"})

        if not isinstance(expires_at, datetime) or expires_at.tzinfo is None:
            raise ValidationError("expires_at must be a timezone-aware timestamp", details={"field": "expires_at"})

        now = self.clock()
        if expires_at <= now:
            raise ValidationError("expires_at must be in the future", details={"field": "expires_at"})

        request = ConsentRequest(
            id=uuid.uuid4(),
            requester=requester,
            owner=owner,
            category=category,
            purpose=purpose,
            scope=scope,
            status=ConsentStatus.PENDING,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        self.repository.add(request)

        logger.info(
            f"Consent request created: id={request.id}, requester={requester.address}, "
            f"owner={owner.address}, category={category.value}"
        )
        self._audit(AuditAction.CONSENT_CREATE, requester.address, request, None, ConsentStatus.PENDING)
        notify(self.notifier, owner.address, "consent_request", {
            **self._event_payload(request),
            "purpose": request.purpose,
            "expires_at": request.expires_at.isoformat(),
        })
        return request

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def approve(self, request_id: Union[UUID, str], actor: str, reason: Optional[str] = None) -> ConsentRequest:
        """
        Approve a pending request and anchor it with a settlement record.

        Raises:
            NotFound, Forbidden, InvalidState, TransientError (settlement unavailable)
        """
        return self._respond(_as_uuid(request_id), actor, ConsentStatus.APPROVED, reason)

    def deny(self, request_id: Union[UUID, str], actor: str, reason: Optional[str] = None) -> ConsentRequest:
        return self._respond(_as_uuid(request_id), actor, ConsentStatus.DENIED, reason)

    def revoke(self, request_id: Union[UUID, str], actor: str, reason: Optional[str] = None) -> ConsentRequest:
        return self._respond(_as_uuid(request_id), actor, ConsentStatus.REVOKED, reason)

    def _respond(
        self,
        request_id: UUID,
        actor: str,
        target: ConsentStatus,
        reason: Optional[str],
    ) -> ConsentRequest:
        actor = _normalize(actor)
        action = _TRANSITION_ACTIONS[target]

        with self.locks.lock(self._lock_name(request_id), timeout=self.LOCK_TIMEOUT_SECONDS):
            current = self._expire_if_due(self._load(request_id))
            try:
                transitions.ensure_owner(current, actor)
                transitions.ensure_transition(current, target)

                now = self.clock()
                if target is ConsentStatus.APPROVED:
                    settlement = self._record_settlement(current.id)
                    updated = transitions.approve(current, actor, now, settlement, reason)
                elif target is ConsentStatus.DENIED:
                    updated = transitions.deny(current, actor, now, reason)
                else:
                    updated = transitions.revoke(current, actor, now, reason)

                self.repository.update(updated, expected_version=current.version)
            except SecNetError as e:
                logger.warning(f"Consent {target.value} rejected: id={request_id}, reason={e.message}")
                self._audit(
                    AuditAction.CONSENT_TRANSITION_FAIL, actor, current, current.status, target,
                    reason=reason, success=False, error=f"{e.kind.value}: {e.message}",
                )
                raise

        logger.info(f"Consent request {target.value}: id={updated.id}, actor={actor}")
        self._audit(action, actor, updated, current.status, target, reason=reason)
        notify(self.notifier, updated.requester.address, _TRANSITION_EVENTS[target], {
            **self._event_payload(updated),
            "reason": reason,
        })
        return updated

    def _record_settlement(self, request_id: UUID):
        try:
            return call_with_timeout(
                self.settlement.record_approval,
                request_id,
                timeout=self.external_timeout,
                operation="settlement.record_approval",
            )
        except SecNetError as e:
            raise TransientError(
                f"Settlement unavailable, approval aborted: {e.message}",
                details={"request_id": str(request_id)},
            )

    def expire_overdue(self) -> int:
        """Persist expiry for every overdue pending request. Returns the number expired."""
        expired = 0
        for request in self.repository.due_for_expiry(self.clock()):
            if self._expire_if_due(request).status is ConsentStatus.EXPIRED:
                expired += 1
        if expired:
            logger.info(f"Expired {expired} overdue consent requests")
        return expired

    # ------------------------------------------------------------------
    # Reference attachments
    # ------------------------------------------------------------------

    def attach_proof(self, request_id: Union[UUID, str], actor: str, proof_ref: ProofRef) -> ConsentRequest:
        return self._attach(_as_uuid(request_id), actor, lambda r, now: transitions.attach_proof(r, proof_ref, now))

    def attach_storage(self, request_id: Union[UUID, str], actor: str, storage_ref: StorageRef) -> ConsentRequest:
        return self._attach(_as_uuid(request_id), actor, lambda r, now: transitions.attach_storage(r, storage_ref, now))

    def _attach(self, request_id: UUID, actor: str, build) -> ConsentRequest:
        actor = _normalize(actor)
        with self.locks.lock(self._lock_name(request_id), timeout=self.LOCK_TIMEOUT_SECONDS):
            current = self._expire_if_due(self._load(request_id))
            if not current.involves(actor):
                raise Forbidden("Only parties to the request can attach references")
            updated = build(current, self.clock())
            self.repository.update(updated, expected_version=current.version)
        logger.info(f"Reference attached to consent request {request_id} by {actor}")
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, request_id: Union[UUID, str], viewer: Optional[str] = None) -> ConsentRequest:
        """
        Fetch a request, applying lazy expiry first.

        Raises:
            NotFound: unknown id
            Forbidden: viewer is neither owner nor requester
        """
        request = self._expire_if_due(self._load(_as_uuid(request_id)))
        if viewer is not None and not request.involves(viewer):
            raise Forbidden("Access denied", details={"request_id": str(request.id)})
        return request

    def _refresh(self, requests: List[ConsentRequest]) -> List[ConsentRequest]:
        return [self._expire_if_due(r) for r in requests]

    def pending_for_owner(self, owner: str) -> List[ConsentRequest]:
        requests = self._refresh(self.repository.query(owner=_normalize(owner), status=ConsentStatus.PENDING))
        return [r for r in requests if r.status is ConsentStatus.PENDING]

    def active_for_owner(self, owner: str) -> List[ConsentRequest]:
        """Approved requests that are still active."""
        return self.repository.query(owner=_normalize(owner), status=ConsentStatus.APPROVED)

    def has_active_consent(self, requester: str, owner: str, category: Union[DataCategory, str]) -> bool:
        category = parse_enum(DataCategory, category, "category")
        approved = self.repository.query(
            owner=_normalize(owner),
            requester=_normalize(requester),
            category=category,
            status=ConsentStatus.APPROVED,
        )
        return bool(approved)

    def list_for(
        self,
        identity: str,
        role: str = "owner",
        status: Optional[Union[ConsentStatus, str]] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        """
        Paginated requests where ``identity`` plays ``role``.

        Returns:
            {"requests": [...], "pagination": {"page", "limit", "total", "pages"}}
        """
        if role not in ("owner", "requester"):
            raise ValidationError(f"Unknown role '{role}'", details={"allowed": "owner, requester"})
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")

        status = parse_enum(ConsentStatus, status, "status") if status else None
        filters = {role: _normalize(identity)}

        requests = self._refresh(self.repository.query(active_only=True, **filters))
        if status is not None:
            requests = [r for r in requests if r.status is status]

        total = len(requests)
        start = (page - 1) * limit
        return {
            "requests": requests[start:start + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    def history_for_owner(
        self,
        owner: str,
        category: Optional[DataCategory] = None,
        since: Optional[datetime] = None,
    ) -> List[ConsentRequest]:
        """
        Read-only view of an owner's requests, with overdue requests shown as
        expired without persisting anything.
        """
        now = self.clock()
        requests = self.repository.query(owner=_normalize(owner), category=category, created_since=since)
        return [transitions.expire_if_due(r, now)[0] for r in requests]
