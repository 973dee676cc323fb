"""
Pure consent lifecycle transitions.

    pending  -> approved | denied | expired
    approved -> revoked

Each function takes a ConsentRequest and returns a new one with the version
bumped; nothing here touches storage. ``expired`` is only reachable through
``expire`` (driven by the expiry check), never by an actor.
"""

from dataclasses import replace
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Tuple

from ..database import ConsentStatus
from ..errors import Forbidden, InvalidState, InvalidTransition
from ..settlement import SettlementRecord
from .records import ConsentRequest, ProofRef, StorageRef

ALLOWED_TRANSITIONS: Dict[ConsentStatus, FrozenSet[ConsentStatus]] = {
    ConsentStatus.PENDING: frozenset({ConsentStatus.APPROVED, ConsentStatus.DENIED, ConsentStatus.EXPIRED}),
    ConsentStatus.APPROVED: frozenset({ConsentStatus.REVOKED}),
    ConsentStatus.DENIED: frozenset(),
    ConsentStatus.EXPIRED: frozenset(),
    ConsentStatus.REVOKED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: ConsentStatus, target: ConsentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(request: ConsentRequest, target: ConsentStatus) -> None:
    """Raise InvalidTransition unless ``request`` may move to ``target``."""
    if not can_transition(request.status, target):
        raise InvalidTransition(
            f"Cannot move request from {request.status.value} to {target.value}",
            details={
                "request_id": str(request.id),
                "status": request.status.value,
                "target": target.value,
            },
        )


def ensure_owner(request: ConsentRequest, actor: str) -> None:
    """Raise Forbidden unless ``actor`` is the data owner."""
    if (actor or "").strip().lower() != request.owner.address:
        raise Forbidden(
            "Only the data owner can respond to this request",
            details={"request_id": str(request.id)},
        )


def _move(
    request: ConsentRequest,
    target: ConsentStatus,
    now: datetime,
    **changes,
) -> ConsentRequest:
    ensure_transition(request, target)
    return replace(request, status=target, updated_at=now, version=request.version + 1, **changes)


def expire(request: ConsentRequest, now: datetime) -> ConsentRequest:
    if now < request.expires_at:
        raise InvalidState(
            "Request has not reached its expiry",
            details={"request_id": str(request.id), "expires_at": request.expires_at.isoformat()},
        )
    return _move(request, ConsentStatus.EXPIRED, now)


def expire_if_due(request: ConsentRequest, now: datetime) -> Tuple[ConsentRequest, bool]:
    """Return (request, changed); pending requests past expiry become expired."""
    if request.is_overdue(now):
        return expire(request, now), True
    return request, False


def approve(
    request: ConsentRequest,
    actor: str,
    now: datetime,
    settlement: SettlementRecord,
    reason: Optional[str] = None,
) -> ConsentRequest:
    ensure_owner(request, actor)
    return _move(
        request,
        ConsentStatus.APPROVED,
        now,
        responded_at=now,
        response_reason=reason,
        settlement=settlement,
    )


def deny(request: ConsentRequest, actor: str, now: datetime, reason: Optional[str] = None) -> ConsentRequest:
    ensure_owner(request, actor)
    return _move(request, ConsentStatus.DENIED, now, responded_at=now, response_reason=reason)


def revoke(request: ConsentRequest, actor: str, now: datetime, reason: Optional[str] = None) -> ConsentRequest:
    ensure_owner(request, actor)
    return _move(request, ConsentStatus.REVOKED, now, response_reason=reason)


def _ensure_attachable(request: ConsentRequest) -> None:
    if request.status not in (ConsentStatus.PENDING, ConsentStatus.APPROVED):
        raise InvalidState(
            f"Cannot attach references to a {request.status.value} request",
            details={"request_id": str(request.id), "status": request.status.value},
        )


def attach_proof(request: ConsentRequest, proof_ref: ProofRef, now: datetime) -> ConsentRequest:
    _ensure_attachable(request)
    return replace(request, proof_ref=proof_ref, updated_at=now, version=request.version + 1)


def attach_storage(request: ConsentRequest, storage_ref: StorageRef, now: datetime) -> ConsentRequest:
    _ensure_attachable(request)
    return replace(request, storage_ref=storage_ref, updated_at=now, version=request.version + 1)
