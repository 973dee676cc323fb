"""
Immutable consent records.

A ConsentRequest is never mutated in place: transitions build a new record
(see transitions.py) and the repository persists it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type, TypeVar
from uuid import UUID

from ..database import AccessLevel, ConsentStatus, DataCategory
from ..errors import ValidationError
from ..settlement import SettlementRecord

E = TypeVar("E", bound=Enum)


def parse_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    """
    Parse a closed enum value.

    Raises:
        ValidationError: if the value is not a member
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Unknown {field_name} '{value}'",
            details={"field": field_name, "allowed": allowed},
        )


def _parse_datetime(value: Any, field_name: str) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid timestamp for {field_name}", details={"field": field_name})


@dataclass(frozen=True)
class Party:
    """An identity taking part in a consent request (wallet address plus names)."""
    address: str
    ens_name: Optional[str] = None
    display_name: Optional[str] = None

    @classmethod
    def of(cls, address: Any, ens_name: Optional[str] = None, display_name: Optional[str] = None) -> "Party":
        if not isinstance(address, str) or not address.strip():
            raise ValidationError("Party address is required", details={"field": "address"})
        return cls(address=address.strip().lower(), ens_name=ens_name, display_name=display_name)

    @classmethod
    def from_dict(cls, data: Any) -> "Party":
        if isinstance(data, str):
            return cls.of(data)
        if not isinstance(data, dict):
            raise ValidationError("Party must be an address or an object")
        return cls.of(data.get("address"), data.get("ens_name"), data.get("display_name"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "ens_name": self.ens_name,
            "display_name": self.display_name,
        }


@dataclass(frozen=True)
class AccessScope:
    """Fields, optional time range and access level covered by a request."""
    fields: Tuple[str, ...] = ()
    time_range: Optional[Tuple[datetime, datetime]] = None
    access_level: AccessLevel = AccessLevel.READ

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AccessScope":
        data = data or {}
        fields = data.get("fields") or data.get("data_fields") or []
        if not isinstance(fields, (list, tuple)) or not all(isinstance(f, str) for f in fields):
            raise ValidationError("Scope fields must be a list of strings", details={"field": "scope.fields"})

        time_range = None
        raw_range = data.get("time_range")
        if raw_range:
            start = _parse_datetime(raw_range.get("start"), "scope.time_range.start")
            end = _parse_datetime(raw_range.get("end"), "scope.time_range.end")
            if end <= start:
                raise ValidationError("Scope time range must end after it starts")
            time_range = (start, end)

        return cls(
            fields=tuple(fields),
            time_range=time_range,
            access_level=parse_enum(AccessLevel, data.get("access_level", AccessLevel.READ), "access_level"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fields": list(self.fields),
            "time_range": (
                {"start": self.time_range[0].isoformat(), "end": self.time_range[1].isoformat()}
                if self.time_range else None
            ),
            "access_level": self.access_level.value,
        }


@dataclass(frozen=True)
class ProofRef:
    """Reference to a proof attached to a request."""
    proof_hash: str
    circuit_type: str
    is_valid: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"proof_hash": self.proof_hash, "circuit_type": self.circuit_type, "is_valid": self.is_valid}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofRef":
        return cls(data["proof_hash"], data["circuit_type"], bool(data["is_valid"]))


@dataclass(frozen=True)
class StorageRef:
    """Content addresses of encrypted data attached to a request."""
    data_address: str
    metadata_address: str
    tags: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"data_address": self.data_address, "metadata_address": self.metadata_address, "tags": list(self.tags)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageRef":
        return cls(data["data_address"], data["metadata_address"], tuple(data.get("tags") or ()))


@dataclass(frozen=True)
class ConsentRequest:
    id: UUID
    requester: Party
    owner: Party
    category: DataCategory
    purpose: str
    scope: AccessScope
    status: ConsentStatus
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    responded_at: Optional[datetime] = None
    response_reason: Optional[str] = None
    settlement: Optional[SettlementRecord] = None
    proof_ref: Optional[ProofRef] = None
    storage_ref: Optional[StorageRef] = None
    is_active: bool = True
    version: int = field(default=1, compare=False)

    def is_overdue(self, now: datetime) -> bool:
        """Pending past its expiry and therefore due to become expired."""
        return self.status is ConsentStatus.PENDING and now >= self.expires_at

    def involves(self, address: str) -> bool:
        address = address.strip().lower()
        return address in (self.owner.address, self.requester.address)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "requester": self.requester.to_dict(),
            "owner": self.owner.to_dict(),
            "category": self.category.value,
            "purpose": self.purpose,
            "scope": self.scope.to_dict(),
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
            "response_reason": self.response_reason,
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "proof_ref": self.proof_ref.to_dict() if self.proof_ref else None,
            "storage_ref": self.storage_ref.to_dict() if self.storage_ref else None,
            "is_active": self.is_active,
            "version": self.version,
        }
