"""
Consent lifecycle for SecNet.

This module provides:
- ConsentLedger: create / approve / deny / revoke with lazy expiry
- Immutable records (ConsentRequest, Party, AccessScope, ProofRef, StorageRef)
- Pure transition functions and the allowed-transition graph
- ConsentRepository with SQLAlchemy and in-memory implementations

Usage:
    from secnet.consent import ConsentLedger, SqlAlchemyConsentRepository, Party

    ledger = ConsentLedger(SqlAlchemyConsentRepository(SessionLocal), settlement, notifier, audit)
    request = ledger.create(Party.of(requester), Party.of(owner), "medical", "Trial screening", None, expires_at)
"""

from .ledger import ConsentLedger, MAX_PURPOSE_LENGTH
from .records import AccessScope, ConsentRequest, Party, ProofRef, StorageRef, parse_enum
from .repository import ConsentRepository, InMemoryConsentRepository, SqlAlchemyConsentRepository
from .transitions import ALLOWED_TRANSITIONS, TERMINAL_STATUSES, can_transition

__all__ = [
    "ConsentLedger",
    "MAX_PURPOSE_LENGTH",

    "AccessScope",
    "ConsentRequest",
    "Party",
    "ProofRef",
    "StorageRef",
    "parse_enum",

    "ConsentRepository",
    "InMemoryConsentRepository",
    "SqlAlchemyConsentRepository",

    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "can_transition",
]
