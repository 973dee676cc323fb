"""Decentralized identifiers, verifiable credentials and presentations."""

from .credential_service import (
    DID_METHOD_PREFIX,
    PRESENTATION_LIFETIME,
    CredentialService,
    CredentialVerification,
    IssuedCredential,
    PresentationVerification,
    ResolvedDID,
)

__all__ = [
    "DID_METHOD_PREFIX",
    "PRESENTATION_LIFETIME",
    "CredentialService",
    "CredentialVerification",
    "IssuedCredential",
    "PresentationVerification",
    "ResolvedDID",
]
