"""
Structured error taxonomy for the SecNet consent core.

Every failure surfaced by the core carries an ErrorKind and a human-readable
message. Transient failures (timeouts, unavailable collaborators) are the only
retryable kind; a client can tell them apart via ``retryable``.

Usage:
    from secnet.errors import InvalidState, ErrorKind

    raise InvalidState(
        "Request is not pending approval",
        details={"request_id": str(request_id), "status": "approved"}
    )
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    VALIDATION = "ValidationError"
    FORBIDDEN = "Forbidden"
    INVALID_STATE = "InvalidState"
    NOT_FOUND = "NotFound"
    IDENTITY_NOT_OWNED = "IdentityNotOwned"
    PROFILE_NOT_FOUND = "ProfileNotFound"
    PROOF_INVALID = "ProofInvalid"
    CREDENTIAL_INVALID = "CredentialInvalid"
    CONTENT_NOT_FOUND = "ContentNotFound"
    DECRYPTION_FAILED = "DecryptionFailed"
    TRANSIENT = "Transient"
    INTERNAL = "Internal"


HTTP_STATUS_MAP: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.IDENTITY_NOT_OWNED: 403,
    ErrorKind.PROFILE_NOT_FOUND: 404,
    ErrorKind.PROOF_INVALID: 403,
    ErrorKind.CREDENTIAL_INVALID: 403,
    ErrorKind.CONTENT_NOT_FOUND: 404,
    ErrorKind.DECRYPTION_FAILED: 422,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.INTERNAL: 500,
}


class SecNetError(Exception):
    """
    Base exception with structured error information.

    Attributes:
        kind: ErrorKind of the failure
        message: Human-readable message
        details: Optional context dictionary
        http_status: Suggested HTTP status for API responses
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        kind: Optional[ErrorKind] = None
    ):
        if kind is not None:
            self.kind = kind
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.kind.value}] {message}")

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_MAP.get(self.kind, 500)

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "error": self.kind.value,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(SecNetError):
    kind = ErrorKind.VALIDATION


class Forbidden(SecNetError):
    kind = ErrorKind.FORBIDDEN


class InvalidState(SecNetError):
    kind = ErrorKind.INVALID_STATE


class InvalidTransition(InvalidState):
    """A status change outside the allowed consent lifecycle graph."""


class StaleRecord(InvalidState):
    """Optimistic version check lost against a concurrent writer."""


class NotFound(SecNetError):
    kind = ErrorKind.NOT_FOUND


class IdentityNotOwned(SecNetError):
    kind = ErrorKind.IDENTITY_NOT_OWNED


class ProfileNotFound(SecNetError):
    kind = ErrorKind.PROFILE_NOT_FOUND


class ProofInvalid(SecNetError):
    kind = ErrorKind.PROOF_INVALID


class CredentialInvalid(SecNetError):
    kind = ErrorKind.CREDENTIAL_INVALID


class ContentNotFound(SecNetError):
    kind = ErrorKind.CONTENT_NOT_FOUND


class DecryptionFailed(SecNetError):
    kind = ErrorKind.DECRYPTION_FAILED


class TransientError(SecNetError):
    kind = ErrorKind.TRANSIENT


class InternalError(SecNetError):
    kind = ErrorKind.INTERNAL


def wrap_unexpected(error: Exception, context: Optional[str] = None) -> SecNetError:
    """
    Convert an arbitrary exception into a SecNetError.

    SecNetErrors pass through unchanged; timeouts and connection failures
    become TransientError; everything else becomes InternalError.
    """
    if isinstance(error, SecNetError):
        return error

    prefix = f"{context}: " if context else ""
    details = {"exception_type": type(error).__name__}

    if isinstance(error, (TimeoutError, ConnectionError)):
        return TransientError(f"{prefix}{error or 'operation timed out'}", details=details)

    return InternalError(f"{prefix}{error}", details=details)
