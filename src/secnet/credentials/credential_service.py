"""
Credential Service

Self-sovereign identity primitives:
- DIDs derived from a controlling address (``did:ethr:<address>``); only a
  hash of the DID document is kept
- Verifiable credentials signed as HS256 JWTs (``jti`` = credential id)
- Verifiable presentations bound to a challenge nonce and audience domain
- One-way revocation by the issuer

Verification rejects:
- credentials: bad signature, expiry, revocation, issuer or subject DID
  that does not resolve
- presentations: bad signature or audience, expiry, challenge mismatch,
  holder DID that does not resolve, or any wrapped credential failing

Usage:
    credentials = CredentialService(SessionLocal, signing_secret, domain="secnet.app")
    credentials.create_did("0xIssuer...", {"publicKey": "..."})
    issued = credentials.issue_credential(issuer_did, subject_did, "KYCCredential",
                                          {"level": "basic"}, expires_at)
    vp = credentials.create_presentation(subject_did, [issued.jwt], challenge)
    assert credentials.verify_presentation(vp.jwt, challenge).is_valid
"""

import hmac
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import jwt

from ..audit import AuditRecorder, CredentialAuditDetails
from ..database import AuditAction, CredentialRecord, DIDRecord
from ..errors import Forbidden, InvalidState, NotFound, ValidationError
from ..hashing import hash_json, sha256_hex

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DID_METHOD_PREFIX = "did:ethr:"
PRESENTATION_LIFETIME = timedelta(hours=1)
CREDENTIAL_CONTEXT = [
    "https://www.w3.org/2018/credentials/v1",
    "https://www.w3.org/2018/credentials/examples/v1",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


@dataclass
class ResolvedDID:
    did: str
    controller: str
    document_hash: str
    created_at: datetime
    is_active: bool = True

    def to_dict(self) -> dict:
        return {
            "did": self.did,
            "controller": self.controller,
            "document_hash": self.document_hash,
            "created_at": self.created_at.isoformat(),
            "is_active": self.is_active,
        }


@dataclass
class IssuedCredential:
    credential: Dict[str, Any]
    jwt: str

    def to_dict(self) -> dict:
        return {
            "credential": self.credential,
            "jwt": self.jwt,
            "proof": {"type": "JwtProof2020", "jwt": self.jwt},
        }


@dataclass
class CredentialVerification:
    is_valid: bool
    error: Optional[str] = None
    credential: Optional[Dict[str, Any]] = None
    issuer: Optional[str] = None
    subject: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "error": self.error,
            "credential": self.credential,
            "issuer": self.issuer,
            "subject": self.subject,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class PresentationVerification:
    is_valid: bool
    error: Optional[str] = None
    holder: Optional[str] = None
    presentation: Optional[Dict[str, Any]] = None
    credentials: List[CredentialVerification] = field(default_factory=list)
    expires_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "error": self.error,
            "holder": self.holder,
            "presentation": self.presentation,
            "credentials": [c.to_dict() for c in self.credentials],
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class CredentialService:
    """
    DID registry, credential issuance and verification.

    Args:
        session_factory: Callable returning a SQLAlchemy session
        signing_secret: HS256 secret for credential and presentation JWTs
        domain: Audience for presentations
        audit: Optional AuditRecorder for issue/revoke events
        clock: Callable returning the current aware UTC datetime
    """

    def __init__(
        self,
        session_factory,
        signing_secret: str,
        domain: str = "secnet.app",
        audit: Optional[AuditRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not signing_secret:
            raise ValueError("signing_secret is required")
        self.session_factory = session_factory
        self.signing_secret = signing_secret
        self.domain = domain
        self.audit = audit
        self.clock = clock or _utcnow

    # ------------------------------------------------------------------
    # DIDs
    # ------------------------------------------------------------------

    @staticmethod
    def did_for(address: str) -> str:
        return f"{DID_METHOD_PREFIX}{address.strip().lower()}"

    def create_did(self, address: str, document: Optional[Dict[str, Any]] = None) -> ResolvedDID:
        """
        Register a DID for ``address``.

        Raises:
            ValidationError: missing address or malformed document
            InvalidState: DID already registered
        """
        if not isinstance(address, str) or not address.strip():
            raise ValidationError("Address is required", details={"field": "address"})
        document = document or {}
        if not isinstance(document, dict):
            raise ValidationError("DID document must be an object", details={"field": "document"})

        did = self.did_for(address)
        session = self.session_factory()
        try:
            if session.get(DIDRecord, did) is not None:
                raise InvalidState(f"{did} is already registered", details={"did": did})

            record = DIDRecord(
                did=did,
                controller=address.strip().lower(),
                document_hash=hash_json(document),
                public_key=document.get("publicKey"),
                services=document.get("services") or [],
                verification_methods=document.get("verificationMethod") or [],
                created_at=self.clock(),
            )
            session.add(record)
            session.commit()
            logger.info(f"DID registered: {did}")
            return ResolvedDID(did, record.controller, record.document_hash, record.created_at)
        except InvalidState:
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def resolve_did(self, did: str) -> Optional[ResolvedDID]:
        """Return the active DID record, or None."""
        if not isinstance(did, str) or not did.startswith(DID_METHOD_PREFIX):
            return None
        session = self.session_factory()
        try:
            record = session.get(DIDRecord, did)
            if record is None or not record.is_active:
                return None
            return ResolvedDID(record.did, record.controller, record.document_hash, record.created_at)
        finally:
            session.close()

    def deactivate_did(self, did: str, controller: str) -> None:
        session = self.session_factory()
        try:
            record = session.get(DIDRecord, did)
            if record is None:
                raise NotFound(f"{did} not found")
            if record.controller != controller.strip().lower():
                raise Forbidden("Only the controller can deactivate a DID")
            record.is_active = False
            session.commit()
            logger.info(f"DID deactivated: {did}")
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def issue_credential(
        self,
        issuer_did: str,
        subject_did: str,
        credential_type: str,
        claims: Dict[str, Any],
        expires_at: datetime,
        schema: Optional[Dict[str, Any]] = None,
        evidence: Optional[Any] = None,
    ) -> IssuedCredential:
        """
        Sign a verifiable credential and index it under the subject.

        Raises:
            ValidationError: unregistered issuer, bad type/claims, or expiry not in the future
        """
        if self.resolve_did(issuer_did) is None:
            raise ValidationError("Issuer DID is not registered", details={"issuer": issuer_did})
        if not isinstance(subject_did, str) or not subject_did.startswith(DID_METHOD_PREFIX):
            raise ValidationError("Subject must be a DID", details={"subject": subject_did})
        if not credential_type:
            raise ValidationError("Credential type is required", details={"field": "type"})
        if not isinstance(claims, dict):
            raise ValidationError("Claims must be an object", details={"field": "claims"})

        now = self.clock()
        if expires_at.tzinfo is None or expires_at <= now:
            raise ValidationError("Credential expiry must be a future aware timestamp")

        credential_id = f"urn:uuid:{uuid.uuid4()}"
        credential = {
            "@context": CREDENTIAL_CONTEXT,
            "id": credential_id,
            "type": ["VerifiableCredential", credential_type],
            "issuer": issuer_did,
            "issuanceDate": now.isoformat(),
            "expirationDate": expires_at.isoformat(),
            "credentialSubject": {**claims, "id": subject_did},
            "credentialSchema": schema,
            "evidence": evidence,
        }
        token = jwt.encode(
            {
                "iss": issuer_did,
                "sub": subject_did,
                "jti": credential_id,
                "vc": credential,
                "iat": int(now.timestamp()),
                "nbf": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
            },
            self.signing_secret,
            algorithm=ALGORITHM,
        )

        session = self.session_factory()
        try:
            session.add(CredentialRecord(
                id=credential_id,
                issuer_did=issuer_did,
                subject_did=subject_did,
                credential_type=credential_type,
                token_hash=sha256_hex(token),
                issued_at=now,
                expires_at=expires_at,
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(f"Credential issued: id={credential_id}, type={credential_type}, subject={subject_did}")
        if self.audit:
            self.audit.record(
                AuditAction.CREDENTIAL_ISSUE,
                actor=issuer_did,
                target=credential_id,
                details=CredentialAuditDetails(credential_id, issuer_did, subject_did, credential_type),
            )
        return IssuedCredential(credential=credential, jwt=token)

    def _decode(self, token: str, audience: Optional[str] = None) -> Dict[str, Any]:
        # Time claims are checked against self.clock below, not the wall clock.
        return jwt.decode(
            token,
            self.signing_secret,
            algorithms=[ALGORITHM],
            audience=audience,
            options={
                "verify_exp": False,
                "verify_nbf": False,
                "verify_iat": False,
                "verify_aud": audience is not None,
                "require": ["exp", "iss"],
            },
        )

    def _expired(self, claims: Dict[str, Any]) -> bool:
        return int(claims["exp"]) <= int(self.clock().timestamp())

    def _is_revoked(self, credential_id: Optional[str]) -> Optional[bool]:
        """True/False for a known credential, None if it was never issued here."""
        if not credential_id:
            return None
        session = self.session_factory()
        try:
            record = session.get(CredentialRecord, credential_id)
            return None if record is None else bool(record.is_revoked)
        finally:
            session.close()

    def verify_credential(self, token: str) -> CredentialVerification:
        try:
            claims = self._decode(token)
        except jwt.InvalidTokenError as e:
            logger.warning(f"Credential rejected: {e}")
            return CredentialVerification(is_valid=False, error=f"Invalid credential token: {e}")

        issued_at = _from_timestamp(claims.get("nbf"))
        expires_at = _from_timestamp(claims.get("exp"))

        def failed(error: str) -> CredentialVerification:
            logger.warning(f"Credential {claims.get('jti')} rejected: {error}")
            return CredentialVerification(
                is_valid=False, error=error, issuer=claims.get("iss"), subject=claims.get("sub"),
                issued_at=issued_at, expires_at=expires_at,
            )

        if self._expired(claims):
            return failed("Credential expired")

        revoked = self._is_revoked(claims.get("jti"))
        if revoked is None:
            return failed("Unknown credential")
        if revoked:
            return failed("Credential revoked")

        if self.resolve_did(claims["iss"]) is None:
            return failed("Invalid issuer DID")
        if self.resolve_did(claims.get("sub")) is None:
            return failed("Invalid subject DID")

        return CredentialVerification(
            is_valid=True,
            credential=claims.get("vc"),
            issuer=claims["iss"],
            subject=claims.get("sub"),
            issued_at=issued_at,
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Presentations
    # ------------------------------------------------------------------

    def create_presentation(self, holder_did: str, credential_jwts: List[str], challenge: str) -> IssuedCredential:
        """Wrap credential JWTs in a presentation bound to ``challenge`` (1 hour lifetime)."""
        if not isinstance(holder_did, str) or not holder_did.startswith(DID_METHOD_PREFIX):
            raise ValidationError("Holder must be a DID", details={"holder": holder_did})
        if not isinstance(credential_jwts, list) or not credential_jwts:
            raise ValidationError("At least one credential is required", details={"field": "credentials"})
        if not isinstance(challenge, str) or not challenge:
            raise ValidationError("Challenge is required", details={"field": "challenge"})

        now = self.clock()
        presentation = {
            "@context": CREDENTIAL_CONTEXT,
            "id": f"urn:uuid:{uuid.uuid4()}",
            "type": ["VerifiablePresentation"],
            "holder": holder_did,
            "verifiableCredential": list(credential_jwts),
            "challenge": challenge,
            "domain": self.domain,
        }
        token = jwt.encode(
            {
                "iss": holder_did,
                "aud": self.domain,
                "vp": presentation,
                "iat": int(now.timestamp()),
                "nbf": int(now.timestamp()),
                "exp": int((now + PRESENTATION_LIFETIME).timestamp()),
                "nonce": challenge,
            },
            self.signing_secret,
            algorithm=ALGORITHM,
        )
        return IssuedCredential(credential=presentation, jwt=token)

    def verify_presentation(self, token: str, challenge: str) -> PresentationVerification:
        try:
            claims = self._decode(token, audience=self.domain)
        except jwt.InvalidTokenError as e:
            logger.warning(f"Presentation rejected: {e}")
            return PresentationVerification(is_valid=False, error=f"Invalid presentation token: {e}")

        holder = claims["iss"]
        expires_at = _from_timestamp(claims.get("exp"))

        if self._expired(claims):
            return PresentationVerification(is_valid=False, error="Presentation expired", holder=holder)

        if not hmac.compare_digest(str(claims.get("nonce", "")).encode(), str(challenge or "").encode()):
            return PresentationVerification(is_valid=False, error="Invalid challenge", holder=holder)

        if self.resolve_did(holder) is None:
            return PresentationVerification(is_valid=False, error="Invalid holder DID", holder=holder)

        presentation = claims.get("vp") or {}
        wrapped = presentation.get("verifiableCredential") or []
        if not wrapped:
            return PresentationVerification(is_valid=False, error="Presentation carries no credentials", holder=holder)

        results = [self.verify_credential(c) for c in wrapped]
        failures = [r.error for r in results if not r.is_valid]
        failures += [
            f"Credential subject {r.subject} is not the holder"
            for r in results if r.is_valid and r.subject != holder
        ]

        return PresentationVerification(
            is_valid=not failures,
            error=f"Credential check failed: {failures[0]}" if failures else None,
            holder=holder,
            presentation=presentation,
            credentials=results,
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Revocation and listing
    # ------------------------------------------------------------------

    def revoke_credential(self, credential_id: str, issuer_did: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Revoke a credential. Only its issuer may do so, and only once.

        Raises:
            NotFound, Forbidden, InvalidState
        """
        now = self.clock()
        reason = reason or "User requested revocation"

        session = self.session_factory()
        try:
            record = session.get(CredentialRecord, credential_id)
            if record is None:
                raise NotFound(f"Credential {credential_id} not found")
            if record.issuer_did != issuer_did:
                raise Forbidden("Only the issuer can revoke a credential")
            if record.is_revoked:
                raise InvalidState("Credential is already revoked", details={"credential_id": credential_id})

            record.is_revoked = True
            record.revoked_at = now
            record.revocation_reason = reason
            session.commit()
        finally:
            session.close()

        timestamp_ms = int(now.timestamp() * 1000)
        logger.info(f"Credential revoked: id={credential_id}")
        if self.audit:
            self.audit.record(
                AuditAction.CREDENTIAL_REVOKE,
                actor=issuer_did,
                target=credential_id,
                details=CredentialAuditDetails(credential_id, issuer_did, reason=reason),
            )
        return {
            "credentialId": credential_id,
            "issuer": issuer_did,
            "reason": reason,
            "timestamp": now.isoformat(),
            "revocationHash": sha256_hex(f"{credential_id}-{issuer_did}-{timestamp_ms}"),
        }

    def list_credentials(self, subject_did: str, include_revoked: bool = False) -> List[Dict[str, Any]]:
        session = self.session_factory()
        try:
            query = session.query(CredentialRecord).filter(CredentialRecord.subject_did == subject_did)
            if not include_revoked:
                query = query.filter(CredentialRecord.is_revoked.is_(False))
            return [
                {
                    "id": r.id,
                    "type": r.credential_type,
                    "issuer": r.issuer_did,
                    "subject": r.subject_did,
                    "issued_at": r.issued_at.isoformat(),
                    "expires_at": r.expires_at.isoformat(),
                    "is_revoked": r.is_revoked,
                    "revoked_at": r.revoked_at.isoformat() if r.revoked_at else None,
                }
                for r in query.order_by(CredentialRecord.issued_at).all()
            ]
        finally:
            session.close()

    def generate_credential_schema(self, name: str, version: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        if not name or not version:
            raise ValidationError("Schema name and version are required")
        if not isinstance(properties, dict) or not all(isinstance(v, dict) for v in properties.values()):
            raise ValidationError("Schema properties must map names to objects", details={"field": "properties"})

        schema = {
            "@context": "https://www.w3.org/2018/credentials/v1",
            "@type": "JsonSchema",
            "name": name,
            "version": version,
            "properties": properties,
            "required": [key for key, spec in properties.items() if spec.get("required") is not False],
            "additionalProperties": False,
        }
        return {
            "schema": schema,
            "schemaHash": hash_json(schema),
            "schemaId": f"urn:uuid:{uuid.uuid4()}",
        }
