"""
Content Store

Encrypt-then-store for owner data:
- Key derivation: SHA-256(owner-category-serverSecret); raw keys are never
  returned or persisted, callers re-derive them to read
- AES-256-GCM with a random 96-bit IV per call and a 128-bit tag
- Ciphertext and metadata are written as two content-addressed blobs
- Metadata is one of a closed set of variants (data, consent, audit,
  proof, credential) plus cipher parameters, timestamp and schema version

Failures:
- ContentNotFound: either blob is absent (never stored or collected)
- DecryptionFailed: wrong key or tampered ciphertext
- TransientError: the blob store timed out or is unreachable
"""

import base64
import hashlib
import json
import logging
import secrets
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Dict, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..audit import AuditRecorder, StorageAuditDetails
from ..database import AuditAction, DataCategory
from ..errors import ContentNotFound, DecryptionFailed, Forbidden, ValidationError
from ..hashing import canonical_json
from ..timeouts import DEFAULT_TIMEOUT_SECONDS, call_with_timeout
from .blob_store import BlobStore

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
IV_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
SCHEMA_VERSION = "1.0"


def derive_key(owner: str, category: Union[DataCategory, str], server_secret: str) -> bytes:
    """Deterministic 256-bit key for (owner, category)."""
    category_value = category.value if isinstance(category, DataCategory) else str(category)
    material = f"{owner.strip().lower()}-{category_value}-{server_secret}"
    return hashlib.sha256(material.encode("utf-8")).digest()


# ============================================================================
# Blob and metadata shapes
# ============================================================================

@dataclass(frozen=True)
class EncryptedBlob:
    ciphertext: bytes
    iv: bytes
    tag: bytes
    algorithm: str = ALGORITHM
    content_address: str = ""

    @classmethod
    def create(cls, ciphertext: bytes, iv: bytes, tag: bytes) -> "EncryptedBlob":
        return cls(ciphertext, iv, tag, ALGORITHM, hashlib.sha256(ciphertext).hexdigest())

    def to_bytes(self) -> bytes:
        return canonical_json({
            "algorithm": self.algorithm,
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "iv": self.iv.hex(),
            "auth_tag": self.tag.hex(),
            "content_address": self.content_address,
        }).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "EncryptedBlob":
        """
        Raises:
            DecryptionFailed: the stored blob is not a well-formed encrypted blob
        """
        try:
            data = json.loads(raw.decode("utf-8"))
            blob = cls(
                ciphertext=base64.b64decode(data["ciphertext"]),
                iv=bytes.fromhex(data["iv"]),
                tag=bytes.fromhex(data["auth_tag"]),
                algorithm=data["algorithm"],
                content_address=data["content_address"],
            )
        except (ValueError, KeyError, TypeError, UnicodeDecodeError) as e:
            raise DecryptionFailed(f"Stored blob is malformed: {e}")

        if blob.algorithm != ALGORITHM or len(blob.iv) != IV_SIZE or len(blob.tag) != TAG_SIZE:
            raise DecryptionFailed("Stored blob uses unsupported cipher parameters")
        if hashlib.sha256(blob.ciphertext).hexdigest() != blob.content_address:
            raise DecryptionFailed("Stored blob failed its content address check")
        return blob


@dataclass(frozen=True)
class DataMetadata:
    kind: ClassVar[str] = "data"
    category: str
    owner: str
    provider: Optional[str] = None
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConsentMetadata:
    kind: ClassVar[str] = "consent"
    owner: str
    categories: Tuple[str, ...] = ()
    permissions: Tuple[str, ...] = ()
    expiry: Optional[str] = None


@dataclass(frozen=True)
class AuditMetadata:
    kind: ClassVar[str] = "audit"
    owner: str
    action: str
    requester: Optional[str] = None


@dataclass(frozen=True)
class ProofMetadata:
    kind: ClassVar[str] = "proof"
    owner: str
    proof_kind: str
    is_valid: bool


@dataclass(frozen=True)
class CredentialMetadata:
    kind: ClassVar[str] = "credential"
    owner: str
    credential_type: str
    issuer: str
    issuance_date: Optional[str] = None
    expiration_date: Optional[str] = None


BlobMetadata = Union[DataMetadata, ConsentMetadata, AuditMetadata, ProofMetadata, CredentialMetadata]

METADATA_VARIANTS = {
    variant.kind: variant
    for variant in (DataMetadata, ConsentMetadata, AuditMetadata, ProofMetadata, CredentialMetadata)
}


def metadata_to_dict(metadata: BlobMetadata) -> Dict[str, Any]:
    body = {}
    for f in fields(metadata):
        value = getattr(metadata, f.name)
        body[f.name] = list(value) if isinstance(value, tuple) else value
    return {"kind": metadata.kind, **body}


def parse_metadata(data: Dict[str, Any]) -> BlobMetadata:
    """
    Build a metadata variant from a dict discriminated by ``kind``.

    Raises:
        ValidationError: unknown kind or fields that do not fit the variant
    """
    if not isinstance(data, dict):
        raise ValidationError("Metadata must be an object")
    kind = data.get("kind")
    variant = METADATA_VARIANTS.get(kind)
    if variant is None:
        raise ValidationError(
            f"Unknown metadata kind '{kind}'",
            details={"allowed": ", ".join(sorted(METADATA_VARIANTS))},
        )

    allowed = {f.name for f in fields(variant)}
    values = {k: v for k, v in data.items() if k != "kind"}
    unexpected = set(values) - allowed
    if unexpected:
        raise ValidationError(
            f"Unexpected {kind} metadata fields: {', '.join(sorted(unexpected))}",
            details={"kind": kind},
        )
    values = {k: tuple(v) if isinstance(v, list) else v for k, v in values.items()}
    try:
        return variant(**values)
    except TypeError as e:
        raise ValidationError(f"Invalid {kind} metadata: {e}", details={"kind": kind})


@dataclass
class StorageReceipt:
    data_address: str
    metadata_address: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "data_address": self.data_address,
            "metadata_address": self.metadata_address,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RetrievedContent:
    payload: Any
    metadata: Dict[str, Any] = field(default_factory=dict)
    data_address: Optional[str] = None
    metadata_address: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "payload": self.payload,
            "metadata": self.metadata,
            "data_address": self.data_address,
            "metadata_address": self.metadata_address,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Store
# ============================================================================

class ContentStore:
    """
    Encrypts payloads and writes them to a BlobStore.

    Args:
        blob_store: Content-addressed storage backend
        server_secret: Secret mixed into key derivation
        audit: Optional AuditRecorder for store/retrieve events
        external_timeout: Seconds allowed per blob store call
    """

    def __init__(
        self,
        blob_store: BlobStore,
        server_secret: str,
        audit: Optional[AuditRecorder] = None,
        external_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not server_secret:
            raise ValueError("server_secret is required")
        self.blob_store = blob_store
        self.server_secret = server_secret
        self.audit = audit
        self.external_timeout = external_timeout
        self.clock = clock or _utcnow

    def _call(self, func, *args, operation: str):
        return call_with_timeout(func, *args, timeout=self.external_timeout, operation=f"blob_store.{operation}")

    def derive_key(self, owner: str, category: Union[DataCategory, str]) -> bytes:
        return derive_key(owner, category, self.server_secret)

    # ------------------------------------------------------------------
    # Cipher
    # ------------------------------------------------------------------

    @staticmethod
    def _check_key(key: bytes) -> None:
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
            raise ValidationError("Encryption key must be 32 bytes")

    def encrypt(self, payload: Any, key: bytes) -> EncryptedBlob:
        self._check_key(key)
        try:
            plaintext = json.dumps(payload).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Payload is not JSON serializable: {e}")

        iv = secrets.token_bytes(IV_SIZE)
        sealed = AESGCM(bytes(key)).encrypt(iv, plaintext, None)
        return EncryptedBlob.create(ciphertext=sealed[:-TAG_SIZE], iv=iv, tag=sealed[-TAG_SIZE:])

    def decrypt(self, blob: EncryptedBlob, key: bytes) -> Any:
        self._check_key(key)
        try:
            plaintext = AESGCM(bytes(key)).decrypt(blob.iv, blob.ciphertext + blob.tag, None)
        except InvalidTag:
            raise DecryptionFailed("Authentication tag mismatch: wrong key or tampered data")
        return json.loads(plaintext.decode("utf-8"))

    # ------------------------------------------------------------------
    # Store / retrieve with a caller-supplied key
    # ------------------------------------------------------------------

    def store(self, payload: Any, key: bytes, metadata: BlobMetadata, pin: bool = True) -> StorageReceipt:
        if type(metadata) not in METADATA_VARIANTS.values():
            raise ValidationError("Metadata must be one of the known metadata variants")

        blob = self.encrypt(payload, key)
        now = self.clock()
        metadata_doc = {
            **metadata_to_dict(metadata),
            "encryption": {
                "algorithm": blob.algorithm,
                "iv": blob.iv.hex(),
                "auth_tag": blob.tag.hex(),
            },
            "timestamp": now.isoformat(),
            "version": SCHEMA_VERSION,
        }

        data_address = self._call(self.blob_store.put, blob.to_bytes(), operation="put")
        metadata_address = self._call(
            self.blob_store.put, canonical_json(metadata_doc).encode("utf-8"), operation="put"
        )
        if pin:
            self._call(self.blob_store.pin, data_address, operation="pin")
            self._call(self.blob_store.pin, metadata_address, operation="pin")

        logger.info(f"Stored encrypted {metadata.kind} content at {data_address}")
        return StorageReceipt(data_address=data_address, metadata_address=metadata_address, timestamp=now)

    def _fetch(self, address: str) -> bytes:
        if not address:
            raise ValidationError("Content address is required")
        raw = self._call(self.blob_store.get, address, operation="get")
        if raw is None:
            raise ContentNotFound(f"Content {address} not found", details={"address": address})
        return raw

    def _fetch_metadata(self, metadata_address: str) -> Dict[str, Any]:
        raw_metadata = self._fetch(metadata_address)
        try:
            metadata = json.loads(raw_metadata.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise DecryptionFailed(f"Stored metadata is malformed: {e}")
        if not isinstance(metadata, dict):
            raise DecryptionFailed("Stored metadata is malformed: not an object")
        return metadata

    def retrieve(self, data_address: str, metadata_address: str, key: bytes) -> RetrievedContent:
        blob = EncryptedBlob.from_bytes(self._fetch(data_address))
        metadata = self._fetch_metadata(metadata_address)

        return RetrievedContent(
            payload=self.decrypt(blob, key),
            metadata=metadata,
            data_address=data_address,
            metadata_address=metadata_address,
        )

    # ------------------------------------------------------------------
    # Owner/category operations (key derived internally)
    # ------------------------------------------------------------------

    def store_encrypted(
        self,
        payload: Any,
        owner: str,
        category: Union[DataCategory, str],
        metadata: Optional[BlobMetadata] = None,
        pin: bool = True,
    ) -> StorageReceipt:
        category = self._parse_category(category)
        owner = self._require_owner(owner)
        metadata = metadata or DataMetadata(category=category.value, owner=owner)

        receipt = self.store(payload, self.derive_key(owner, category), metadata, pin=pin)
        self._audit(AuditAction.DATA_STORE, owner, owner, category, receipt.data_address, receipt.metadata_address)
        return receipt

    def retrieve_encrypted(
        self,
        data_address: str,
        metadata_address: str,
        owner: str,
        category: Union[DataCategory, str],
        actor: Optional[str] = None,
    ) -> RetrievedContent:
        category = self._parse_category(category)
        owner = self._require_owner(owner)

        content = self.retrieve(data_address, metadata_address, self.derive_key(owner, category))
        self._audit(AuditAction.DATA_RETRIEVE, actor or owner, owner, category, data_address, metadata_address)
        return content

    def set_pinned(
        self,
        data_address: str,
        metadata_address: str,
        owner: str,
        category: Union[DataCategory, str],
        pinned: bool = True,
    ) -> None:
        """
        Pin or unpin an owner's content (data and metadata blobs together).

        Metadata fields are written by the storing caller, so ownership is
        proven by decrypting the data blob with the owner's derived key.

        Raises:
            Forbidden: the data is not encrypted under the owner's key, or the
                metadata blob describes different content
            ContentNotFound, TransientError
        """
        category = self._parse_category(category)
        owner = self._require_owner(owner)

        blob = EncryptedBlob.from_bytes(self._fetch(data_address))
        encryption = self._fetch_metadata(metadata_address).get("encryption") or {}
        if encryption.get("iv") != blob.iv.hex() or encryption.get("auth_tag") != blob.tag.hex():
            raise Forbidden(
                "Metadata does not describe this content",
                details={"data_address": data_address, "metadata_address": metadata_address},
            )
        try:
            self.decrypt(blob, self.derive_key(owner, category))
        except DecryptionFailed:
            logger.warning(f"Pin change on {data_address} refused for {owner}: not the owner")
            raise Forbidden("Only the content owner may change its pins", details={"address": data_address})

        operation = "pin" if pinned else "unpin"
        func = self.blob_store.pin if pinned else self.blob_store.unpin
        for address in (data_address, metadata_address):
            self._call(func, address, operation=operation)
        logger.info(f"Content {data_address} {operation}ned by {owner}")

    def pin(self, address: str) -> None:
        self._call(self.blob_store.pin, address, operation="pin")

    def unpin(self, address: str) -> None:
        self._call(self.blob_store.unpin, address, operation="unpin")

    def exists(self, address: str) -> bool:
        return bool(self._call(self.blob_store.exists, address, operation="exists"))

    @staticmethod
    def _parse_category(category) -> DataCategory:
        if isinstance(category, DataCategory):
            return category
        try:
            return DataCategory(str(category).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown category '{category}'", details={"field": "category"})

    @staticmethod
    def _require_owner(owner: str) -> str:
        if not isinstance(owner, str) or not owner.strip():
            raise ValidationError("Owner identity is required", details={"field": "owner"})
        return owner.strip().lower()

    def _audit(self, action: AuditAction, actor: str, owner: str, category: DataCategory,
               data_address: str, metadata_address: str) -> None:
        if self.audit is None:
            return
        self.audit.record(
            action,
            actor=actor,
            target=data_address,
            details=StorageAuditDetails(
                owner=owner,
                category=category.value,
                data_address=data_address,
                metadata_address=metadata_address,
            ),
        )
