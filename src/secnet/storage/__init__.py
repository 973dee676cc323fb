"""Encrypted, content-addressed storage for owner data."""

from .blob_store import BlobStore, InMemoryBlobStore, IPFSBlobStore
from .content_store import (
    ALGORITHM,
    SCHEMA_VERSION,
    AuditMetadata,
    BlobMetadata,
    ConsentMetadata,
    ContentStore,
    CredentialMetadata,
    DataMetadata,
    EncryptedBlob,
    ProofMetadata,
    RetrievedContent,
    StorageReceipt,
    derive_key,
    metadata_to_dict,
    parse_metadata,
)

__all__ = [
    "BlobStore",
    "InMemoryBlobStore",
    "IPFSBlobStore",

    "ALGORITHM",
    "SCHEMA_VERSION",
    "AuditMetadata",
    "BlobMetadata",
    "ConsentMetadata",
    "ContentStore",
    "CredentialMetadata",
    "DataMetadata",
    "EncryptedBlob",
    "ProofMetadata",
    "RetrievedContent",
    "StorageReceipt",
    "derive_key",
    "metadata_to_dict",
    "parse_metadata",
]
