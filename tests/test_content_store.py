"""
Content Store Tests

Tests for encrypted content-addressed storage:
- AES-256-GCM round trip and per-call IVs
- Wrong key / tampered blob detection
- Metadata variants
- Pinning and garbage collection
- IPFS blob store over a mocked HTTP session

Run with:
    poetry run pytest tests/test_content_store.py -v
"""

import json
import time
from unittest.mock import MagicMock

import pytest
import requests

from secnet.database import AuditAction, DataCategory
from secnet.errors import ContentNotFound, DecryptionFailed, Forbidden, InternalError, TransientError, ValidationError
from secnet.storage import (
    ContentStore,
    CredentialMetadata,
    DataMetadata,
    EncryptedBlob,
    InMemoryBlobStore,
    IPFSBlobStore,
    derive_key,
    parse_metadata,
)

OWNER = "0xbbb0000000000000000000000000000000000002"
STRANGER = "0xccc0000000000000000000000000000000000003"
SERVER_SECRET = "server-secret-for-tests"


@pytest.fixture
def blobs():
    return InMemoryBlobStore()


@pytest.fixture
def audit():
    return MagicMock()


@pytest.fixture
def store(blobs, audit):
    return ContentStore(blobs, SERVER_SECRET, audit=audit)


class TestKeyDerivation:

    def test_key_is_deterministic_and_256_bits(self):
        key = derive_key(OWNER, DataCategory.MEDICAL, SERVER_SECRET)
        assert len(key) == 32
        assert key == derive_key(OWNER.upper().replace("0X", "0x"), "medical", SERVER_SECRET)

    def test_key_depends_on_category_and_secret(self):
        key = derive_key(OWNER, "medical", SERVER_SECRET)
        assert key != derive_key(OWNER, "financial", SERVER_SECRET)
        assert key != derive_key(OWNER, "medical", "other-secret")


class TestCipher:

    def test_round_trip(self, store):
        key = derive_key(OWNER, "medical", SERVER_SECRET)
        payload = {"blood_type": "O+", "allergies": ["penicillin"]}

        blob = store.encrypt(payload, key)

        assert len(blob.iv) == 12
        assert len(blob.tag) == 16
        assert store.decrypt(blob, key) == payload

    def test_fresh_iv_per_call(self, store):
        key = derive_key(OWNER, "medical", SERVER_SECRET)
        first = store.encrypt({"a": 1}, key)
        second = store.encrypt({"a": 1}, key)
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext

    def test_wrong_key_fails(self, store):
        blob = store.encrypt({"a": 1}, derive_key(OWNER, "medical", SERVER_SECRET))
        with pytest.raises(DecryptionFailed):
            store.decrypt(blob, derive_key(OWNER, "financial", SERVER_SECRET))

    def test_key_must_be_32_bytes(self, store):
        with pytest.raises(ValidationError):
            store.encrypt({"a": 1}, b"short")

    def test_tampered_blob_rejected(self):
        blob = EncryptedBlob.create(b"ciphertext", b"\x00" * 12, b"\x01" * 16)
        data = json.loads(blob.to_bytes())
        data["content_address"] = "0" * 64
        with pytest.raises(DecryptionFailed):
            EncryptedBlob.from_bytes(json.dumps(data).encode())


class TestStoreAndRetrieve:

    def test_store_encrypted_round_trip(self, store, audit):
        receipt = store.store_encrypted({"diagnosis": "healthy"}, OWNER, "medical")
        content = store.retrieve_encrypted(receipt.data_address, receipt.metadata_address, OWNER, "medical")

        assert content.payload == {"diagnosis": "healthy"}
        assert content.metadata["kind"] == "data"
        assert content.metadata["owner"] == OWNER
        assert content.metadata["encryption"]["algorithm"] == "aes-256-gcm"
        assert content.metadata["version"] == "1.0"

        actions = [c.args[0] for c in audit.record.call_args_list]
        assert actions == [AuditAction.DATA_STORE, AuditAction.DATA_RETRIEVE]

    def test_other_category_key_cannot_decrypt(self, store):
        receipt = store.store_encrypted({"x": 1}, OWNER, "medical")
        with pytest.raises(DecryptionFailed):
            store.retrieve_encrypted(receipt.data_address, receipt.metadata_address, OWNER, "financial")

    def test_unknown_address(self, store):
        with pytest.raises(ContentNotFound):
            store.retrieve_encrypted("missing", "missing", OWNER, "medical")

    def test_garbage_collected_content_is_gone(self, store, blobs):
        receipt = store.store_encrypted({"x": 1}, OWNER, "medical", pin=False)
        assert blobs.collect_garbage() == 2

        with pytest.raises(ContentNotFound):
            store.retrieve_encrypted(receipt.data_address, receipt.metadata_address, OWNER, "medical")

    def test_pinned_content_survives_collection(self, store, blobs):
        receipt = store.store_encrypted({"x": 1}, OWNER, "medical")
        assert blobs.collect_garbage() == 0
        assert store.exists(receipt.data_address)

        store.unpin(receipt.data_address)
        store.unpin(receipt.metadata_address)
        assert blobs.collect_garbage() == 2

    def test_pin_unknown_address(self, store):
        with pytest.raises(ContentNotFound):
            store.pin("missing")

    def test_only_owner_changes_pins(self, store, blobs):
        receipt = store.store_encrypted({"x": 1}, OWNER, "medical")

        with pytest.raises(Forbidden):
            store.set_pinned(receipt.data_address, receipt.metadata_address, STRANGER, "medical", pinned=False)
        assert blobs.is_pinned(receipt.data_address)

        store.set_pinned(receipt.data_address, receipt.metadata_address, OWNER, "medical", pinned=False)
        assert not blobs.is_pinned(receipt.data_address)
        assert not blobs.is_pinned(receipt.metadata_address)

    def test_forged_metadata_does_not_grant_pins(self, store, blobs):
        victim = store.store_encrypted({"x": 1}, OWNER, "medical")
        forged = store.store_encrypted({"y": 2}, STRANGER, "medical", metadata=DataMetadata(category="medical", owner=STRANGER))

        with pytest.raises(Forbidden):
            store.set_pinned(victim.data_address, forged.metadata_address, STRANGER, "medical", pinned=False)
        assert blobs.is_pinned(victim.data_address)

    def test_credential_metadata_variant(self, store):
        metadata = CredentialMetadata(owner=OWNER, credential_type="KYCCredential", issuer="did:ethr:0x1")
        receipt = store.store_encrypted({"jwt": "..."}, OWNER, "identity", metadata=metadata)
        content = store.retrieve_encrypted(receipt.data_address, receipt.metadata_address, OWNER, "identity")
        assert content.metadata["kind"] == "credential"
        assert content.metadata["issuer"] == "did:ethr:0x1"

    def test_slow_blob_store_is_transient(self, audit):
        class SlowBlobs(InMemoryBlobStore):
            def put(self, data):
                time.sleep(0.5)
                return super().put(data)

        slow = ContentStore(SlowBlobs(), SERVER_SECRET, audit=audit, external_timeout=0.05)
        with pytest.raises(TransientError):
            slow.store_encrypted({"x": 1}, OWNER, "medical")
        audit.record.assert_not_called()


class TestMetadata:

    def test_parse_data_metadata(self):
        metadata = parse_metadata({"kind": "data", "category": "medical", "owner": OWNER, "tags": ["lab"]})
        assert metadata == DataMetadata(category="medical", owner=OWNER, tags=("lab",))

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            parse_metadata({"kind": "face", "owner": OWNER})

    def test_unexpected_field(self):
        with pytest.raises(ValidationError):
            parse_metadata({"kind": "audit", "owner": OWNER, "action": "read", "extra": 1})


class TestIPFSBlobStore:

    @pytest.fixture
    def session(self):
        return MagicMock(spec=requests.Session)

    @pytest.fixture
    def ipfs(self, session):
        return IPFSBlobStore("http://ipfs.local:5001/", timeout=2.0, session=session)

    @staticmethod
    def response(status=200, json_body=None, content=b"", text=""):
        resp = MagicMock()
        resp.status_code = status
        resp.json.return_value = json_body
        resp.content = content
        resp.text = text
        return resp

    def test_put_returns_cid(self, ipfs, session):
        session.post.return_value = self.response(json_body={"Hash": "bafycid"})

        assert ipfs.put(b"data") == "bafycid"
        url = session.post.call_args.args[0]
        assert url == "http://ipfs.local:5001/api/v0/add"
        assert session.post.call_args.kwargs["timeout"] == 2.0

    def test_get_missing_returns_none(self, ipfs, session):
        session.post.return_value = self.response(status=500, text="block was not found locally")
        assert ipfs.get("bafymissing") is None

    def test_get_server_error_is_transient(self, ipfs, session):
        session.post.return_value = self.response(status=500, text="context deadline exceeded")
        with pytest.raises(TransientError):
            ipfs.get("bafycid")

    def test_pin_missing_is_not_found(self, ipfs, session):
        session.post.return_value = self.response(status=500, text="merkledag: not found")
        with pytest.raises(ContentNotFound):
            ipfs.pin("bafymissing")

    def test_get_returns_content(self, ipfs, session):
        session.post.return_value = self.response(content=b"blob")
        assert ipfs.get("bafycid") == b"blob"

    def test_timeout_is_transient(self, ipfs, session):
        session.post.side_effect = requests.Timeout()
        with pytest.raises(TransientError):
            ipfs.put(b"data")

    def test_gateway_error_is_transient(self, ipfs, session):
        session.post.return_value = self.response(status=503)
        with pytest.raises(TransientError):
            ipfs.put(b"data")

    def test_client_error_is_internal(self, ipfs, session):
        session.post.return_value = self.response(status=400, text="bad request")
        with pytest.raises(InternalError):
            ipfs.put(b"data")

    def test_unpin_not_pinned_is_ignored(self, ipfs, session):
        session.post.return_value = self.response(status=500, text="not pinned or pinned indirectly")
        ipfs.unpin("bafycid")
