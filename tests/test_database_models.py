"""
Database Model Tests

Test suite for:
- AES-GCM column encryption round trips
- Audit log immutability and encrypted metadata
- AuditRecorder writes, read-back and failure counting
- Permanent credential revocation
- Timezone-aware UTC timestamps
- Database initialization

Run with:
    poetry run pytest tests/test_database_models.py -v
"""

import os
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before imports
os.environ["FLASK_ENV"] = "development"
os.environ["DB_ENCRYPTION_KEY"] = "test-encryption-key-32-chars-ok!"

from secnet.audit import AuditRecorder, ConsentAuditDetails
from secnet.database import (
    AuditAction,
    AuditLog,
    Base,
    CredentialRecord,
    DIDRecord,
    decrypt_column_data,
    decrypt_json_metadata,
    encrypt_column_data,
    encrypt_json_metadata,
    get_encryption_key,
)
from secnet.database.init_db import init_database


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture(scope="module")
def test_engine():
    """In-memory SQLite engine shared by the module."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db_session(test_engine):
    """Session per test, rolled back afterwards."""
    connection = test_engine.connect()
    transaction = connection.begin()
    session = sessionmaker(bind=connection)()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


def make_credential(**overrides) -> CredentialRecord:
    now = datetime.now(timezone.utc)
    values = {
        "id": f"urn:uuid:{uuid.uuid4()}",
        "issuer_did": "did:ethr:0xissuer",
        "subject_did": "did:ethr:0xsubject",
        "credential_type": "KYCCredential",
        "token_hash": "ab" * 32,
        "issued_at": now,
        "expires_at": now + timedelta(days=30),
    }
    values.update(overrides)
    return CredentialRecord(**values)


# ============================================================================
# Encryption Tests
# ============================================================================

class TestEncryptionUtilities:

    def test_encryption_decryption_roundtrip(self):
        plaintext = "192.168.1.100"
        encrypted = encrypt_column_data(plaintext)

        assert encrypted != plaintext
        assert decrypt_column_data(encrypted) == plaintext

    def test_encryption_with_unicode(self):
        plaintext = "Consent for 🔐 données médicales"
        assert decrypt_column_data(encrypt_column_data(plaintext)) == plaintext

    def test_fresh_iv_per_value(self):
        assert encrypt_column_data("same") != encrypt_column_data("same")

    def test_wrong_key_fails_decryption(self):
        encrypted = encrypt_column_data("secret", "key-one-for-testing-32-chars-ok")
        with pytest.raises(ValueError):
            decrypt_column_data(encrypted, "key-two-for-testing-32-chars-ok")

    def test_malformed_value(self):
        with pytest.raises(ValueError):
            decrypt_column_data("not base64!")

    def test_json_metadata_encryption(self):
        metadata = {"request_id": "r-1", "from_status": "pending", "to_status": "approved"}
        assert decrypt_json_metadata(encrypt_json_metadata(metadata)) == metadata

    def test_encryption_key_from_environment(self):
        assert get_encryption_key() == "test-encryption-key-32-chars-ok!"

    def test_production_requires_key(self, monkeypatch):
        monkeypatch.delenv("DB_ENCRYPTION_KEY")
        monkeypatch.setenv("FLASK_ENV", "production")
        with pytest.raises(RuntimeError):
            get_encryption_key()


# ============================================================================
# AuditLog Tests
# ============================================================================

class TestAuditLogModel:

    def test_audit_log_creation(self, db_session: Session):
        log = AuditLog(actor="0xabc", action=AuditAction.CONSENT_CREATE, target="r-1")
        db_session.add(log)
        db_session.commit()

        assert isinstance(log.id, uuid.UUID)
        assert log.timestamp.tzinfo is not None
        assert log.success is True

    def test_audit_log_immutability(self, db_session: Session):
        log = AuditLog(actor="0xabc", action=AuditAction.CONSENT_APPROVE)
        db_session.add(log)
        db_session.commit()

        log.success = False

        with pytest.raises(ValueError, match="immutable"):
            db_session.commit()


class TestAuditRecorder:

    def test_record_and_read_back(self, session_factory):
        recorder = AuditRecorder(session_factory)
        details = ConsentAuditDetails(
            request_id="r-1", category="medical", from_status="pending", to_status="approved"
        )

        assert recorder.record(AuditAction.CONSENT_APPROVE, actor="0xowner", target="r-1", details=details)

        entries = recorder.entries(actor="0xowner")
        assert len(entries) == 1
        assert entries[0]["action"] == "CONSENT_APPROVE"
        assert entries[0]["details"]["to_status"] == "approved"
        assert entries[0]["details"]["kind"] == "consent"

    def test_metadata_is_encrypted_at_rest(self, session_factory):
        AuditRecorder(session_factory).record(
            AuditAction.CONSENT_CREATE,
            actor="0xrequester",
            details=ConsentAuditDetails(request_id="r-2", category="medical", from_status=None, to_status="pending"),
        )
        session = session_factory()
        try:
            stored = session.query(AuditLog).one().metadata_encrypted
        finally:
            session.close()
        assert "r-2" not in stored

    def test_failure_is_counted_not_raised(self):
        broken = MagicMock(side_effect=RuntimeError("database down"))
        recorder = AuditRecorder(broken)

        assert recorder.record(AuditAction.VERIFICATION, actor="0xabc") is False
        assert recorder.failures == 1


# ============================================================================
# Credential Tests
# ============================================================================

class TestCredentialRecord:

    def test_revocation_is_permanent(self, db_session: Session):
        credential = make_credential(is_revoked=True, revoked_at=datetime.now(timezone.utc))
        db_session.add(credential)
        db_session.commit()

        credential.is_revoked = False

        with pytest.raises(ValueError, match="permanent"):
            db_session.commit()

    def test_revoking_is_allowed(self, db_session: Session):
        credential = make_credential()
        db_session.add(credential)
        db_session.commit()

        credential.is_revoked = True
        credential.revocation_reason = "Compromised"
        db_session.commit()

        assert db_session.get(CredentialRecord, credential.id).is_revoked is True

    def test_timestamps_are_utc_aware(self, db_session: Session):
        credential = make_credential()
        db_session.add(credential)
        db_session.commit()
        db_session.expire_all()

        assert db_session.get(CredentialRecord, credential.id).expires_at.tzinfo is timezone.utc


# ============================================================================
# Initialization
# ============================================================================

class TestInitDatabase:

    def test_init_on_sqlite(self):
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        init_database(bind=engine, session_factory=sessionmaker(bind=engine))

        session = sessionmaker(bind=engine)()
        try:
            assert session.query(DIDRecord).count() == 0
        finally:
            session.close()

    def test_drop_refused_in_production(self, monkeypatch):
        monkeypatch.setenv("FLASK_ENV", "production")
        engine = create_engine("sqlite://")
        with pytest.raises(ValueError):
            init_database(drop_existing=True, bind=engine)
