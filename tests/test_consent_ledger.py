"""
Consent Ledger Tests

Tests for the consent-request lifecycle:
- Creation and validation
- Owner-only approve / deny / revoke and the transition graph
- Lazy expiry on read and on transition attempts
- Settlement failures leave nothing persisted
- Concurrent responses on one request
- SQLAlchemy repository with optimistic versioning

Run with:
    poetry run pytest tests/test_consent_ledger.py -v
"""

import os
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

os.environ["FLASK_ENV"] = "development"
os.environ["DB_ENCRYPTION_KEY"] = "test-encryption-key-32-chars-ok!"

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from secnet.consent import (
    AccessScope,
    ConsentLedger,
    InMemoryConsentRepository,
    Party,
    ProofRef,
    SqlAlchemyConsentRepository,
)
from secnet.database import AuditAction, Base, ConsentStatus, DataCategory
from secnet.errors import (
    ErrorKind,
    Forbidden,
    InvalidState,
    NotFound,
    StaleRecord,
    TransientError,
    ValidationError,
)
from secnet.locking import LocalLockManager
from secnet.notifications import InMemoryNotificationSink
from secnet.settlement import SimulatedSettlementRecorder

REQUESTER = "0xaaa0000000000000000000000000000000000001"
OWNER = "0xbbb0000000000000000000000000000000000002"
STRANGER = "0xccc0000000000000000000000000000000000003"

START = datetime(2030, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit():
    recorder = MagicMock()
    recorder.record.return_value = True
    return recorder


@pytest.fixture
def notifier():
    return InMemoryNotificationSink()


@pytest.fixture
def repository():
    return InMemoryConsentRepository()


@pytest.fixture
def ledger(repository, notifier, audit, clock):
    return ConsentLedger(repository, SimulatedSettlementRecorder(), notifier, audit, clock=clock)


@pytest.fixture
def pending(ledger, clock):
    return ledger.create(
        requester=Party.of(REQUESTER, ens_name="clinic.eth"),
        owner=Party.of(OWNER),
        category="medical",
        purpose="Clinical trial eligibility screening",
        scope=AccessScope(fields=("blood_type", "allergies")),
        expires_at=clock() + timedelta(days=7),
    )


def audited_actions(audit):
    return [c.args[0] for c in audit.record.call_args_list]


# ============================================================================
# Creation
# ============================================================================

class TestCreate:

    def test_create_returns_pending_request(self, pending, clock):
        assert pending.status is ConsentStatus.PENDING
        assert pending.category is DataCategory.MEDICAL
        assert pending.created_at == clock()
        assert pending.scope.fields == ("blood_type", "allergies")
        assert pending.settlement is None

    def test_create_audits_and_notifies_owner(self, pending, audit, notifier):
        assert audited_actions(audit) == [AuditAction.CONSENT_CREATE]

        events = notifier.events("consent_request")
        assert len(events) == 1
        assert events[0].recipient == OWNER
        assert events[0].payload["request_id"] == str(pending.id)

    def test_addresses_are_normalized(self, ledger, clock):
        request = ledger.create(
            Party.of("  0xAAA0000000000000000000000000000000000001 "),
            Party.of(OWNER.upper().replace("0X", "0x")),
            "financial",
            "Loan application",
            None,
            clock() + timedelta(days=1),
        )
        assert request.requester.address == REQUESTER
        assert request.owner.address == OWNER

    def test_requester_and_owner_must_differ(self, ledger, clock):
        with pytest.raises(ValidationError):
            ledger.create(Party.of(OWNER), Party.of(OWNER), "medical", "Self", None, clock() + timedelta(days=1))

    def test_unknown_category_rejected(self, ledger, clock):
        with pytest.raises(ValidationError) as exc:
            ledger.create(Party.of(REQUESTER), Party.of(OWNER), "genomic", "x", None, clock() + timedelta(days=1))
        assert exc.value.kind is ErrorKind.VALIDATION

    def test_purpose_length_limit(self, ledger, clock):
        expires = clock() + timedelta(days=1)
        ledger.create(Party.of(REQUESTER), Party.of(OWNER), "medical", "p" * 500, None, expires)
        with pytest.raises(ValidationError):
            ledger.create(Party.of(REQUESTER), Party.of(OWNER), "medical", "p" * 501, None, expires)

    def test_empty_purpose_rejected(self, ledger, clock):
        with pytest.raises(ValidationError):
            ledger.create(Party.of(REQUESTER), Party.of(OWNER), "medical", "   ", None, clock() + timedelta(days=1))

    def test_expiry_must_be_in_the_future(self, ledger, clock):
        with pytest.raises(ValidationError):
            ledger.create(Party.of(REQUESTER), Party.of(OWNER), "medical", "x", None, clock())

    def test_naive_expiry_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.create(Party.of(REQUESTER), Party.of(OWNER), "medical", "x", None, datetime(2031, 1, 1))

    def test_scope_time_range_must_be_ordered(self):
        with pytest.raises(ValidationError):
            AccessScope.from_dict({
                "fields": ["blood_type"],
                "time_range": {"start": "2030-02-01T00:00:00+00:00", "end": "2030-01-01T00:00:00+00:00"},
            })


# ============================================================================
# Transitions
# ============================================================================

class TestTransitions:

    def test_owner_approves(self, ledger, pending, audit, notifier):
        approved = ledger.approve(pending.id, OWNER, reason="OK for this trial")

        assert approved.status is ConsentStatus.APPROVED
        assert approved.settlement is not None
        assert approved.settlement.reference.startswith("0x")
        assert approved.response_reason == "OK for this trial"
        assert approved.version == pending.version + 1

        assert AuditAction.CONSENT_APPROVE in audited_actions(audit)
        granted = notifier.events("access_granted")
        assert [e.recipient for e in granted] == [REQUESTER]

    def test_non_owner_cannot_approve(self, ledger, pending, audit):
        with pytest.raises(Forbidden):
            ledger.approve(pending.id, REQUESTER)

        assert ledger.get(pending.id).status is ConsentStatus.PENDING
        failure = audit.record.call_args_list[-1]
        assert failure.args[0] is AuditAction.CONSENT_TRANSITION_FAIL
        assert failure.kwargs["success"] is False

    def test_deny_is_terminal(self, ledger, pending, notifier):
        denied = ledger.deny(pending.id, OWNER, reason="Not comfortable")
        assert denied.status is ConsentStatus.DENIED
        assert notifier.events("access_denied")[0].recipient == REQUESTER

        with pytest.raises(InvalidState):
            ledger.approve(pending.id, OWNER)
        assert ledger.get(pending.id).status is ConsentStatus.DENIED

    def test_revoke_only_after_approval(self, ledger, pending, notifier):
        with pytest.raises(InvalidState):
            ledger.revoke(pending.id, OWNER)

        ledger.approve(pending.id, OWNER)
        revoked = ledger.revoke(pending.id, OWNER, reason="Trial finished")

        assert revoked.status is ConsentStatus.REVOKED
        assert revoked.settlement is not None
        assert len(notifier.events("access_revoked")) == 1

    def test_approved_request_cannot_be_denied(self, ledger, pending):
        ledger.approve(pending.id, OWNER)
        with pytest.raises(InvalidState) as exc:
            ledger.deny(pending.id, OWNER)
        assert exc.value.http_status == 409

    def test_unknown_request(self, ledger):
        with pytest.raises(NotFound):
            ledger.approve(uuid.uuid4(), OWNER)

    def test_malformed_request_id(self, ledger):
        with pytest.raises(NotFound):
            ledger.approve("not-a-uuid", OWNER)


# ============================================================================
# Expiry
# ============================================================================

class TestExpiry:

    def test_approve_after_expiry_persists_expired(self, ledger, pending, clock, notifier, audit):
        clock.advance(days=8)

        with pytest.raises(InvalidState):
            ledger.approve(pending.id, OWNER)

        assert ledger.get(pending.id).status is ConsentStatus.EXPIRED
        assert len(notifier.events("consent_expired")) == 1
        assert AuditAction.CONSENT_EXPIRE in audited_actions(audit)

    def test_expiry_boundary_is_inclusive(self, ledger, pending, clock):
        clock.now = pending.expires_at
        assert ledger.get(pending.id).status is ConsentStatus.EXPIRED

    def test_get_before_expiry_leaves_pending(self, ledger, pending, clock):
        clock.advance(days=6, hours=23)
        assert ledger.get(pending.id).status is ConsentStatus.PENDING

    def test_expiry_is_persisted_once(self, ledger, pending, clock, notifier):
        clock.advance(days=8)
        ledger.get(pending.id)
        ledger.get(pending.id)
        ledger.pending_for_owner(OWNER)
        assert len(notifier.events("consent_expired")) == 1

    def test_pending_for_owner_hides_expired(self, ledger, pending, clock):
        assert [r.id for r in ledger.pending_for_owner(OWNER)] == [pending.id]
        clock.advance(days=8)
        assert ledger.pending_for_owner(OWNER) == []

    def test_expire_overdue_sweep(self, ledger, pending, clock):
        ledger.create(
            Party.of(REQUESTER), Party.of(OWNER), "financial", "Credit check", None, clock() + timedelta(days=30)
        )
        clock.advance(days=8)
        assert ledger.expire_overdue() == 1
        assert ledger.expire_overdue() == 0

    def test_history_does_not_persist_expiry(self, ledger, pending, clock, repository):
        clock.advance(days=8)
        history = ledger.history_for_owner(OWNER)

        assert history[0].status is ConsentStatus.EXPIRED
        assert repository.get(pending.id).status is ConsentStatus.PENDING


# ============================================================================
# Settlement
# ============================================================================

class TestSettlement:

    def test_settlement_failure_aborts_approval(self, repository, notifier, audit, clock):
        settlement = MagicMock()
        settlement.record_approval.side_effect = ConnectionError("registry unreachable")
        ledger = ConsentLedger(repository, settlement, notifier, audit, clock=clock)
        request = ledger.create(
            Party.of(REQUESTER), Party.of(OWNER), "medical", "Trial", None, clock() + timedelta(days=1)
        )

        with pytest.raises(TransientError) as exc:
            ledger.approve(request.id, OWNER)

        assert exc.value.retryable is True
        stored = ledger.get(request.id)
        assert stored.status is ConsentStatus.PENDING
        assert stored.settlement is None
        assert notifier.events("access_granted") == []

    def test_settlement_timeout_is_transient(self, repository, notifier, audit, clock):
        class SlowSettlement(SimulatedSettlementRecorder):
            def record_approval(self, request_id):
                time.sleep(0.5)
                return super().record_approval(request_id)

        ledger = ConsentLedger(repository, SlowSettlement(), notifier, audit, clock=clock, external_timeout=0.05)
        request = ledger.create(
            Party.of(REQUESTER), Party.of(OWNER), "medical", "Trial", None, clock() + timedelta(days=1)
        )

        with pytest.raises(TransientError):
            ledger.approve(request.id, OWNER)
        assert ledger.get(request.id).status is ConsentStatus.PENDING

    def test_approval_succeeds_after_transient_failure(self, repository, notifier, audit, clock):
        settlement = MagicMock()
        real = SimulatedSettlementRecorder()
        settlement.record_approval.side_effect = [TimeoutError("slow"), real.record_approval(uuid.uuid4())]
        ledger = ConsentLedger(repository, settlement, notifier, audit, clock=clock)
        request = ledger.create(
            Party.of(REQUESTER), Party.of(OWNER), "medical", "Trial", None, clock() + timedelta(days=1)
        )

        with pytest.raises(TransientError):
            ledger.approve(request.id, OWNER)
        assert ledger.approve(request.id, OWNER).status is ConsentStatus.APPROVED


# ============================================================================
# Concurrency
# ============================================================================

class TestConcurrency:

    def test_concurrent_approve_and_deny(self, ledger, pending):
        barrier = threading.Barrier(2)
        outcomes = {}

        def respond(action):
            barrier.wait()
            try:
                outcomes[action] = getattr(ledger, action)(pending.id, OWNER).status
            except InvalidState as e:
                outcomes[action] = e

        threads = [threading.Thread(target=respond, args=(a,)) for a in ("approve", "deny")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        winners = [s for s in outcomes.values() if isinstance(s, ConsentStatus)]
        losers = [e for e in outcomes.values() if isinstance(e, InvalidState)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert ledger.get(pending.id).status is winners[0]

    def test_busy_request_is_transient(self, ledger, pending):
        ledger.LOCK_TIMEOUT_SECONDS = 0.1
        held = threading.Event()
        done = threading.Event()

        def hold():
            with ledger.locks.lock(ledger._lock_name(pending.id)):
                held.set()
                done.wait(timeout=5)

        holder = threading.Thread(target=hold)
        holder.start()
        held.wait(timeout=5)
        try:
            with pytest.raises(TransientError) as exc_info:
                ledger.approve(pending.id, OWNER)
        finally:
            done.set()
            holder.join(timeout=5)

        assert exc_info.value.retryable is True
        assert exc_info.value.http_status == 503
        assert ledger.get(pending.id).status is ConsentStatus.PENDING
        assert ledger.approve(pending.id, OWNER).status is ConsentStatus.APPROVED

    def test_finished_requests_release_their_locks(self, ledger, clock):
        for _ in range(20):
            request = ledger.create(
                requester=Party.of(REQUESTER),
                owner=Party.of(OWNER),
                category="medical",
                purpose="Lab results",
                scope=None,
                expires_at=clock() + timedelta(days=1),
            )
            ledger.deny(request.id, OWNER)

        assert ledger.locks.active_count() == 0


class TestLocalLockManager:

    def test_reentry_keeps_holder_until_outer_release(self):
        locks = LocalLockManager()
        with locks.lock("consent:1"):
            with locks.lock("consent:1"):
                assert locks.get_info("consent:1") is not None
            assert locks.is_locked("consent:1")
            assert locks.get_info("consent:1") is not None

        assert not locks.is_locked("consent:1")
        assert locks.active_count() == 0

    def test_release_by_other_thread_is_refused(self):
        locks = LocalLockManager()
        assert locks.acquire("consent:1")
        results = []
        worker = threading.Thread(target=lambda: results.append(locks.release("consent:1")))
        worker.start()
        worker.join(timeout=5)

        assert results == [False]
        assert locks.is_locked("consent:1")
        assert locks.release("consent:1") is True

    def test_timed_out_waiter_leaves_no_entry(self):
        locks = LocalLockManager()
        assert locks.acquire("consent:1")
        results = []
        waiter = threading.Thread(target=lambda: results.append(locks.acquire("consent:1", timeout=0.05)))
        waiter.start()
        waiter.join(timeout=5)

        assert results == [False]
        locks.release("consent:1")
        assert locks.active_count() == 0


# ============================================================================
# Reads and attachments
# ============================================================================

class TestReads:

    def test_get_restricted_to_parties(self, ledger, pending):
        assert ledger.get(pending.id, viewer=REQUESTER).id == pending.id
        assert ledger.get(pending.id, viewer=OWNER).id == pending.id
        with pytest.raises(Forbidden):
            ledger.get(pending.id, viewer=STRANGER)

    def test_has_active_consent(self, ledger, pending):
        assert ledger.has_active_consent(REQUESTER, OWNER, "medical") is False
        ledger.approve(pending.id, OWNER)
        assert ledger.has_active_consent(REQUESTER, OWNER, "medical") is True
        assert ledger.has_active_consent(REQUESTER, OWNER, "financial") is False
        ledger.revoke(pending.id, OWNER)
        assert ledger.has_active_consent(REQUESTER, OWNER, "medical") is False

    def test_list_for_paginates(self, ledger, clock):
        for i in range(5):
            clock.advance(minutes=1)
            ledger.create(Party.of(REQUESTER), Party.of(OWNER), "medical", f"Purpose {i}", None,
                          clock() + timedelta(days=1))

        page = ledger.list_for(OWNER, role="owner", page=2, limit=2)
        assert page["pagination"] == {"page": 2, "limit": 2, "total": 5, "pages": 3}
        assert [r.purpose for r in page["requests"]] == ["Purpose 2", "Purpose 1"]

        assert ledger.list_for(REQUESTER, role="requester")["pagination"]["total"] == 5
        assert ledger.list_for(OWNER, status="approved")["pagination"]["total"] == 0

    def test_list_for_rejects_unknown_role(self, ledger):
        with pytest.raises(ValidationError):
            ledger.list_for(OWNER, role="auditor")

    def test_attach_proof_by_party(self, ledger, pending):
        ref = ProofRef(proof_hash="ab" * 32, circuit_type="data_access", is_valid=True)
        updated = ledger.attach_proof(pending.id, REQUESTER, ref)

        assert updated.proof_ref == ref
        assert updated.status is ConsentStatus.PENDING

    def test_attach_rejected_for_outsider_and_terminal(self, ledger, pending):
        ref = ProofRef(proof_hash="ab" * 32, circuit_type="age", is_valid=True)
        with pytest.raises(Forbidden):
            ledger.attach_proof(pending.id, STRANGER, ref)

        ledger.deny(pending.id, OWNER)
        with pytest.raises(InvalidState):
            ledger.attach_proof(pending.id, OWNER, ref)


# ============================================================================
# SQLAlchemy repository
# ============================================================================

@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    Base.metadata.drop_all(engine)
    engine.dispose()


class TestSqlAlchemyRepository:

    @pytest.fixture
    def sql_ledger(self, session_factory, notifier, audit, clock):
        return ConsentLedger(
            SqlAlchemyConsentRepository(session_factory), SimulatedSettlementRecorder(), notifier, audit, clock=clock
        )

    def test_lifecycle_round_trips_through_database(self, sql_ledger, clock):
        created = sql_ledger.create(
            Party.of(REQUESTER, ens_name="clinic.eth", display_name="City Clinic"),
            Party.of(OWNER),
            "medical",
            "Trial",
            AccessScope.from_dict({"data_fields": ["blood_type"], "access_level": "write"}),
            clock() + timedelta(days=2),
        )
        approved = sql_ledger.approve(created.id, OWNER)
        stored = sql_ledger.get(created.id)

        assert stored == approved
        assert stored.requester.display_name == "City Clinic"
        assert stored.scope.fields == ("blood_type",)
        assert stored.settlement.block_number == approved.settlement.block_number
        assert stored.expires_at.tzinfo is not None

    def test_stale_version_rejected(self, sql_ledger, session_factory, clock):
        created = sql_ledger.create(
            Party.of(REQUESTER), Party.of(OWNER), "medical", "Trial", None, clock() + timedelta(days=2)
        )
        repository = SqlAlchemyConsentRepository(session_factory)
        sql_ledger.deny(created.id, OWNER)

        with pytest.raises(StaleRecord):
            repository.update(created, expected_version=created.version)
        assert sql_ledger.get(created.id).status is ConsentStatus.DENIED

    def test_expiry_query(self, sql_ledger, session_factory, clock):
        created = sql_ledger.create(
            Party.of(REQUESTER), Party.of(OWNER), "medical", "Trial", None, clock() + timedelta(hours=1)
        )
        repository = SqlAlchemyConsentRepository(session_factory)

        assert repository.due_for_expiry(clock()) == []
        clock.advance(hours=2)
        assert [r.id for r in repository.due_for_expiry(clock())] == [created.id]
